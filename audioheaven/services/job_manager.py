"""Job manager: runs ffmpeg jobs in the background and fans out their progress."""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from audioheaven.errors import AudioHeavenError, JobCancelled, JobNotFound, UploadNotFound
from audioheaven.services.blob_store import BlobStore, StoredFile
from audioheaven.services.effects import (
    OUTPUT_EXTENSION,
    EffectOptions,
    build_ffmpeg_args,
    output_display_name,
)
from audioheaven.services.event_broker import (
    JobEvent,
    JobEvents,
    Subscription,
    complete_event,
    error_event,
    progress_event,
)
from audioheaven.services.log_service import LogService
from audioheaven.services.process_runner import ProcessHandle, ProcessRunner
from audioheaven.services.utils import generate_id

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Status of a processing job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_STATUSES = (JobStatus.COMPLETE, JobStatus.ERROR)


def _isoformat(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, UTC).isoformat()


@dataclass
class Job:
    """One background ffmpeg invocation against one stored upload.

    ``lock`` guards status, progress, result and the subscriber registry;
    every state change publishes its event while holding it.
    """

    job_id: str
    file_id: str
    options: EffectOptions
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    error: str | None = None
    result: dict[str, str] | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    cancel_requested: bool = False
    handle: ProcessHandle | None = field(default=None, repr=False)
    events: JobEvents = field(init=False, repr=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        self.events = JobEvents(self.job_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot_event(self) -> JobEvent:
        """Event describing the current state, replayed to new subscribers."""
        if self.status == JobStatus.COMPLETE and self.result is not None:
            return complete_event(self.result)
        if self.status == JobStatus.ERROR:
            return error_event(self.error or "Processing failed")
        return progress_event(self.progress)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "jobId": self.job_id,
            "fileId": self.file_id,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "result": self.result,
            "options": self.options.to_dict(),
            "createdAt": _isoformat(self.created_at),
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
            "subscribers": len(self.events),
        }


class JobManager:
    """Owns the lifecycle of processing jobs.

    pending --(runner starts)--> processing --(exit 0)--> complete
    processing --(exit != 0 | launch failure | cancel)--> error
    A job cancelled before it starts goes from pending straight to error.
    """

    def __init__(self, blob_store: BlobStore, runner: ProcessRunner, log: LogService) -> None:
        self.blob_store = blob_store
        self.runner = runner
        self.log = log
        self.jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def start_job(self, file_id: str, options: EffectOptions) -> dict[str, str]:
        """Create a job and start processing it on a background thread.

        Args:
            file_id: Id of a stored upload
            options: Effect options to apply

        Returns:
            Dict with jobId

        Raises:
            UploadNotFound: If file_id does not name a stored upload
        """
        source = self.blob_store.uploads.get(file_id)
        if source is None:
            raise UploadNotFound()

        job = Job(job_id=generate_id(), file_id=file_id, options=options)
        with self._lock:
            self.jobs[job.job_id] = job

        self.log.info(
            "job",
            "job_created",
            f"Created {options.preset} job for {source.name}",
            {"job_id": job.job_id, "file_id": file_id, "preset": options.preset},
        )

        thread = threading.Thread(target=self._run, args=(job, source), daemon=True)
        thread.start()

        return {"jobId": job.job_id}

    def get_job(self, job_id: str) -> Job | None:
        """Get a job by ID."""
        with self._lock:
            return self.jobs.get(job_id)

    def subscribe(self, job_id: str, maxsize: int = 0) -> Subscription:
        """Subscribe to a job's events.

        The subscription's queue starts with a snapshot of the job's
        current state: last progress while running, or the terminal event
        once finished.

        Raises:
            JobNotFound: If the job is unknown or has been reaped
        """
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFound()
        with job.lock:
            return job.events.add(job.snapshot_event(), maxsize)

    def _run(self, job: Job, source: StoredFile) -> None:
        """Worker thread body: spawn ffmpeg and hand completion to callbacks."""
        try:
            with job.lock:
                if job.cancel_requested:
                    cancelled = True
                else:
                    cancelled = False
                    job.status = JobStatus.PROCESSING
                    job.started_at = time.time()
                    job.events.publish(progress_event(0))
            if cancelled:
                self._finish(job, error=JobCancelled())
                return

            display_name = output_display_name(source.name, job.options.preset)
            output_id, output_path = self.blob_store.outputs.allocate(
                display_name, extension=OUTPUT_EXTENSION
            )
            args = build_ffmpeg_args(job.options)

            def on_progress(progress: int) -> None:
                self._update_progress(job, progress)

            def on_done(error: AudioHeavenError | None) -> None:
                self._complete(job, output_id, display_name, output_path, error)

            self.log.info(
                "job",
                "job_started",
                f"Processing {source.name} with {job.options.preset}",
                {"job_id": job.job_id, "source": str(source.path), "args": args},
            )

            handle = self.runner.run(source.path, output_path, args, on_progress, on_done)

            with job.lock:
                if job.is_terminal:
                    return
                job.handle = handle
                cancel_now = job.cancel_requested
            if cancel_now:
                self.runner.cancel(handle)

        except AudioHeavenError as e:
            self._finish(job, error=e)
        except Exception as e:
            logger.exception("Job %s failed to start", job.job_id)
            self._finish(job, error=e)

    def _update_progress(self, job: Job, progress: int) -> None:
        with job.lock:
            if job.status != JobStatus.PROCESSING or progress <= job.progress:
                return
            job.progress = progress
            job.events.publish(progress_event(progress))

    def _complete(
        self,
        job: Job,
        output_id: str,
        display_name: str,
        output_path: Path,
        error: AudioHeavenError | None,
    ) -> None:
        """Runner completion callback: register the output or record the failure."""
        result: dict[str, str] | None = None
        if error is None:
            try:
                stored = self.blob_store.outputs.register(output_id, display_name, output_path)
                result = {"downloadId": stored.file_id, "fileName": stored.name}
            except OSError as e:
                logger.warning("Could not register output for job %s", job.job_id, exc_info=True)
                error = AudioHeavenError(f"Failed to store output: {e}")

        if error is not None:
            output_path.unlink(missing_ok=True)

        self._finish(job, result=result, error=error)

    def _finish(
        self,
        job: Job,
        result: dict[str, str] | None = None,
        error: Exception | None = None,
    ) -> bool:
        """Move a job to its terminal state and publish the one terminal event.

        Returns:
            False if the job was already terminal
        """
        with job.lock:
            if job.is_terminal:
                return False
            job.handle = None
            job.completed_at = time.time()
            if error is None and result is not None:
                job.status = JobStatus.COMPLETE
                job.progress = 100
                job.result = result
                event = complete_event(result)
            else:
                job.status = JobStatus.ERROR
                job.error = str(error) if error is not None else "Processing failed"
                event = error_event(job.error)
            job.events.publish(event)

        duration = job.completed_at - (job.started_at or job.created_at)
        if job.status == JobStatus.COMPLETE:
            self.log.info(
                "job",
                "job_completed",
                f"Job {job.job_id} produced {job.result['fileName'] if job.result else ''}",
                {"job_id": job.job_id, "result": job.result, "duration_seconds": duration},
            )
        else:
            level = "WARNING" if isinstance(error, JobCancelled) else "ERROR"
            self.log.log(
                level,
                "job",
                "job_failed",
                f"Job {job.job_id} failed: {job.error}",
                {"job_id": job.job_id, "error": job.error, "duration_seconds": duration},
            )
        return True

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job.

        A pending job fails before ffmpeg is spawned; a processing job has
        its subprocess terminated and fails once the process exits. Finished
        jobs are left untouched.

        Returns:
            True if the job exists
        """
        job = self.get_job(job_id)
        if job is None:
            return False

        with job.lock:
            if job.is_terminal:
                return True
            job.cancel_requested = True
            handle = job.handle

        if handle is not None:
            self.runner.cancel(handle)

        self.log.warning("job", "job_cancel_requested", f"Job {job_id} cancelled", {"job_id": job_id})
        return True

    def reap_old(self, max_age: float, now: float | None = None) -> int:
        """Remove jobs older than ``max_age`` seconds, whatever their state.

        Jobs still running are cancelled first so their ffmpeg process does
        not outlive the record.

        Returns:
            Number of jobs removed
        """
        now = time.time() if now is None else now
        with self._lock:
            expired = [job for job in self.jobs.values() if now - job.created_at > max_age]
            for job in expired:
                del self.jobs[job.job_id]

        for job in expired:
            with job.lock:
                running = not job.is_terminal
                if running:
                    job.cancel_requested = True
                handle = job.handle
            if handle is not None:
                self.runner.cancel(handle)
            self.log.info(
                "cleanup",
                "job_expired",
                f"Removed job {job.job_id} ({job.status.value})",
                {"job_id": job.job_id, "status": job.status.value, "was_running": running},
            )

        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self.jobs)
