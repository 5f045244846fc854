"""Periodic sweeper that ages out blobs, jobs and stale upload sessions."""

import logging
import shutil
import threading
import time
from pathlib import Path

from audioheaven.services.blob_store import BlobStore
from audioheaven.services.job_manager import JobManager
from audioheaven.services.log_service import LogService
from audioheaven.services.upload_sessions import UploadSessionManager

logger = logging.getLogger(__name__)


def sweep_directory(directory: Path, max_age: float, now: float | None = None) -> int:
    """Delete entries in ``directory`` whose mtime is older than ``max_age`` seconds.

    Files are unlinked and directories (chunk temp dirs) removed
    recursively. An entry that cannot be removed is logged and skipped.

    Returns:
        Number of entries deleted
    """
    if not directory.is_dir():
        return 0

    now = time.time() if now is None else now
    deleted = 0
    for entry in directory.iterdir():
        try:
            if now - entry.lstat().st_mtime <= max_age:
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            deleted += 1
        except OSError:
            logger.warning("Could not remove %s", entry, exc_info=True)
    return deleted


class CleanupSweeper:
    """Removes everything older than the retention window.

    Only entries strictly older than the window are touched, so in-flight
    uploads and jobs (always younger) are left alone.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        sessions: UploadSessionManager,
        jobs: JobManager,
        log: LogService,
        retention_seconds: float = 15 * 60,
        interval_seconds: float = 60,
    ) -> None:
        self.blob_store = blob_store
        self.sessions = sessions
        self.jobs = jobs
        self.log = log
        self.retention_seconds = retention_seconds
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self, now: float | None = None) -> dict[str, int]:
        """Run one sweep. Each step is isolated from failures in the others.

        Returns:
            Counts of removed entries per step
        """
        now = time.time() if now is None else now
        max_age = self.retention_seconds
        steps = {
            "uploads_registry": lambda: self.blob_store.uploads.purge_older_than(max_age, now),
            "outputs_registry": lambda: self.blob_store.outputs.purge_older_than(max_age, now),
            "uploads": lambda: sweep_directory(self.blob_store.uploads.directory, max_age, now),
            "outputs": lambda: sweep_directory(self.blob_store.outputs.directory, max_age, now),
            "jobs": lambda: self.jobs.reap_old(max_age, now),
            "sessions": lambda: self.sessions.reap_stale(max_age, now),
        }

        counts: dict[str, int] = {}
        for name, step in steps.items():
            try:
                counts[name] = step()
            except Exception as e:
                counts[name] = 0
                logger.warning("Cleanup step %s failed", name, exc_info=True)
                self.log.error(
                    "cleanup",
                    "cleanup_step_failed",
                    f"Cleanup step {name} failed: {e}",
                    {"step": name, "error": str(e)},
                )

        files_removed = counts["uploads"] + counts["outputs"]
        if files_removed or counts["jobs"] or counts["sessions"]:
            self.log.info(
                "cleanup",
                "cleanup_completed",
                f"Cleanup: removed {files_removed} old files "
                f"({counts['uploads']} uploads, {counts['outputs']} output)",
                counts,
            )
        return counts

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval_seconds)

    def start(self) -> None:
        """Sweep once now, then every ``interval_seconds`` on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="cleanup-sweeper", daemon=True)
        self._thread.start()
        self.log.info(
            "cleanup",
            "cleanup_started",
            f"File cleanup started (removes files older than {self.retention_seconds}s)",
            {"retention_seconds": self.retention_seconds, "interval_seconds": self.interval_seconds},
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
