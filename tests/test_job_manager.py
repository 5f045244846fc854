"""Tests for the job manager."""

import io
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from audioheaven.errors import JobNotFound, UploadNotFound
from audioheaven.services.blob_store import BlobStore, StoredFile
from audioheaven.services.effects import EFFECT_PRESETS
from audioheaven.services.event_broker import JobEvent
from audioheaven.services.job_manager import Job, JobManager, JobStatus
from audioheaven.services.log_service import LogService
from audioheaven.services.process_runner import ProcessRunner

Collect = Callable[..., list[JobEvent]]


@pytest.fixture
def manager(blob_store: BlobStore, runner: ProcessRunner, log_service: LogService) -> JobManager:
    return JobManager(blob_store, runner, log_service)


@pytest.fixture
def upload(blob_store: BlobStore) -> StoredFile:
    return blob_store.uploads.store(io.BytesIO(b"RIFF fake wave data"), "song.wav")


def _wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met in time")
        time.sleep(0.02)


class TestJob:
    """Tests for the Job record."""

    def test_defaults_and_to_dict(self) -> None:
        job = Job(job_id="1700000000000-abcdef0123", file_id="f", options=EFFECT_PRESETS["8d"])

        data = job.to_dict()

        assert job.status == JobStatus.PENDING
        assert data["jobId"] == "1700000000000-abcdef0123"
        assert data["status"] == "pending"
        assert data["progress"] == 0
        assert data["options"]["preset"] == "8d"
        assert data["startedAt"] is None
        assert data["subscribers"] == 0

    def test_snapshot_event(self) -> None:
        job = Job(job_id="j", file_id="f", options=EFFECT_PRESETS["8d"])
        assert job.snapshot_event() == {"type": "progress", "progress": 0}

        job.status = JobStatus.ERROR
        job.error = "boom"
        assert job.snapshot_event() == {"type": "error", "error": "boom"}


class TestJobLifecycle:
    """Tests for running jobs end to end with the fake ffmpeg."""

    def test_unknown_upload(self, manager: JobManager) -> None:
        with pytest.raises(UploadNotFound, match="Please upload again"):
            manager.start_job("1700000000000-abcdef0123", EFFECT_PRESETS["nightcore"])
        assert len(manager) == 0

    def test_complete(
        self,
        manager: JobManager,
        upload: StoredFile,
        blob_store: BlobStore,
        collect_events: Collect,
    ) -> None:
        """Test that a job streams rising progress and one complete event."""
        job_id = manager.start_job(upload.file_id, EFFECT_PRESETS["nightcore"])["jobId"]
        events = collect_events(manager.subscribe(job_id))

        progress = [e["progress"] for e in events[:-1]]
        assert all(e["type"] == "progress" for e in events[:-1])
        assert progress == sorted(progress)
        assert all(p <= 99 for p in progress)

        final = events[-1]
        assert final["type"] == "complete"
        assert final["progress"] == 100
        assert final["result"]["fileName"] == "song_nightcore.mp3"

        output = blob_store.outputs.get(final["result"]["downloadId"])
        assert output is not None
        assert output.path.suffix == ".mp3"
        assert output.path.read_bytes().startswith(b"ID3")

        job = manager.get_job(job_id)
        assert job is not None
        assert job.status == JobStatus.COMPLETE
        assert job.progress == 100
        assert job.completed_at is not None

    def test_late_subscriber_gets_single_terminal_event(
        self, manager: JobManager, upload: StoredFile, collect_events: Collect
    ) -> None:
        job_id = manager.start_job(upload.file_id, EFFECT_PRESETS["daycore"])["jobId"]
        collect_events(manager.subscribe(job_id))

        late = manager.subscribe(job_id)

        event = late.get(timeout=1)
        assert event is not None
        assert event["type"] == "complete"
        assert late.get(timeout=0.2) is None

    def test_multiple_subscribers(
        self,
        manager: JobManager,
        upload: StoredFile,
        collect_events: Collect,
        slow_ffmpeg: None,
    ) -> None:
        """Test that every subscriber receives the terminal event."""
        job_id = manager.start_job(upload.file_id, EFFECT_PRESETS["chipmunk"])["jobId"]
        first = manager.subscribe(job_id)
        second = manager.subscribe(job_id)
        manager.cancel_job(job_id)

        assert collect_events(first)[-1] == collect_events(second)[-1]

    def test_tool_failure(
        self,
        manager: JobManager,
        upload: StoredFile,
        blob_store: BlobStore,
        collect_events: Collect,
        log_service: LogService,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a failed run ends in error and leaves no output behind."""
        monkeypatch.setenv("FAKE_FFMPEG_EXIT", "1")

        job_id = manager.start_job(upload.file_id, EFFECT_PRESETS["vaporwave"])["jobId"]
        final = collect_events(manager.subscribe(job_id))[-1]

        assert final["type"] == "error"
        assert final["error"].startswith("FFmpeg failed with code 1")
        assert list(blob_store.outputs.directory.glob("*.mp3")) == []

        _wait_until(lambda: bool(log_service.read_log_entries(level="ERROR")["total"]))
        entry = log_service.read_log_entries(level="ERROR")["entries"][0]
        assert entry["event"] == "job_failed"

    def test_launch_failure(
        self,
        blob_store: BlobStore,
        log_service: LogService,
        upload: StoredFile,
        tmp_path: Path,
        collect_events: Collect,
    ) -> None:
        runner = ProcessRunner(ffmpeg_path=str(tmp_path / "missing-ffmpeg"))
        manager = JobManager(blob_store, runner, log_service)

        job_id = manager.start_job(upload.file_id, EFFECT_PRESETS["nightcore"])["jobId"]
        final = collect_events(manager.subscribe(job_id))[-1]

        assert final["type"] == "error"
        assert final["error"].startswith("FFmpeg error")


class TestCancelAndReap:
    """Tests for cancellation and expiry."""

    def test_cancel_running(
        self,
        manager: JobManager,
        upload: StoredFile,
        collect_events: Collect,
        slow_ffmpeg: None,
    ) -> None:
        job_id = manager.start_job(upload.file_id, EFFECT_PRESETS["nightcore"])["jobId"]
        subscription = manager.subscribe(job_id)
        _wait_until(lambda: manager.get_job(job_id).progress > 0)  # type: ignore[union-attr]

        assert manager.cancel_job(job_id) is True

        final = collect_events(subscription)[-1]
        assert final == {"type": "error", "error": "Processing cancelled."}
        job = manager.get_job(job_id)
        assert job is not None
        assert job.status == JobStatus.ERROR
        assert job.handle is None

    def test_cancel_finished_is_noop(
        self, manager: JobManager, upload: StoredFile, collect_events: Collect
    ) -> None:
        job_id = manager.start_job(upload.file_id, EFFECT_PRESETS["nightcore"])["jobId"]
        collect_events(manager.subscribe(job_id))

        assert manager.cancel_job(job_id) is True
        assert manager.get_job(job_id).status == JobStatus.COMPLETE  # type: ignore[union-attr]

    def test_cancel_unknown(self, manager: JobManager) -> None:
        assert manager.cancel_job("1700000000000-abcdef0123") is False

    def test_subscribe_unknown(self, manager: JobManager) -> None:
        with pytest.raises(JobNotFound):
            manager.subscribe("1700000000000-abcdef0123")

    def test_reap_finished(
        self, manager: JobManager, upload: StoredFile, collect_events: Collect
    ) -> None:
        """Test that only jobs older than the window are reaped."""
        job_id = manager.start_job(upload.file_id, EFFECT_PRESETS["nightcore"])["jobId"]
        collect_events(manager.subscribe(job_id))

        assert manager.reap_old(60) == 0
        assert manager.reap_old(60, now=time.time() + 120) == 1
        assert manager.get_job(job_id) is None
        with pytest.raises(JobNotFound):
            manager.subscribe(job_id)

    def test_reap_cancels_running(
        self,
        manager: JobManager,
        upload: StoredFile,
        collect_events: Collect,
        slow_ffmpeg: None,
    ) -> None:
        """Test that reaping a processing job stops its subprocess."""
        job_id = manager.start_job(upload.file_id, EFFECT_PRESETS["nightcore"])["jobId"]
        subscription = manager.subscribe(job_id)
        job = manager.get_job(job_id)
        assert job is not None
        _wait_until(lambda: job.handle is not None)
        handle = job.handle
        assert handle is not None

        assert manager.reap_old(0, now=time.time() + 1) == 1

        assert handle.wait(timeout=10)
        assert handle.cancel_requested
        assert collect_events(subscription)[-1]["type"] == "error"
        assert job.status == JobStatus.ERROR
