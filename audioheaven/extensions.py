"""Per-application service container.

All stateful services are created once per Flask app and reached from
request handlers through :func:`get_services`, so tests can build
isolated apps side by side.
"""

from dataclasses import dataclass

from flask import current_app

from audioheaven.config import Settings
from audioheaven.services.blob_store import BlobStore
from audioheaven.services.cleanup import CleanupSweeper
from audioheaven.services.job_manager import JobManager
from audioheaven.services.log_service import LogService
from audioheaven.services.process_runner import ProcessRunner
from audioheaven.services.upload_sessions import UploadSessionManager

EXTENSION_KEY = "audioheaven"


@dataclass
class Services:
    settings: Settings
    log: LogService
    blob_store: BlobStore
    sessions: UploadSessionManager
    runner: ProcessRunner
    jobs: JobManager
    sweeper: CleanupSweeper


def build_services(settings: Settings) -> Services:
    """Wire up the services for one application instance."""
    log = LogService(settings.log_directory)
    blob_store = BlobStore(settings.upload_dir, settings.output_dir)
    sessions = UploadSessionManager(
        blob_store,
        log,
        max_file_size=settings.max_file_size,
        chunk_size=settings.chunk_size,
    )
    runner = ProcessRunner(
        ffmpeg_path=settings.ffmpeg_path,
        progress_format=settings.progress_format,
    )
    jobs = JobManager(blob_store, runner, log)
    sweeper = CleanupSweeper(
        blob_store,
        sessions,
        jobs,
        log,
        retention_seconds=settings.retention_seconds,
        interval_seconds=settings.cleanup_interval_seconds,
    )
    return Services(
        settings=settings,
        log=log,
        blob_store=blob_store,
        sessions=sessions,
        runner=runner,
        jobs=jobs,
        sweeper=sweeper,
    )


def get_services() -> Services:
    """Services of the current Flask application."""
    services: Services = current_app.extensions[EXTENSION_KEY]
    return services
