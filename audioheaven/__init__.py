"""Flask application factory for audioheaven."""

from flask import Flask

from audioheaven.config import Settings, get_package_version, get_settings
from audioheaven.extensions import EXTENSION_KEY, build_services
from audioheaven.services.process_runner import resolve_ffmpeg

# Room for multipart boundaries and form fields around a full-size file
MULTIPART_OVERHEAD = 1024 * 1024


def create_app(settings: Settings | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        settings: Settings to use instead of the process-wide defaults
    """
    app = Flask(__name__)

    settings = settings or get_settings()
    app.config["SETTINGS"] = settings
    app.config["MAX_CONTENT_LENGTH"] = settings.max_file_size + MULTIPART_OVERHEAD

    services = build_services(settings)
    services.blob_store.ensure_directories()
    app.extensions[EXTENSION_KEY] = services

    # Register blueprints
    from audioheaven.routes.download import download_bp
    from audioheaven.routes.errors import register_error_handlers
    from audioheaven.routes.logs import logs_bp
    from audioheaven.routes.process import process_bp
    from audioheaven.routes.upload import upload_bp

    app.register_blueprint(upload_bp, url_prefix="/api/audio/upload")
    app.register_blueprint(process_bp, url_prefix="/api/audio/process")
    app.register_blueprint(download_bp, url_prefix="/api/audio/download")
    app.register_blueprint(logs_bp, url_prefix="/api/logs")
    register_error_handlers(app)

    log = services.log
    ffmpeg = resolve_ffmpeg(services.runner.ffmpeg_path)
    if ffmpeg is None:
        log.warning(
            "app",
            "ffmpeg_missing",
            "FFmpeg not found; processing jobs will fail until it is installed",
        )

    if settings.cleanup_enabled:
        services.sweeper.start()

    log.info(
        "app",
        "app_started",
        f"Application started (v{get_package_version()})",
        {"version": get_package_version(), "ffmpeg": ffmpeg},
    )

    return app
