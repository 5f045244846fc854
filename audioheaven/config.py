"""Configuration management for audioheaven"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
ENV_FILE = BASE_DIR / ".env"
load_dotenv(ENV_FILE)

# Settings file paths
SETTINGS_FILE = BASE_DIR / "settings.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

MIB = 1024 * 1024

# Environment variable names for configuration
ENV_UPLOAD_DIR = "AUDIOHEAVEN_UPLOAD_DIR"
ENV_OUTPUT_DIR = "AUDIOHEAVEN_OUTPUT_DIR"
ENV_LOG_DIR = "AUDIOHEAVEN_LOG_DIR"
ENV_MAX_FILE_SIZE = "AUDIOHEAVEN_MAX_FILE_SIZE"
ENV_CHUNK_SIZE = "AUDIOHEAVEN_CHUNK_SIZE"
ENV_RETENTION_SECONDS = "AUDIOHEAVEN_RETENTION_SECONDS"
ENV_CLEANUP_INTERVAL = "AUDIOHEAVEN_CLEANUP_INTERVAL_SECONDS"
ENV_CLEANUP_ENABLED = "AUDIOHEAVEN_CLEANUP_ENABLED"
ENV_PROGRESS_FORMAT = "AUDIOHEAVEN_PROGRESS_FORMAT"
ENV_FFMPEG_PATH = "FFMPEG_PATH"

DEFAULTS: dict[str, Any] = {
    "upload_dir": "uploads",
    "output_dir": "output",
    "log_directory": "logs",
    "max_file_size": 100 * MIB,
    "chunk_size": 5 * MIB,
    "retention_seconds": 15 * 60,
    "cleanup_interval_seconds": 60,
    "cleanup_enabled": True,
    "ffmpeg_path": "",
    "progress_format": "stats",
}

ENV_KEYS = {
    "upload_dir": ENV_UPLOAD_DIR,
    "output_dir": ENV_OUTPUT_DIR,
    "log_directory": ENV_LOG_DIR,
    "max_file_size": ENV_MAX_FILE_SIZE,
    "chunk_size": ENV_CHUNK_SIZE,
    "retention_seconds": ENV_RETENTION_SECONDS,
    "cleanup_interval_seconds": ENV_CLEANUP_INTERVAL,
    "cleanup_enabled": ENV_CLEANUP_ENABLED,
    "ffmpeg_path": ENV_FFMPEG_PATH,
    "progress_format": ENV_PROGRESS_FORMAT,
}


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except Exception:
        return "0.0.0"


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw (usually string) value to the type of its default."""
    default = DEFAULTS[key]
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    return str(value)


class Settings:
    """Application settings.

    Priority order (highest to lowest):
    1. Explicit overrides passed to the constructor
    2. Environment variables (from .env file or system)
    3. settings.json
    4. Hardcoded defaults
    """

    def __init__(
        self,
        overrides: dict[str, Any] | None = None,
        settings_file: Path | None = SETTINGS_FILE,
    ) -> None:
        self._settings: dict[str, Any] = dict(DEFAULTS)

        if settings_file is not None and settings_file.exists():
            with open(settings_file, encoding="utf-8") as f:
                data = json.load(f)
            self._settings.update({k: v for k, v in data.items() if k in DEFAULTS})

        for key, env_name in ENV_KEYS.items():
            value = os.environ.get(env_name)
            if value is not None and value != "":
                self._settings[key] = value

        if overrides:
            unknown = set(overrides) - set(DEFAULTS)
            if unknown:
                raise KeyError(f"Unknown settings: {', '.join(sorted(unknown))}")
            self._settings.update(overrides)

        self._settings = {k: _coerce(k, v) for k, v in self._settings.items()}

        if self._settings["chunk_size"] <= 0:
            raise ValueError("chunk_size must be positive")
        if self._settings["progress_format"] not in ("stats", "progress"):
            raise ValueError("progress_format must be 'stats' or 'progress'")

    def get(self, key: str, default: Any = None) -> Any:
        """Get a setting value by key."""
        return self._settings.get(key, default)

    def all(self) -> dict[str, Any]:
        """Get all settings as a dictionary."""
        return self._settings.copy()

    def _resolve_dir(self, key: str) -> Path:
        path = Path(self._settings[key])
        if not path.is_absolute():
            path = BASE_DIR / path
        return path

    @property
    def upload_dir(self) -> Path:
        """Directory holding uploaded files, sidecars and chunk temp dirs."""
        return self._resolve_dir("upload_dir")

    @property
    def output_dir(self) -> Path:
        """Directory holding processed files and their sidecars."""
        return self._resolve_dir("output_dir")

    @property
    def log_directory(self) -> Path:
        """Directory for the JSONL event log."""
        return self._resolve_dir("log_directory")

    @property
    def max_file_size(self) -> int:
        return int(self._settings["max_file_size"])

    @property
    def chunk_size(self) -> int:
        return int(self._settings["chunk_size"])

    @property
    def retention_seconds(self) -> int:
        """Age after which blobs, sessions and jobs are swept."""
        return int(self._settings["retention_seconds"])

    @property
    def cleanup_interval_seconds(self) -> int:
        return int(self._settings["cleanup_interval_seconds"])

    @property
    def cleanup_enabled(self) -> bool:
        return bool(self._settings["cleanup_enabled"])

    @property
    def ffmpeg_path(self) -> str:
        """Explicit ffmpeg binary path, or empty for auto-detection."""
        return str(self._settings["ffmpeg_path"])

    @property
    def progress_format(self) -> str:
        """Which ffmpeg progress output to parse: 'stats' or 'progress'."""
        return str(self._settings["progress_format"])


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process-wide default Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
