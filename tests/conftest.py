"""Pytest configuration and fixtures for the audioheaven tests."""

import stat
import sys
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from flask import Flask
from flask.testing import FlaskClient

from audioheaven import create_app
from audioheaven.config import ENV_KEYS, Settings
from audioheaven.extensions import Services, get_services
from audioheaven.services.blob_store import BlobStore
from audioheaven.services.event_broker import JobEvent, Subscription, is_terminal
from audioheaven.services.log_service import LogService
from audioheaven.services.process_runner import ProcessRunner

# Stand-in for ffmpeg: prints the same diagnostics (duration, then
# time= status lines or -progress key/values) and copies input to output.
# FAKE_FFMPEG_EXIT, FAKE_FFMPEG_STEPS and FAKE_FFMPEG_SLEEP tune its run.
FAKE_FFMPEG_SOURCE = r'''#!@PYTHON@
import os
import sys
import time

args = sys.argv[1:]
source = args[args.index("-i") + 1]
output = args[-1]
use_progress = "-progress" in args
steps = int(os.environ.get("FAKE_FFMPEG_STEPS", "5"))
delay = float(os.environ.get("FAKE_FFMPEG_SLEEP", "0"))
exit_code = int(os.environ.get("FAKE_FFMPEG_EXIT", "0"))

sys.stderr.write("Input #0, wav, from '%s':\n" % source)
sys.stderr.write("  Duration: 00:00:10.00, start: 0.000000, bitrate: 1411 kb/s\n")
sys.stderr.flush()

for step in range(1, steps + 1):
    seconds = 10.0 * step / steps
    if use_progress:
        sys.stdout.write("out_time_us=%d\nprogress=continue\n" % (seconds * 1000000))
        sys.stdout.flush()
    else:
        sys.stderr.write(
            "size=  %dkB time=00:00:%05.2f bitrate= 128.0kbits/s speed=10x\r" % (step * 16, seconds)
        )
        sys.stderr.flush()
    time.sleep(delay)

if exit_code:
    sys.stderr.write("\nError while filtering: Invalid argument\n")
    sys.exit(exit_code)

with open(source, "rb") as src, open(output, "wb") as out:
    out.write(b"ID3")
    out.write(src.read())
'''


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's environment out of Settings."""
    for env_name in ENV_KEYS.values():
        monkeypatch.delenv(env_name, raising=False)
    for env_name in ("FAKE_FFMPEG_EXIT", "FAKE_FFMPEG_STEPS", "FAKE_FFMPEG_SLEEP"):
        monkeypatch.delenv(env_name, raising=False)


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> Path:
    """Executable script that behaves like a fast ffmpeg."""
    script = tmp_path / "bin" / "ffmpeg"
    script.parent.mkdir()
    script.write_text(FAKE_FFMPEG_SOURCE.replace("@PYTHON@", sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def settings(tmp_path: Path, fake_ffmpeg: Path) -> Settings:
    """Settings rooted in a temporary directory, with cleanup disabled."""
    return Settings(
        overrides={
            "upload_dir": str(tmp_path / "uploads"),
            "output_dir": str(tmp_path / "output"),
            "log_directory": str(tmp_path / "logs"),
            "cleanup_enabled": False,
            "ffmpeg_path": str(fake_ffmpeg),
        },
        settings_file=None,
    )


@pytest.fixture
def app(settings: Settings) -> Generator[Flask, None, None]:
    """Create application for testing."""
    app = create_app(settings)
    app.config["TESTING"] = True

    yield app

    with app.app_context():
        get_services().sweeper.stop(timeout=2)


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def services(app: Flask) -> Services:
    """Services wired into the test application."""
    with app.app_context():
        return get_services()


@pytest.fixture
def log_service(tmp_path: Path) -> LogService:
    return LogService(tmp_path / "logs")


@pytest.fixture
def blob_store(tmp_path: Path) -> BlobStore:
    store = BlobStore(tmp_path / "uploads", tmp_path / "output")
    store.ensure_directories()
    return store


@pytest.fixture
def runner(fake_ffmpeg: Path) -> ProcessRunner:
    return ProcessRunner(ffmpeg_path=str(fake_ffmpeg), terminate_timeout=2.0)


@pytest.fixture
def collect_events() -> Callable[..., list[JobEvent]]:
    """Return a helper that drains a subscription up to its terminal event."""

    def collect(subscription: Subscription, timeout: float = 10.0) -> list[JobEvent]:
        events: list[JobEvent] = []
        while True:
            event = subscription.get(timeout=timeout)
            if event is None:
                raise AssertionError(f"No terminal event within {timeout}s: {events}")
            events.append(event)
            if is_terminal(event):
                return events

    return collect


@pytest.fixture
def slow_ffmpeg(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make the fake ffmpeg run for several seconds."""
    monkeypatch.setenv("FAKE_FFMPEG_STEPS", "40")
    monkeypatch.setenv("FAKE_FFMPEG_SLEEP", "0.25")
