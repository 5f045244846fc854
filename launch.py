#!/usr/bin/env python3
"""audioheaven launcher.

Starts gunicorn serving the audio effects API and waits until it answers.
"""

import os
import shutil
import signal
import socket
import subprocess
import sys
import time
import urllib.request

# ── Configuration ────────────────────────────────────────────
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
HOST = os.environ.get("AUDIOHEAVEN_HOST", "127.0.0.1")
PORT = int(os.environ.get("AUDIOHEAVEN_PORT", "5000"))
THREADS = int(os.environ.get("AUDIOHEAVEN_THREADS", "8"))
HEALTH_URL = f"http://127.0.0.1:{PORT}/api/audio/upload/config"
PID_FILE = os.path.join(PROJECT_DIR, ".gunicorn.pid")

gunicorn_proc: subprocess.Popen | None = None


def log(msg: str) -> None:
    print(f"[audioheaven] {msg}", flush=True)


def port_in_use(port: int) -> bool:
    """Check if a port is already in use."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(("127.0.0.1", port)) == 0


def find_gunicorn() -> str | None:
    """Locate gunicorn next to the running interpreter, then on PATH."""
    candidate = os.path.join(os.path.dirname(sys.executable), "gunicorn")
    if os.path.isfile(candidate):
        return candidate
    return shutil.which("gunicorn")


def wait_for_server(timeout: int = 15) -> bool:
    """Poll the health URL until the server responds or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            urllib.request.urlopen(HEALTH_URL, timeout=1)
            return True
        except OSError:
            pass
        # Check if gunicorn died
        if gunicorn_proc and gunicorn_proc.poll() is not None:
            return False
        time.sleep(0.5)
    return False


def shutdown(_signum: int = 0, _frame: object = None) -> None:
    """Gracefully stop gunicorn."""
    print()
    log("Shutting down...")
    if gunicorn_proc and gunicorn_proc.poll() is None:
        gunicorn_proc.terminate()
        try:
            gunicorn_proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            gunicorn_proc.kill()
    if os.path.exists(PID_FILE):
        os.remove(PID_FILE)
    log("Stopped.")
    sys.exit(0)


def main() -> None:
    global gunicorn_proc

    # ── Preflight checks ─────────────────────────────────────
    gunicorn_bin = find_gunicorn()
    if gunicorn_bin is None:
        log("gunicorn not found. Install it with:")
        log("  pip install -e .")
        sys.exit(1)

    if not (os.environ.get("FFMPEG_PATH") or shutil.which("ffmpeg")):
        log("Warning: ffmpeg not found on PATH; processing jobs will fail.")
        log("Install ffmpeg or set FFMPEG_PATH.")

    if port_in_use(PORT):
        log(f"Port {PORT} is already in use. Is audioheaven already running?")
        sys.exit(1)

    # ── Register signal handlers ─────────────────────────────
    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    # ── Start gunicorn ───────────────────────────────────────
    log(f"Starting audioheaven (gunicorn on {HOST}:{PORT})...")

    # Jobs, upload sessions and SSE subscribers live in process memory,
    # so a single worker serves every request with threads.
    gunicorn_proc = subprocess.Popen(
        [
            gunicorn_bin,
            "--bind",
            f"{HOST}:{PORT}",
            "--workers",
            "1",
            "--threads",
            str(THREADS),
            "--timeout",
            "300",
            "--pid",
            PID_FILE,
            "--access-logfile",
            "-",
            "--error-logfile",
            "-",
            "audioheaven:create_app()",
        ],
        cwd=PROJECT_DIR,
    )

    # ── Wait for server ──────────────────────────────────────
    log("Waiting for server...")
    if not wait_for_server():
        log("Server did not start. Check output above.")
        shutdown()

    log(f"audioheaven is running at: http://{HOST}:{PORT}")
    log("Press Ctrl+C to stop the server.")

    # ── Block until gunicorn exits ───────────────────────────
    try:
        gunicorn_proc.wait()
    except KeyboardInterrupt:
        shutdown()


if __name__ == "__main__":
    main()
