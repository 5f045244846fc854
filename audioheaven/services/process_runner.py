"""Runs ffmpeg as a child process and reports its progress without blocking."""

import codecs
import logging
import os
import shutil
import subprocess
import threading
from collections.abc import Callable
from pathlib import Path
from typing import IO

from audioheaven.config import BASE_DIR
from audioheaven.errors import JobCancelled, LaunchFailed, ToolError, ToolFailed
from audioheaven.services.progress import ProgressParser

logger = logging.getLogger(__name__)

READ_SIZE = 4096
STDERR_TAIL_CHARS = 4000
TERMINATE_TIMEOUT_SECONDS = 5.0

ProgressCallback = Callable[[int], None]
DoneCallback = Callable[[ToolError | None], None]


def resolve_ffmpeg(configured: str = "") -> str | None:
    """Locate the ffmpeg binary.

    Order: explicit setting (FFMPEG_PATH), PATH lookup, then the project's
    local ``bin/`` folder.
    """
    if configured:
        return configured
    found = shutil.which("ffmpeg")
    if found:
        return found
    local = BASE_DIR / "bin" / ("ffmpeg.exe" if os.name == "nt" else "ffmpeg")
    if local.is_file():
        return str(local)
    return None


class ProcessHandle:
    """A running (or finished) ffmpeg invocation."""

    def __init__(self, process: subprocess.Popen[bytes], command: list[str]) -> None:
        self.process = process
        self.command = command
        self.returncode: int | None = None
        self._cancel_requested = threading.Event()
        self._done = threading.Event()
        self._stderr_tail = ""
        self._tail_lock = threading.Lock()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return not self._done.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the completion callback has run.

        Returns:
            True if the run finished within the timeout
        """
        return self._done.wait(timeout)

    def _remember_stderr(self, text: str) -> None:
        with self._tail_lock:
            self._stderr_tail = (self._stderr_tail + text)[-STDERR_TAIL_CHARS:]

    def last_error_line(self) -> str:
        """Last non-empty stderr line, usually ffmpeg's reason for failing."""
        with self._tail_lock:
            tail = self._stderr_tail
        lines = [line.strip() for line in tail.replace("\r", "\n").split("\n")]
        lines = [line for line in lines if line]
        return lines[-1] if lines else ""


class ProcessRunner:
    """Spawns ffmpeg and turns its output into progress callbacks.

    Each run uses two reader threads (stdout, stderr) that decode output
    as it arrives and feed a shared :class:`ProgressParser`, plus a waiter
    thread that reaps the exit status and fires ``on_done`` exactly once.
    """

    def __init__(
        self,
        ffmpeg_path: str = "",
        progress_format: str = "stats",
        terminate_timeout: float = TERMINATE_TIMEOUT_SECONDS,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.progress_format = progress_format
        self.terminate_timeout = terminate_timeout

    def build_command(
        self, binary: str, source_path: Path, output_path: Path, args: list[str]
    ) -> list[str]:
        """Assemble the full ffmpeg command line."""
        command = [binary, "-hide_banner", "-nostdin", "-y", "-i", str(source_path), *args]
        if self.progress_format == "progress":
            command += ["-progress", "pipe:1", "-nostats"]
        command.append(str(output_path))
        return command

    def run(
        self,
        source_path: Path,
        output_path: Path,
        args: list[str],
        on_progress: ProgressCallback,
        on_done: DoneCallback,
    ) -> ProcessHandle:
        """Start ffmpeg in the background.

        Args:
            source_path: Input file
            output_path: File ffmpeg writes
            args: Filter/codec arguments placed between input and output
            on_progress: Called with each new (strictly increasing) percentage
            on_done: Called once with None on success, or the ToolError
                (ToolFailed, JobCancelled) describing the failure

        Returns:
            Handle for waiting on or cancelling the run

        Raises:
            LaunchFailed: If ffmpeg cannot be found or started
        """
        binary = resolve_ffmpeg(self.ffmpeg_path)
        if binary is None:
            raise LaunchFailed("FFmpeg not found. Install it or set FFMPEG_PATH.")

        command = self.build_command(binary, source_path, output_path, args)
        logger.debug("Launching ffmpeg: %s", " ".join(command))
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise LaunchFailed(f"FFmpeg error: {e}") from e

        handle = ProcessHandle(process, command)
        parser = ProgressParser(self.progress_format)
        parser_lock = threading.Lock()

        def pump(stream: IO[bytes], source: str) -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            try:
                while True:
                    data = stream.read1(READ_SIZE)  # type: ignore[attr-defined]
                    if not data:
                        break
                    text = decoder.decode(data)
                    if source == "stderr":
                        handle._remember_stderr(text)
                    # Report under the lock so callbacks arrive in order
                    with parser_lock:
                        progress = parser.feed(text, source)
                        if progress is not None:
                            try:
                                on_progress(progress)
                            except Exception:
                                logger.exception("Progress callback failed")
            except (OSError, ValueError):
                logger.debug("Reader for %s stopped", source, exc_info=True)
            finally:
                stream.close()

        readers = [
            threading.Thread(target=pump, args=(process.stdout, "stdout"), daemon=True),
            threading.Thread(target=pump, args=(process.stderr, "stderr"), daemon=True),
        ]
        for reader in readers:
            reader.start()

        threading.Thread(
            target=self._wait, args=(handle, readers, on_done), daemon=True
        ).start()
        return handle

    def _wait(
        self,
        handle: ProcessHandle,
        readers: list[threading.Thread],
        on_done: DoneCallback,
    ) -> None:
        for reader in readers:
            reader.join()
        handle.returncode = handle.process.wait()

        error: ToolError | None
        if handle.cancel_requested:
            error = JobCancelled()
        elif handle.returncode != 0:
            error = ToolFailed(handle.returncode, handle.last_error_line())
            logger.warning(
                "ffmpeg exited with code %s: %s", handle.returncode, " ".join(handle.command)
            )
        else:
            error = None

        try:
            on_done(error)
        except Exception:
            logger.exception("Completion callback failed")
        finally:
            handle._done.set()

    def cancel(self, handle: ProcessHandle) -> None:
        """Ask ffmpeg to stop; kill it if it ignores SIGTERM.

        The run's ``on_done`` fires with JobCancelled once the process has
        actually exited.
        """
        if not handle.running:
            return
        handle._cancel_requested.set()
        try:
            handle.process.terminate()
        except OSError:
            # Already exited
            return

        def escalate() -> None:
            try:
                handle.process.wait(timeout=self.terminate_timeout)
            except subprocess.TimeoutExpired:
                logger.warning("ffmpeg (pid %s) ignored SIGTERM; killing", handle.pid)
                handle.process.kill()

        threading.Thread(target=escalate, daemon=True).start()
