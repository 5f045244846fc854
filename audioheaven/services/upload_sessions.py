"""Chunked upload sessions: reassembles out-of-order chunks into one file."""

import logging
import math
import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from audioheaven.errors import (
    IncompleteUpload,
    PayloadTooLarge,
    SessionNotFound,
    ValidationError,
)
from audioheaven.services.blob_store import BlobStore, StoredFile
from audioheaven.services.log_service import LogService
from audioheaven.services.utils import format_file_size, generate_id

logger = logging.getLogger(__name__)

CHUNK_NAME_WIDTH = 6


def chunk_file_name(index: int) -> str:
    """Zero-padded chunk file name; lexicographic order equals index order."""
    return f"chunk-{index:0{CHUNK_NAME_WIDTH}d}"


def _remove_empty_dir(path: Path) -> None:
    """Remove a closed session's temp dir left behind by a late staging file.

    Only an empty directory is removed; chunks still being assembled keep it.
    """
    try:
        path.rmdir()
    except FileNotFoundError:
        pass
    except OSError:
        logger.debug("Temp dir %s still in use", path)


@dataclass
class UploadSession:
    """Server-side bookkeeping for one in-progress chunked upload."""

    session_id: str
    file_name: str
    file_size: int
    total_chunks: int
    temp_dir: Path
    created_at: float = field(default_factory=time.time)
    received: set[int] = field(default_factory=set)
    closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def complete(self) -> bool:
        return len(self.received) == self.total_chunks

    def chunk_path(self, index: int) -> Path:
        return self.temp_dir / chunk_file_name(index)

    def progress_dict(self) -> dict[str, Any]:
        return {
            "received": len(self.received),
            "total": self.total_chunks,
            "complete": self.complete,
        }


class UploadSessionManager:
    """Owns in-progress chunked uploads.

    Locking: ``_lock`` guards the session registry; each session's own lock
    guards its received-index set and its open/closed state. Chunk bytes are
    staged outside the session lock and renamed into place under it, so
    parallel chunk writes for one session only serialize on the rename.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        log: LogService,
        max_file_size: int,
        chunk_size: int,
    ) -> None:
        self.blob_store = blob_store
        self.log = log
        self.max_file_size = max_file_size
        self.chunk_size = chunk_size
        self._sessions: dict[str, UploadSession] = {}
        self._lock = threading.Lock()

    def _get_open(self, session_id: str) -> UploadSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound()
        return session

    def init_session(self, file_name: str, file_size: int) -> dict[str, Any]:
        """Start a chunked upload.

        Args:
            file_name: Original file name
            file_size: Total size in bytes

        Returns:
            Dict with sessionId, chunkSize and totalChunks

        Raises:
            ValidationError: If the name is empty or the size is not positive
            PayloadTooLarge: If file_size exceeds the configured maximum
        """
        if not file_name:
            raise ValidationError("fileName is required")
        if file_size <= 0:
            raise ValidationError("fileSize must be positive")
        if file_size > self.max_file_size:
            raise PayloadTooLarge(
                f"File too large. Max: {self.max_file_size // (1024 * 1024)}MB"
            )

        uploads_dir = self.blob_store.uploads.ensure_dir()
        session_id = generate_id()
        temp_dir = uploads_dir / f"temp-{session_id}"
        temp_dir.mkdir(parents=True)

        session = UploadSession(
            session_id=session_id,
            file_name=file_name,
            file_size=file_size,
            total_chunks=math.ceil(file_size / self.chunk_size),
            temp_dir=temp_dir,
        )
        with self._lock:
            self._sessions[session_id] = session

        self.log.info(
            "upload",
            "upload_session_started",
            f"Started chunked upload of {file_name} ({format_file_size(file_size)})",
            {
                "session_id": session_id,
                "file_name": file_name,
                "file_size": file_size,
                "total_chunks": session.total_chunks,
            },
        )

        return {
            "sessionId": session_id,
            "chunkSize": self.chunk_size,
            "totalChunks": session.total_chunks,
        }

    def write_chunk(self, session_id: str, chunk_index: int, data: bytes) -> dict[str, Any]:
        """Store one chunk. Re-sending an index overwrites it.

        Returns:
            Dict with received, total and complete

        Raises:
            SessionNotFound: If the session is unknown, finalized or reaped
            ValidationError: If the index is out of range or the chunk is
                empty or larger than the chunk size
        """
        session = self._get_open(session_id)

        if not 0 <= chunk_index < session.total_chunks:
            raise ValidationError(
                f"chunkIndex must be between 0 and {session.total_chunks - 1}"
            )
        if not data:
            raise ValidationError("Empty chunk")
        if len(data) > self.chunk_size:
            raise ValidationError(f"Chunk exceeds {self.chunk_size} bytes")

        try:
            fd, staging_name = tempfile.mkstemp(
                prefix=f".{chunk_file_name(chunk_index)}-", dir=session.temp_dir
            )
        except FileNotFoundError:
            # Temp dir removed by a concurrent cancel or reap
            raise SessionNotFound() from None

        staging = Path(staging_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)

            with session.lock:
                if session.closed:
                    raise SessionNotFound()
                os.replace(staging, session.chunk_path(chunk_index))
                session.received.add(chunk_index)
                result = session.progress_dict()
        except FileNotFoundError:
            raise SessionNotFound() from None
        finally:
            staging.unlink(missing_ok=True)
            if session.closed:
                _remove_empty_dir(session.temp_dir)

        logger.debug(
            "Chunk %d stored for %s (%d/%d)",
            chunk_index,
            session_id,
            result["received"],
            result["total"],
        )
        return result

    def finalize(self, session_id: str) -> dict[str, Any]:
        """Concatenate all chunks into a stored upload and end the session.

        Returns:
            Dict with fileId, fileName and filePath

        Raises:
            SessionNotFound: If the session is unknown (including a second
                finalize of the same session)
            IncompleteUpload: If any chunk index has not been received
        """
        session = self._get_open(session_id)

        with session.lock:
            if session.closed:
                raise SessionNotFound()
            if not session.complete:
                raise IncompleteUpload(len(session.received), session.total_chunks)
            session.closed = True

        with self._lock:
            self._sessions.pop(session_id, None)

        uploads = self.blob_store.uploads
        try:
            file_id, final_path = uploads.allocate(session.file_name)
            try:
                with open(final_path, "wb") as out:
                    for index in range(session.total_chunks):
                        with open(session.chunk_path(index), "rb") as chunk:
                            shutil.copyfileobj(chunk, out)
                stored = uploads.register(file_id, session.file_name, final_path)
            except Exception:
                final_path.unlink(missing_ok=True)
                raise
        finally:
            shutil.rmtree(session.temp_dir, ignore_errors=True)

        self.log.info(
            "upload",
            "upload_finalized",
            f"Assembled {session.file_name} from {session.total_chunks} chunks",
            {
                "session_id": session_id,
                "file_id": stored.file_id,
                "file_name": stored.name,
                "total_chunks": session.total_chunks,
            },
        )

        return stored.to_dict()

    def _discard(self, session: UploadSession) -> None:
        with session.lock:
            session.closed = True
        shutil.rmtree(session.temp_dir, ignore_errors=True)

    def cancel(self, session_id: str) -> bool:
        """Abort an upload. Unknown sessions are ignored.

        Returns:
            True if a session was removed
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        self._discard(session)
        self.log.info(
            "upload",
            "upload_cancelled",
            f"Cancelled upload of {session.file_name}",
            {"session_id": session_id, "received": len(session.received)},
        )
        return True

    def status(self, session_id: str) -> dict[str, Any]:
        """Read-only snapshot of a session."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return {"exists": False}
        with session.lock:
            return {"exists": True, **session.progress_dict()}

    def reap_stale(self, max_age: float, now: float | None = None) -> int:
        """Delete sessions older than ``max_age`` seconds.

        Returns:
            Number of sessions removed
        """
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                self._sessions.pop(session_id)
                for session_id, session in list(self._sessions.items())
                if now - session.created_at > max_age
            ]

        for session in expired:
            self._discard(session)
            self.log.info(
                "cleanup",
                "upload_session_expired",
                f"Removed stale upload of {session.file_name}",
                {"session_id": session.session_id, "received": len(session.received)},
            )

        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
