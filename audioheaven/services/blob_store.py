"""Local-disk blob storage for uploaded and processed audio files.

Each stored file lives in its role's directory as ``<fileId>.<ext>`` next to
a ``<fileId>.json`` sidecar holding the display name. Lookups go through an
in-memory registry first and fall back to the sidecar on disk, so display
names survive a lost registry (e.g. a worker restart).
"""

import json
import logging
import re
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from audioheaven.services.utils import generate_id, id_timestamp, is_valid_id

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".json"
DEFAULT_EXTENSION = "mp3"


def file_extension(file_name: str, default: str = DEFAULT_EXTENSION) -> str:
    """Return a safe extension for a client-supplied file name."""
    if "." not in file_name:
        return default
    ext = file_name.rsplit(".", 1)[-1].lower()
    if not re.fullmatch(r"[a-z0-9]{1,10}", ext):
        return default
    return ext


@dataclass(frozen=True)
class StoredFile:
    """A persisted blob with its display name."""

    file_id: str
    name: str
    path: Path

    @property
    def created_at(self) -> float:
        """Creation time (epoch seconds) encoded in the file id."""
        return id_timestamp(self.file_id) or 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"fileId": self.file_id, "fileName": self.name, "filePath": str(self.path)}


class FileRegistry:
    """Registry of stored files for one role (uploads or outputs)."""

    def __init__(self, role: str, directory: Path) -> None:
        self.role = role
        self.directory = Path(directory)
        self._files: dict[str, StoredFile] = {}
        self._lock = threading.Lock()

    def ensure_dir(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def allocate(self, file_name: str, extension: str | None = None) -> tuple[str, Path]:
        """Reserve a new file id and the content path it maps to.

        Args:
            file_name: Display name, used to derive the extension
            extension: Explicit extension overriding the one in file_name

        Returns:
            Tuple of (file_id, absolute content path)
        """
        self.ensure_dir()
        file_id = generate_id()
        ext = extension or file_extension(file_name)
        return file_id, (self.directory / f"{file_id}.{ext}").resolve()

    def _sidecar_path(self, file_id: str) -> Path:
        return self.directory / f"{file_id}{SIDECAR_SUFFIX}"

    def register(self, file_id: str, name: str, path: Path) -> StoredFile:
        """Record a file whose content is already at ``path`` and write its sidecar."""
        stored = StoredFile(file_id=file_id, name=name, path=Path(path))
        with open(self._sidecar_path(file_id), "w", encoding="utf-8") as f:
            json.dump({"name": name}, f)
        with self._lock:
            self._files[file_id] = stored
        return stored

    def store(self, stream: BinaryIO, file_name: str) -> StoredFile:
        """Single-shot store: copy a readable stream into a new file.

        Args:
            stream: Binary stream positioned at the start of the content
            file_name: Original file name (display name)

        Returns:
            The new StoredFile
        """
        file_id, path = self.allocate(file_name)
        with open(path, "wb") as out:
            shutil.copyfileobj(stream, out)
        return self.register(file_id, file_name, path)

    def _recover(self, file_id: str) -> StoredFile | None:
        """Rebuild a registry entry from its sidecar on disk."""
        sidecar = self._sidecar_path(file_id)
        if not sidecar.is_file():
            return None
        try:
            with open(sidecar, encoding="utf-8") as f:
                name = str(json.load(f)["name"])
        except (OSError, ValueError, KeyError):
            logger.debug("Unreadable %s sidecar %s", self.role, sidecar, exc_info=True)
            return None

        for candidate in sorted(self.directory.glob(f"{file_id}.*")):
            if candidate.suffix != SIDECAR_SUFFIX and candidate.is_file():
                return StoredFile(file_id=file_id, name=name, path=candidate.resolve())
        return None

    def get(self, file_id: str) -> StoredFile | None:
        """Look up a stored file by id.

        Checks the in-memory registry first and falls back to the sidecar
        on disk, re-caching what it finds. Entries whose content has been
        deleted underneath the registry are dropped.
        """
        if not is_valid_id(file_id):
            return None

        with self._lock:
            stored = self._files.get(file_id)

        if stored is not None:
            if stored.path.is_file():
                return stored
            with self._lock:
                self._files.pop(file_id, None)
            return None

        recovered = self._recover(file_id)
        if recovered is not None:
            with self._lock:
                self._files.setdefault(file_id, recovered)
        return recovered

    def remove(self, file_id: str) -> bool:
        """Delete a stored file, its sidecar and its registry entry."""
        with self._lock:
            stored = self._files.pop(file_id, None)
        if stored is None and is_valid_id(file_id):
            stored = self._recover(file_id)
        if stored is None:
            return False
        for path in (stored.path, self._sidecar_path(file_id)):
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Failed to delete %s file %s", self.role, path, exc_info=True)
        return True

    def purge_older_than(self, max_age: float, now: float | None = None) -> int:
        """Drop registry entries (and their files) older than ``max_age`` seconds.

        Returns:
            Number of entries removed
        """
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                file_id
                for file_id, stored in self._files.items()
                if now - stored.created_at > max_age
            ]
        return sum(1 for file_id in expired if self.remove(file_id))

    def __len__(self) -> int:
        with self._lock:
            return len(self._files)


class BlobStore:
    """Holds the two disjoint file registries: uploads (input) and outputs."""

    def __init__(self, upload_dir: Path, output_dir: Path) -> None:
        self.uploads = FileRegistry("uploads", upload_dir)
        self.outputs = FileRegistry("outputs", output_dir)

    def ensure_directories(self) -> None:
        self.uploads.ensure_dir()
        self.outputs.ensure_dir()
