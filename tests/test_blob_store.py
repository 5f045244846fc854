"""Tests for blob storage and identifiers."""

import io
import json
import logging
import time
from pathlib import Path

import pytest

from audioheaven.services.blob_store import BlobStore, FileRegistry, file_extension
from audioheaven.services.utils import format_file_size, generate_id, id_timestamp, is_valid_id


class TestIdentifiers:
    """Tests for generated ids."""

    def test_generated_ids_are_valid_and_unique(self) -> None:
        ids = {generate_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(is_valid_id(file_id) for file_id in ids)

    def test_timestamp_roundtrip(self) -> None:
        """Test that the id encodes its creation time."""
        before = time.time()
        file_id = generate_id()
        created = id_timestamp(file_id)

        assert created is not None
        assert before - 1 <= created <= time.time() + 1

    def test_rejects_foreign_ids(self) -> None:
        """Test that path-like or malformed ids are rejected."""
        for value in ("", "../etc/passwd", "abc", "123-xyz", "1700000000000-ABCDEF"):
            assert not is_valid_id(value)
            assert id_timestamp(value) is None

    def test_format_file_size(self) -> None:
        assert format_file_size(512) == "512.0 B"
        assert format_file_size(1536) == "1.5 KB"
        assert format_file_size(12_000_000) == "11.4 MB"


class TestFileExtension:
    """Tests for extension sanitizing."""

    def test_extensions(self) -> None:
        assert file_extension("song.MP3") == "mp3"
        assert file_extension("archive.tar.flac") == "flac"
        assert file_extension("noext") == "mp3"
        assert file_extension("bad.ext with space") == "mp3"
        assert file_extension("bad.waytoolongextension") == "mp3"
        assert file_extension("noext", default="bin") == "bin"


class TestFileRegistry:
    """Tests for FileRegistry."""

    def test_store_and_get(self, tmp_path: Path) -> None:
        """Test that a stored file is written with its sidecar."""
        registry = FileRegistry("uploads", tmp_path)

        stored = registry.store(io.BytesIO(b"audio bytes"), "My Song.wav")

        assert stored.path == tmp_path.resolve() / f"{stored.file_id}.wav"
        assert stored.path.read_bytes() == b"audio bytes"
        sidecar = json.loads((tmp_path / f"{stored.file_id}.json").read_text())
        assert sidecar == {"name": "My Song.wav"}
        assert registry.get(stored.file_id) == stored
        assert len(registry) == 1

    def test_to_dict(self, tmp_path: Path) -> None:
        registry = FileRegistry("uploads", tmp_path)
        stored = registry.store(io.BytesIO(b"x"), "a.ogg")

        assert stored.to_dict() == {
            "fileId": stored.file_id,
            "fileName": "a.ogg",
            "filePath": str(stored.path),
        }

    def test_get_falls_back_to_sidecar(self, tmp_path: Path) -> None:
        """Test that a fresh registry recovers display names from disk."""
        stored = FileRegistry("outputs", tmp_path).store(io.BytesIO(b"x"), "track.flac")

        recovered = FileRegistry("outputs", tmp_path)
        found = recovered.get(stored.file_id)

        assert found is not None
        assert found.name == "track.flac"
        assert found.path == stored.path
        assert len(recovered) == 1

    def test_get_unknown_or_invalid(self, tmp_path: Path) -> None:
        registry = FileRegistry("uploads", tmp_path)

        assert registry.get(generate_id()) is None
        assert registry.get("../../etc/passwd") is None

    def test_get_drops_deleted_content(self, tmp_path: Path) -> None:
        """Test that an entry whose file vanished is not returned."""
        registry = FileRegistry("uploads", tmp_path)
        stored = registry.store(io.BytesIO(b"x"), "a.wav")

        stored.path.unlink()

        assert registry.get(stored.file_id) is None
        assert len(registry) == 0

    def test_allocate_with_explicit_extension(self, tmp_path: Path) -> None:
        registry = FileRegistry("outputs", tmp_path)

        file_id, path = registry.allocate("song.wav", extension="mp3")

        assert is_valid_id(file_id)
        assert path.name == f"{file_id}.mp3"
        assert not path.exists()

    def test_remove(self, tmp_path: Path) -> None:
        registry = FileRegistry("uploads", tmp_path)
        stored = registry.store(io.BytesIO(b"x"), "a.wav")

        assert registry.remove(stored.file_id) is True
        assert not stored.path.exists()
        assert not (tmp_path / f"{stored.file_id}.json").exists()
        assert registry.remove(stored.file_id) is False

    def test_unreadable_sidecar(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a corrupt sidecar is treated as a miss and logged with the role."""
        stored = FileRegistry("outputs", tmp_path).store(io.BytesIO(b"x"), "track.mp3")
        (tmp_path / f"{stored.file_id}.json").write_text("{not json")

        with caplog.at_level(logging.DEBUG, logger="audioheaven.services.blob_store"):
            assert FileRegistry("outputs", tmp_path).get(stored.file_id) is None

        assert "Unreadable outputs sidecar" in caplog.text

    def test_purge_older_than(self, tmp_path: Path) -> None:
        """Test that only entries older than the window are purged."""
        registry = FileRegistry("uploads", tmp_path)
        stored = registry.store(io.BytesIO(b"x"), "a.wav")

        assert registry.purge_older_than(60) == 0
        assert registry.get(stored.file_id) is not None

        assert registry.purge_older_than(60, now=time.time() + 120) == 1
        assert registry.get(stored.file_id) is None


class TestBlobStore:
    """Tests for the uploads/outputs pair."""

    def test_roles_are_disjoint(self, tmp_path: Path) -> None:
        store = BlobStore(tmp_path / "uploads", tmp_path / "output")
        store.ensure_directories()

        stored = store.uploads.store(io.BytesIO(b"x"), "a.wav")

        assert (tmp_path / "output").is_dir()
        assert store.outputs.get(stored.file_id) is None
