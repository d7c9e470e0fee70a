"""Unit tests for lexvault.documents.storage and lexvault.documents.mime."""

import errno
import hashlib
import io
import os
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from lexvault.documents.mime import DEFAULT_MIME_TYPE, mime_type_for
from lexvault.documents.storage import FileStore, StoragePathDeriver, open_source
from lexvault.engine.errors import (
    LexVaultCancelledError,
    LexVaultIOError,
    LexVaultResourceError,
    LexVaultValidationError,
)


class TestStoragePathDeriver:

    def test_layout(self, tmp_path):
        deriver = StoragePathDeriver(tmp_path)
        assert deriver.path_for("abcdef-123", 3) == tmp_path / "ab" / "abcdef-123" / "v3"

    def test_deterministic_and_distinct(self, tmp_path):
        deriver = StoragePathDeriver(tmp_path)
        assert deriver.path_for("doc1", 1) == deriver.path_for("doc1", 1)
        assert deriver.path_for("doc1", 1) != deriver.path_for("doc1", 2)
        assert deriver.path_for("doc1", 1).parent.parent == deriver.path_for("do-other", 1).parent.parent

    def test_relative_base_is_made_absolute(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        deriver = StoragePathDeriver("storage")
        assert deriver.base_path == tmp_path / "storage"
        assert deriver.path_for("xy1", 1).is_absolute()

    def test_no_io(self, tmp_path):
        deriver = StoragePathDeriver(tmp_path / "missing")
        deriver.path_for("zz", 1)
        assert not (tmp_path / "missing").exists()


class TestMime:

    @pytest.mark.parametrize("filename,expected", [
        ("contract.pdf", "application/pdf"),
        ("CONTRACT.PDF", "application/pdf"),
        ("brief.docx", "application/vnd.openxmlformats-officedocument.wordprocessingml.document"),
        ("notes.txt", "text/plain"),
        ("scan.TIFF", "image/tiff"),
        ("archive.tar.zip", "application/zip"),
    ])
    def test_known_extensions(self, filename, expected):
        assert mime_type_for(filename) == expected

    @pytest.mark.parametrize("filename", ["README", "data.unknownext", ".hidden"])
    def test_default(self, filename):
        assert mime_type_for(filename) == DEFAULT_MIME_TYPE


class TestOpenSource:

    def test_bytes(self):
        with open_source(b"abc") as f:
            assert f.read() == b"abc"

    def test_path(self, tmp_path):
        p = tmp_path / "in.bin"
        p.write_bytes(b"from disk")
        with open_source(p) as f:
            assert f.read() == b"from disk"
        with open_source(str(p)) as f:
            assert f.read() == b"from disk"

    def test_file_object_left_open(self):
        buf = io.BytesIO(b"stream")
        with open_source(buf) as f:
            assert f.read() == b"stream"
        assert not buf.closed

    def test_missing_path(self, tmp_path):
        with pytest.raises(LexVaultIOError):
            with open_source(tmp_path / "nope"):
                pass

    def test_unsupported(self):
        with pytest.raises(LexVaultValidationError):
            with open_source(12345):
                pass


class TestFileStore:

    def test_write_stream_hashes_and_sizes(self, store):
        data = b"x" * 100 + b"tail"
        path = store.deriver.path_for("doc-1", 1)
        checksum, size = store.write_stream(io.BytesIO(data), path)
        assert size == len(data)
        assert checksum == hashlib.sha256(data).hexdigest()
        assert path.read_bytes() == data
        assert store.fingerprint(path) == checksum
        assert store.size(path) == len(data)
        assert store.read_bytes(path) == data

    def test_write_is_exclusive(self, store):
        path = store.deriver.path_for("doc-1", 1)
        store.write_stream(io.BytesIO(b"first"), path)
        with pytest.raises(LexVaultIOError):
            store.write_stream(io.BytesIO(b"second"), path)
        assert path.read_bytes() == b"first"

    def test_upload_limit_removes_partial(self, store):
        path = store.deriver.path_for("doc-1", 1)
        with pytest.raises(LexVaultValidationError):
            store.write_stream(io.BytesIO(b"y" * 100), path, max_bytes=50)
        assert not path.exists()

    def test_source_read_error_removes_partial(self, store):
        class Broken(io.RawIOBase):
            calls = 0

            def read(self, n=-1):
                self.calls += 1
                if self.calls > 1:
                    raise OSError(errno.EIO, "device gone")
                return b"z" * 16

        path = store.deriver.path_for("doc-1", 1)
        with pytest.raises(LexVaultIOError):
            store.write_stream(Broken(), path)
        assert not path.exists()

    def test_cancel_between_chunks_removes_partial(self, store):
        cancel = threading.Event()

        class Slow(io.RawIOBase):
            def read(self, n=-1):
                # Cancellation arrives after the first chunk
                cancel.set()
                return b"c" * 16

        path = store.deriver.path_for("doc-1", 1)
        with pytest.raises(LexVaultCancelledError):
            store.write_stream(Slow(), path, cancel=cancel)
        assert not path.exists()

    def test_disk_full_maps_to_resource_error(self, store):
        path = store.deriver.path_for("doc-1", 1)
        with patch("builtins.open", side_effect=OSError(errno.ENOSPC, "No space left on device")):
            with pytest.raises(LexVaultResourceError):
                store.write_stream(io.BytesIO(b"data"), path)

    def test_delete_missing_is_ok_and_prunes(self, store):
        path = store.deriver.path_for("doc-1", 1)
        store.write_stream(io.BytesIO(b"data"), path)
        assert store.delete(path) is True
        assert store.delete(path) is False
        assert not path.parent.exists()
        assert not path.parent.parent.exists()
        assert store.base_path.exists()

    def test_delete_keeps_sibling_versions(self, store):
        v1 = store.deriver.path_for("doc-1", 1)
        v2 = store.deriver.path_for("doc-1", 2)
        store.write_stream(io.BytesIO(b"1"), v1)
        store.write_stream(io.BytesIO(b"2"), v2)
        store.delete(v1)
        assert v2.exists()

    def test_copy_to(self, store, tmp_path):
        path = store.deriver.path_for("doc-1", 1)
        store.write_stream(io.BytesIO(b"payload" * 10), path)
        dest = tmp_path / "out.bin"
        assert store.copy_to(path, dest) == 70
        assert dest.read_bytes() == b"payload" * 10

    def test_read_missing_raises_io(self, store):
        with pytest.raises(LexVaultIOError):
            store.read_bytes(store.deriver.path_for("doc-1", 9))

    def test_iter_version_files(self, store):
        assert list(store.iter_version_files()) == []
        for doc, v in (("aa1", 1), ("aa1", 2), ("bb2", 1)):
            store.write_stream(io.BytesIO(b"."), store.deriver.path_for(doc, v))
        (store.base_path / "stray.txt").write_text("not a version")
        found = list(store.iter_version_files())
        assert found == [
            store.deriver.path_for("aa1", 1),
            store.deriver.path_for("aa1", 2),
            store.deriver.path_for("bb2", 1),
        ]
