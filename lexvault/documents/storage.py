"""
LexVault Storage — physical path derivation and the filesystem blob store.

Layout:
    {base_path}/{document_id[:2]}/{document_id}/v{version}

The two-character shard directory bounds the fan-out of ``base_path`` to the
size of the identifier alphabet. Version files are created exclusively and
never rewritten.
"""

from __future__ import annotations

import errno
import hashlib
import io
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Tuple, Union

from lexvault.engine.errors import (
    LexVaultCancelledError,
    LexVaultError,
    LexVaultIOError,
    LexVaultResourceError,
    LexVaultValidationError,
)

logger = logging.getLogger("lexvault.documents.storage")

ContentSource = Union[bytes, bytearray, memoryview, str, os.PathLike, BinaryIO]

_EXHAUSTION_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC), errno.ENOMEM}


class StoragePathDeriver:
    """Maps (document id, version number) to a physical path. Pure, no I/O."""

    SHARD_WIDTH = 2

    def __init__(self, base_path: Union[str, Path]):
        self._base = Path(os.path.abspath(base_path))

    @property
    def base_path(self) -> Path:
        return self._base

    def path_for(self, document_id: str, version: int) -> Path:
        shard = document_id[: self.SHARD_WIDTH]
        return self._base / shard / document_id / f"v{version}"


def _map_os_error(exc: OSError, action: str, path: Path) -> LexVaultError:
    if exc.errno in _EXHAUSTION_ERRNOS:
        return LexVaultResourceError(f"Storage exhausted while {action} {path}: {exc}", path=str(path))
    return LexVaultIOError(f"I/O error while {action} {path}: {exc}", path=str(path))


@contextmanager
def open_source(content: ContentSource) -> Iterator[BinaryIO]:
    """
    Normalize upload content to a readable binary stream.

    Accepts raw bytes, a filesystem path, or an already-open binary file
    (which is left open for the caller).
    """
    if isinstance(content, (bytes, bytearray, memoryview)):
        yield io.BytesIO(bytes(content))
    elif isinstance(content, (str, os.PathLike)):
        try:
            f = open(content, "rb")
        except OSError as e:
            raise _map_os_error(e, "opening source", Path(content)) from e
        with f:
            yield f
    elif hasattr(content, "read"):
        yield content
    else:
        raise LexVaultValidationError(
            f"Unsupported content source type: {type(content).__name__}",
        )


class FileStore:
    """
    Filesystem collaborator: directory creation, streaming copy with
    fingerprinting, reads, size queries and deletion.
    """

    def __init__(self, deriver: StoragePathDeriver, chunk_size: int = 64 * 1024):
        self._deriver = deriver
        self._chunk_size = chunk_size

    @property
    def deriver(self) -> StoragePathDeriver:
        return self._deriver

    @property
    def base_path(self) -> Path:
        return self._deriver.base_path

    def ensure_parent(self, path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise _map_os_error(e, "creating directory for", path) from e

    def write_stream(
        self,
        source: BinaryIO,
        path: Path,
        max_bytes: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[str, int]:
        """
        Copy ``source`` to ``path`` in one pass, computing SHA-256 and size.

        The target is created exclusively: an existing file at ``path`` is
        never overwritten. A partially written file is removed on failure,
        including when ``cancel`` is set between chunks.

        Returns:
            (sha256 hex digest, bytes written)
        """
        self.ensure_parent(path)
        try:
            out = open(path, "xb")
        except FileExistsError as e:
            raise LexVaultIOError(f"Version file already exists: {path}", path=str(path)) from e
        except OSError as e:
            raise _map_os_error(e, "creating", path) from e

        digest = hashlib.sha256()
        size = 0
        try:
            with out:
                while True:
                    if cancel is not None and cancel.is_set():
                        raise LexVaultCancelledError(f"Write to {path} cancelled", path=str(path))
                    chunk = source.read(self._chunk_size)
                    if not chunk:
                        break
                    size += len(chunk)
                    if max_bytes is not None and size > max_bytes:
                        raise LexVaultValidationError(
                            f"Upload exceeds limit of {max_bytes} bytes",
                            path=str(path),
                            max_bytes=max_bytes,
                        )
                    out.write(chunk)
                    digest.update(chunk)
        except LexVaultError:
            self._discard(path)
            raise
        except MemoryError as e:
            self._discard(path)
            raise LexVaultResourceError(f"Out of memory while writing {path}", path=str(path)) from e
        except OSError as e:
            self._discard(path)
            raise _map_os_error(e, "writing", path) from e

        logger.debug(f"Wrote {path} ({size} bytes, sha256={digest.hexdigest()[:12]})")
        return digest.hexdigest(), size

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove partial file {path}: {e}")

    def open(self, path: Union[str, Path]) -> BinaryIO:
        try:
            return open(path, "rb")
        except OSError as e:
            raise _map_os_error(e, "opening", Path(path)) from e

    def read_bytes(self, path: Union[str, Path]) -> bytes:
        try:
            return Path(path).read_bytes()
        except MemoryError as e:
            raise LexVaultResourceError(f"Out of memory reading {path}", path=str(path)) from e
        except OSError as e:
            raise _map_os_error(e, "reading", Path(path)) from e

    def copy_to(self, path: Union[str, Path], destination: Union[str, Path]) -> int:
        """Stream a stored file to ``destination``; returns bytes copied."""
        dest = Path(destination)
        copied = 0
        with self.open(path) as src:
            try:
                with open(dest, "wb") as out:
                    for chunk in iter(lambda: src.read(self._chunk_size), b""):
                        out.write(chunk)
                        copied += len(chunk)
            except OSError as e:
                raise _map_os_error(e, "copying to", dest) from e
        return copied

    def fingerprint(self, path: Union[str, Path]) -> str:
        """SHA-256 hex digest of a stored file, read in chunks."""
        digest = hashlib.sha256()
        with self.open(path) as f:
            try:
                for chunk in iter(lambda: f.read(self._chunk_size), b""):
                    digest.update(chunk)
            except OSError as e:
                raise _map_os_error(e, "reading", Path(path)) from e
        return digest.hexdigest()

    def size(self, path: Union[str, Path]) -> int:
        try:
            return Path(path).stat().st_size
        except OSError as e:
            raise _map_os_error(e, "stat", Path(path)) from e

    def exists(self, path: Union[str, Path]) -> bool:
        return Path(path).is_file()

    def delete(self, path: Union[str, Path]) -> bool:
        """
        Delete a stored file. A file that is already gone is not an error.

        Returns True if a file was removed. Empty document / shard directories
        left behind are pruned.
        """
        p = Path(path)
        try:
            p.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise _map_os_error(e, "deleting", p) from e
        self._prune_empty_dirs(p.parent)
        return True

    def _prune_empty_dirs(self, directory: Path) -> None:
        # document dir, then shard dir; never above base_path
        for d in (directory, directory.parent):
            if d == self.base_path or self.base_path not in d.parents:
                return
            try:
                d.rmdir()
            except OSError:
                return

    def iter_version_files(self) -> Iterator[Path]:
        """Yield every ``{shard}/{document_id}/v*`` file under the base path."""
        if not self.base_path.is_dir():
            return
        for shard in sorted(self.base_path.iterdir()):
            if not shard.is_dir():
                continue
            for doc_dir in sorted(shard.iterdir()):
                if not doc_dir.is_dir():
                    continue
                for f in sorted(doc_dir.glob("v*")):
                    if f.is_file():
                        yield f
