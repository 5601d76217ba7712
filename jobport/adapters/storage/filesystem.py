"""
LocalFileSystemStorage — one JSON document on local disk, CAS via fcntl.flock.

For development and single-host deployments. Use S3Storage or GCSStorage
when workers run on more than one machine.

Etags
-----
SHA-256 of the file contents. Content hashes change on every distinct write,
which mtime does not guarantee on fast filesystems. A missing or zero-length
file has no etag.

CAS
---
write() takes an exclusive lock, hashes what is currently on disk, compares
it with if_match and only then truncates and rewrites, all under one lock.

POSIX only; not for NFS.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import fcntl
import hashlib
import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, TypeVar

from jobport.domain.errors import CASConflictError, StorageError

T = TypeVar("T")


def _digest(content: bytes) -> str | None:
    return hashlib.sha256(content).hexdigest() if content else None


@contextlib.contextmanager
def _locked(fd: int, mode: int) -> Iterator[int]:
    fcntl.flock(fd, mode)
    try:
        yield fd
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)


@dataclasses.dataclass
class LocalFileSystemStorage:
    """
    Parameters
    ----------
    path : queue document path; parent directories are created on first write
    """

    path: Path

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def read(self) -> tuple[bytes, str | None]:
        return await self._offload(self._read_blocking)

    async def write(self, content: bytes, if_match: str | None = None) -> str:
        return await self._offload(self._write_blocking, content, if_match)

    async def delete(self) -> None:
        await self._offload(self._delete_blocking)

    async def _offload(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except (CASConflictError, StorageError):
            raise
        except OSError as exc:
            raise StorageError(f"filesystem access to {self.path} failed", exc) from exc

    # ------------------------------------------------------------------ #
    # Blocking halves, run via asyncio.to_thread                           #
    # ------------------------------------------------------------------ #

    def _read_blocking(self) -> tuple[bytes, str | None]:
        try:
            fd = os.open(self.path, os.O_RDONLY)
        except FileNotFoundError:
            return b"", None
        try:
            with _locked(fd, fcntl.LOCK_SH):
                content = _read_all(fd)
        finally:
            os.close(fd)
        return content, _digest(content)

    def _write_blocking(self, content: bytes, if_match: str | None) -> str:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            with _locked(fd, fcntl.LOCK_EX):
                current = _digest(_read_all(fd))
                if current != if_match:
                    raise CASConflictError(
                        f"stale etag {if_match!r} for {self.path}; current is {current!r}"
                    )
                os.ftruncate(fd, 0)
                os.pwrite(fd, content, 0)
                os.fsync(fd)
        finally:
            os.close(fd)
        etag = _digest(content)
        if etag is None:
            raise StorageError(
                "refusing to report an etag for an empty document",
                ValueError("empty content"),
            )
        return etag

    def _delete_blocking(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()


def _read_all(fd: int) -> bytes:
    size = os.fstat(fd).st_size
    return os.pread(fd, size, 0) if size else b""
