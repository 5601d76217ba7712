"""
InMemoryStorage — process-local ObjectStoragePort for tests and development.

One bytes buffer guarded by an asyncio.Lock. The etag is a write counter, so
every successful write yields a new token and a stale if_match is rejected
exactly as a real object store would reject it.

Single event loop only.
"""

from __future__ import annotations

import asyncio
import dataclasses

from jobport.domain.errors import CASConflictError


@dataclasses.dataclass
class InMemoryStorage:
    """
    Parameters
    ----------
    initial_content : pre-populated document, for test setup
    """

    initial_content: bytes = b""

    _content: bytes = dataclasses.field(default=b"", init=False, repr=False)
    _etag: str | None = dataclasses.field(default=None, init=False, repr=False)
    _writes: int = dataclasses.field(default=0, init=False, repr=False)
    _lock: asyncio.Lock = dataclasses.field(
        default_factory=asyncio.Lock, init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.initial_content:
            self._content = self.initial_content
            self._etag = "0"

    @property
    def write_count(self) -> int:
        return self._writes

    async def read(self) -> tuple[bytes, str | None]:
        async with self._lock:
            return self._content, self._etag

    async def write(self, content: bytes, if_match: str | None = None) -> str:
        async with self._lock:
            if if_match != self._etag:
                raise CASConflictError(
                    f"stale etag {if_match!r}; current is {self._etag!r}"
                )
            self._writes += 1
            self._content = content
            self._etag = str(self._writes)
            return self._etag

    async def delete(self) -> None:
        async with self._lock:
            self._content = b""
            self._etag = None
