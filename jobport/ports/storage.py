"""
ObjectStoragePort — a single versioned object, read and written with CAS.

The object-storage provider keeps a whole queue in one document. Any object
satisfying this structural Protocol can hold that document.

CAS write contract
------------------
write(content, if_match=None)
  - if_match is None  → unconditional put (first write of a new queue)
  - if_match is given → conditional put
      succeeds → returns the new etag (opaque str)
      fails    → raises CASConflictError

read()
  - Returns (content_bytes, etag)
  - Missing object → (b"", None); the caller treats it as an empty queue

delete()
  - Removes the object. Deleting a missing object is not an error.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ObjectStoragePort(Protocol):
    """
    Built-in adapters:
      - InMemoryStorage        asyncio.Lock-based, for tests
      - LocalFileSystemStorage fcntl.flock-based, POSIX single machine
      - S3Storage              S3 If-Match conditional writes (aioboto3)
      - GCSStorage             GCS if_generation_match (google-cloud-storage)
    """

    async def read(self) -> tuple[bytes, str | None]:
        """
        Returns
        -------
        content : bytes   b"" if the object does not exist yet
        etag    : str | None   pass back to write() as if_match
        """
        ...

    async def write(
        self,
        content: bytes,
        if_match: str | None = None,
    ) -> str:
        """
        Raises
        ------
        CASConflictError   if_match given and stale
        StorageError       any other I/O failure
        """
        ...

    async def delete(self) -> None: ...
