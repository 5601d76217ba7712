"""
GCSStorage — queue document in a GCS blob, CAS via generation preconditions.

Install extras: pip install "jobport[gcs]"

CAS
---
The etag is the blob generation as a string.

  read()   → (body, generation)
  write()  → upload with if_generation_match=int(etag); a stale generation
             raises PreconditionFailed, surfaced as CASConflictError.
             if_match=None uses if_generation_match=0: "must not exist yet".
  delete() → blob delete; NotFound is ignored.

google-cloud-storage is synchronous; every call runs in asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from types import ModuleType
from typing import TYPE_CHECKING, Any, TypeVar

from jobport.domain.errors import CASConflictError, StorageError

if TYPE_CHECKING:
    from google.cloud.storage import Blob, Client as GCSClient

T = TypeVar("T")

_INSTALL_HINT = (
    "GCSStorage requires google-cloud-storage. "
    "Install with: pip install 'jobport[gcs]'"
)


def _api_exceptions() -> ModuleType:
    try:
        from google.api_core import exceptions  # type: ignore[import-untyped]
    except ImportError as exc:
        raise ImportError(_INSTALL_HINT) from exc
    return exceptions


@dataclasses.dataclass
class GCSStorage:
    """
    Parameters
    ----------
    bucket_name : bucket name
    blob_name   : blob path, e.g. "jobport/emails.json"
    client      : google.cloud.storage.Client; created on first use when omitted
    """

    bucket_name: str
    blob_name: str
    client: GCSClient | None = None

    def _blob(self) -> Blob:
        if self.client is None:
            try:
                from google.cloud import storage  # type: ignore[import-untyped]
            except ImportError as exc:
                raise ImportError(_INSTALL_HINT) from exc
            self.client = storage.Client()
        return self.client.bucket(self.bucket_name).blob(self.blob_name)  # type: ignore[attr-defined]

    async def read(self) -> tuple[bytes, str | None]:
        return await self._call("read", self._read_blocking)

    async def write(self, content: bytes, if_match: str | None = None) -> str:
        return await self._call("write", self._write_blocking, content, if_match)

    async def delete(self) -> None:
        await self._call("delete", self._delete_blocking)

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except (CASConflictError, StorageError, ImportError):
            raise
        except Exception as exc:
            raise StorageError(
                f"GCS {operation} of gs://{self.bucket_name}/{self.blob_name} failed", exc
            ) from exc

    # ------------------------------------------------------------------ #
    # Blocking halves, run via asyncio.to_thread                           #
    # ------------------------------------------------------------------ #

    def _read_blocking(self) -> tuple[bytes, str | None]:
        exceptions = _api_exceptions()
        blob = self._blob()
        try:
            body: bytes = blob.download_as_bytes()
        except exceptions.NotFound:
            return b"", None
        return body, str(blob.generation)

    def _write_blocking(self, content: bytes, if_match: str | None) -> str:
        exceptions = _api_exceptions()
        blob = self._blob()
        try:
            blob.upload_from_string(
                content,
                content_type="application/json",
                if_generation_match=0 if if_match is None else int(if_match),
            )
        except exceptions.PreconditionFailed as exc:
            raise CASConflictError(
                f"stale generation {if_match!r} for gs://{self.bucket_name}/{self.blob_name}"
            ) from exc
        # upload_from_string refreshes the generation from the response.
        if blob.generation is None:
            blob.reload()
        return str(blob.generation)

    def _delete_blocking(self) -> None:
        exceptions = _api_exceptions()
        try:
            self._blob().delete()
        except exceptions.NotFound:
            pass
