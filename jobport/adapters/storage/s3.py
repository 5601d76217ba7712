"""
S3Storage — queue document in an S3 object, CAS via conditional PutObject.

Install extras: pip install "jobport[s3]"

CAS
---
  read()   → (body, ETag)
  write()  → PutObject with IfMatch=etag; S3 answers PreconditionFailed on a
             stale etag, surfaced as CASConflictError. With if_match=None the
             put is unconditional.
  delete() → DeleteObject; S3 treats a missing key as success.

Works against S3-compatible stores that implement conditional writes
(MinIO, Cloudflare R2, Tigris).
"""

from __future__ import annotations

import contextlib
import dataclasses
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from jobport.core.error_mapper import sdk_error_code
from jobport.domain.errors import CASConflictError, StorageError

if TYPE_CHECKING:
    from aioboto3 import Session as AioBoto3Session

_MISSING = frozenset({"NoSuchKey", "404"})


@dataclasses.dataclass
class S3Storage:
    """
    Parameters
    ----------
    bucket       : bucket name
    key          : object key, e.g. "jobport/emails.json"
    session      : aioboto3.Session; built from the environment when omitted
    region_name  : region for the S3 client
    endpoint_url : endpoint override for S3-compatible stores
    """

    bucket: str
    key: str
    session: AioBoto3Session | None = None
    region_name: str | None = None
    endpoint_url: str | None = None

    def _session(self) -> AioBoto3Session:
        if self.session is None:
            try:
                import aioboto3  # type: ignore[import-untyped]
            except ImportError as exc:
                raise ImportError(
                    "S3Storage requires aioboto3. Install with: pip install 'jobport[s3]'"
                ) from exc
            self.session = aioboto3.Session()
        return self.session

    @contextlib.asynccontextmanager
    async def _client(self, operation: str) -> AsyncIterator[Any]:
        """S3 client scope; wraps unexpected failures in StorageError."""
        kwargs = {
            name: value
            for name, value in (
                ("region_name", self.region_name),
                ("endpoint_url", self.endpoint_url),
            )
            if value
        }
        try:
            async with self._session().client("s3", **kwargs) as s3:  # type: ignore[attr-defined]
                yield s3
        except (CASConflictError, StorageError):
            raise
        except Exception as exc:
            raise StorageError(f"S3 {operation} of s3://{self.bucket}/{self.key} failed", exc) from exc

    async def read(self) -> tuple[bytes, str | None]:
        async with self._client("read") as s3:
            try:
                response = await s3.get_object(Bucket=self.bucket, Key=self.key)
            except Exception as exc:
                if sdk_error_code(exc) in _MISSING:
                    return b"", None
                raise
            body: bytes = await response["Body"].read()
            return body, str(response["ETag"])

    async def write(self, content: bytes, if_match: str | None = None) -> str:
        request: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": self.key,
            "Body": content,
            "ContentType": "application/json",
        }
        if if_match is not None:
            request["IfMatch"] = if_match
        async with self._client("write") as s3:
            try:
                response = await s3.put_object(**request)
            except Exception as exc:
                if sdk_error_code(exc) == "PreconditionFailed":
                    raise CASConflictError(
                        f"stale ETag {if_match!r} for s3://{self.bucket}/{self.key}"
                    ) from exc
                raise
            return str(response["ETag"])

    async def delete(self) -> None:
        async with self._client("delete") as s3:
            await s3.delete_object(Bucket=self.bucket, Key=self.key)
