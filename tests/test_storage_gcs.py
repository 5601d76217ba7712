from unittest.mock import MagicMock, patch

import pytest

from jobport.adapters.storage.gcs import GCSStorage
from jobport.domain.errors import CASConflictError, StorageError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_storage() -> tuple[GCSStorage, MagicMock, MagicMock]:
    """Return (storage, blob_mock, client_mock) with wired-up fakes."""
    blob = MagicMock()
    bucket = MagicMock()
    bucket.blob.return_value = blob
    client = MagicMock()
    client.bucket.return_value = bucket
    storage = GCSStorage(bucket_name="jobs", blob_name="jobport/emails.json", client=client)
    return storage, blob, client


# ---------------------------------------------------------------------------
# Async surface: blocking halves patched out
# ---------------------------------------------------------------------------


async def test_read_delegates_to_blocking_half():
    storage, _, _ = _make_storage()
    with patch.object(storage, "_read_blocking", return_value=(b'{"jobs": []}', "42")):
        assert await storage.read() == (b'{"jobs": []}', "42")


async def test_write_passes_content_and_if_match():
    storage, _, _ = _make_storage()
    with patch.object(storage, "_write_blocking", return_value="50") as blocking:
        assert await storage.write(b"content", if_match="49") == "50"
    blocking.assert_called_once_with(b"content", "49")


async def test_unexpected_failure_becomes_storage_error():
    storage, _, _ = _make_storage()
    with patch.object(storage, "_read_blocking", side_effect=RuntimeError("network")):
        with pytest.raises(StorageError) as info:
            await storage.read()
    assert "gs://jobs/jobport/emails.json" in str(info.value)
    assert isinstance(info.value.cause, RuntimeError)


async def test_cas_conflict_is_not_wrapped():
    storage, _, _ = _make_storage()
    with patch.object(storage, "_write_blocking", side_effect=CASConflictError("mismatch")):
        with pytest.raises(CASConflictError):
            await storage.write(b"data", if_match="42")


async def test_missing_extra_is_not_wrapped():
    storage, _, _ = _make_storage()
    with patch.object(storage, "_delete_blocking", side_effect=ImportError("no gcs")):
        with pytest.raises(ImportError):
            await storage.delete()


# ---------------------------------------------------------------------------
# _read_blocking()
# ---------------------------------------------------------------------------


def test_read_blocking_returns_generation_as_etag():
    pytest.importorskip("google.api_core.exceptions")
    storage, blob, client = _make_storage()
    blob.download_as_bytes.return_value = b"content"
    blob.generation = 99
    assert storage._read_blocking() == (b"content", "99")
    client.bucket.assert_called_once_with("jobs")
    client.bucket.return_value.blob.assert_called_once_with("jobport/emails.json")


def test_read_blocking_not_found_is_empty():
    api = pytest.importorskip("google.api_core.exceptions")
    storage, blob, _ = _make_storage()
    blob.download_as_bytes.side_effect = api.NotFound("blob not found")
    assert storage._read_blocking() == (b"", None)


# ---------------------------------------------------------------------------
# _write_blocking()
# ---------------------------------------------------------------------------


def test_first_write_requires_absent_blob():
    pytest.importorskip("google.api_core.exceptions")
    storage, blob, _ = _make_storage()
    blob.generation = 100
    assert storage._write_blocking(b"content", None) == "100"
    blob.upload_from_string.assert_called_once_with(
        b"content",
        content_type="application/json",
        if_generation_match=0,
    )


def test_conditional_write_uses_int_generation():
    pytest.importorskip("google.api_core.exceptions")
    storage, blob, _ = _make_storage()
    blob.generation = 51
    storage._write_blocking(b"content", "50")
    assert blob.upload_from_string.call_args.kwargs["if_generation_match"] == 50


def test_write_skips_reload_when_generation_known():
    pytest.importorskip("google.api_core.exceptions")
    storage, blob, _ = _make_storage()
    blob.generation = 55
    storage._write_blocking(b"content", None)
    blob.reload.assert_not_called()


def test_write_reloads_when_generation_missing():
    pytest.importorskip("google.api_core.exceptions")
    storage, blob, _ = _make_storage()
    blob.generation = None

    def _reload():
        blob.generation = 7

    blob.reload.side_effect = _reload
    assert storage._write_blocking(b"content", None) == "7"


def test_precondition_failed_is_cas_conflict():
    api = pytest.importorskip("google.api_core.exceptions")
    storage, blob, _ = _make_storage()
    blob.upload_from_string.side_effect = api.PreconditionFailed("mismatch")
    with pytest.raises(CASConflictError):
        storage._write_blocking(b"content", "42")


# ---------------------------------------------------------------------------
# _delete_blocking()
# ---------------------------------------------------------------------------


def test_delete_blocking_removes_blob():
    pytest.importorskip("google.api_core.exceptions")
    storage, blob, _ = _make_storage()
    storage._delete_blocking()
    blob.delete.assert_called_once_with()


def test_delete_blocking_ignores_missing_blob():
    api = pytest.importorskip("google.api_core.exceptions")
    storage, blob, _ = _make_storage()
    blob.delete.side_effect = api.NotFound("gone")
    storage._delete_blocking()
