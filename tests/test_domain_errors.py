import pytest

from jobport.domain.errors import (
    BackendError,
    CASConflictError,
    ConfigurationCode,
    ConfigurationError,
    DataCode,
    DataError,
    ErrorKind,
    JobExistsError,
    JobNotFoundError,
    LeaseError,
    NotFoundCode,
    NotFoundError,
    QueueError,
    QueueRuntimeError,
    RuntimeCode,
    StorageError,
)

# ---------------------------------------------------------------------------
# Backend signals
# ---------------------------------------------------------------------------


def test_backend_signals_share_a_base():
    for cls in (CASConflictError, StorageError, JobNotFoundError, JobExistsError, LeaseError):
        assert issubclass(cls, BackendError)


def test_backend_signals_are_not_queue_errors():
    assert not issubclass(BackendError, QueueError)


def test_storage_error_keeps_cause_and_message():
    cause = OSError("permission denied")
    err = StorageError("GCS read failed", cause)
    assert err.cause is cause
    assert "GCS read failed" in str(err)
    assert "permission denied" in str(err)


@pytest.mark.parametrize("cls", [JobNotFoundError, JobExistsError, LeaseError])
def test_job_signals_store_job_id(cls):
    err = cls("abc-123")
    assert err.job_id == "abc-123"
    assert "abc-123" in str(err)


# ---------------------------------------------------------------------------
# Queue error taxonomy
# ---------------------------------------------------------------------------


def test_kinds():
    assert ConfigurationError("x").kind is ErrorKind.CONFIGURATION
    assert DataError("x", code=DataCode.DUPLICATE).kind is ErrorKind.DATA
    assert NotFoundError("x").kind is ErrorKind.NOT_FOUND
    assert QueueRuntimeError("x").kind is ErrorKind.RUNTIME


def test_configuration_error_defaults():
    err = ConfigurationError("bad option")
    assert err.code is ConfigurationCode.INVALID_OPTION
    assert err.retryable is False
    assert err.message == "bad option"
    assert str(err) == "bad option"


def test_only_runtime_errors_can_be_retryable():
    assert QueueRuntimeError("down", code=RuntimeCode.CONNECTION, retryable=True).retryable
    assert not DataError("dup", code=DataCode.DUPLICATE).retryable
    assert not NotFoundError("gone").retryable


def test_not_found_carries_job_id():
    err = NotFoundError("no lease", code=NotFoundCode.LEASE, job_id="j1")
    assert err.job_id == "j1"
    assert err.code.value == "LEASE_NOT_FOUND"


def test_cause_is_kept():
    cause = ConnectionRefusedError("refused")
    err = QueueRuntimeError("down", code=RuntimeCode.CONNECTION, cause=cause)
    assert err.cause is cause


def test_repr_shows_code_and_retryable():
    err = QueueRuntimeError("slow", code=RuntimeCode.TIMEOUT, retryable=True)
    assert repr(err) == "QueueRuntimeError(code='TIMEOUT', retryable=True, message='slow')"


def test_queue_errors_can_be_raised_and_caught_as_base():
    with pytest.raises(QueueError):
        raise DataError("too big", code=DataCode.PAYLOAD_TOO_LARGE)
