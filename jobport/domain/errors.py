"""
Exception hierarchy for jobport.

Two families live here.

Backend signals — raised *inside* adapters, never returned to callers:

BackendError
├── CASConflictError   — write rejected because etag did not match
├── StorageError       — underlying I/O failure (wraps original exception)
├── JobNotFoundError   — job_id not present in the backend
├── JobExistsError     — job_id already present in the backend
└── LeaseError         — lease token unknown, expired, or already finalized

Queue errors — the closed taxonomy returned in Err(...) by every contract
operation. Produced by the error mapper (core/error_mapper.py):

QueueError
├── ConfigurationError — caller misuse (invalid option, unsupported feature)
├── DataError          — payload / identity conflicts
├── NotFoundError      — job or lease does not exist (or is finalized)
└── QueueRuntimeError  — operational failure, tagged `retryable`

Application logic should branch on `kind` / `code`, never on `cause`.
"""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

# --------------------------------------------------------------------------- #
# Backend signals                                                               #
# --------------------------------------------------------------------------- #


class BackendError(Exception):
    """Base class for failures raised inside backend adapters."""


class CASConflictError(BackendError):
    """
    Raised when a compare-and-set write is rejected by the storage backend.

    The caller should re-read the current state and retry the operation.
    """


class StorageError(BackendError):
    """
    Wraps an underlying I/O failure from a storage adapter.

    Attributes
    ----------
    cause : Exception
        The original exception from the storage backend.
    """

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")


class JobNotFoundError(BackendError):
    """Raised when a job_id is not present in the backend."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id!r} not found")


class JobExistsError(BackendError):
    """Raised when a job_id is added twice to the same queue."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id!r} already exists")


class LeaseError(BackendError):
    """Raised when ack/nack presents a token the adapter did not issue or already finalized."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"No active lease for job {job_id!r}")


# --------------------------------------------------------------------------- #
# Queue error taxonomy                                                          #
# --------------------------------------------------------------------------- #


class ErrorKind(str, Enum):
    CONFIGURATION = "ConfigurationError"
    DATA = "DataError"
    NOT_FOUND = "NotFoundError"
    RUNTIME = "RuntimeError"


class ConfigurationCode(str, Enum):
    INVALID_OPTION = "INVALID_OPTION"
    UNSUPPORTED_FEATURE = "UNSUPPORTED_FEATURE"
    QUEUE_NOT_FOUND = "QUEUE_NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"


class DataCode(str, Enum):
    DUPLICATE = "DUPLICATE"
    SERIALIZATION = "SERIALIZATION"
    VALIDATION = "VALIDATION"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"


class NotFoundCode(str, Enum):
    JOB = "JOB_NOT_FOUND"
    LEASE = "LEASE_NOT_FOUND"


class RuntimeCode(str, Enum):
    CONNECTION = "CONNECTION"
    TIMEOUT = "TIMEOUT"
    PROCESSING = "PROCESSING"
    RATE_LIMIT = "RATE_LIMIT"


class QueueError(Exception):
    """
    Base class of the queue error taxonomy.

    Attributes
    ----------
    code      : kind-specific code enum
    retryable : whether retrying the same operation may succeed
    cause     : original exception, kept for diagnostics only
    """

    kind: ClassVar[ErrorKind]

    def __init__(
        self,
        message: str,
        *,
        code: Enum,
        retryable: bool = False,
        cause: BaseException | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.retryable = retryable
        self.cause = cause
        super().__init__(message)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code.value!r}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )


class ConfigurationError(QueueError):
    kind = ErrorKind.CONFIGURATION

    def __init__(
        self,
        message: str,
        *,
        code: ConfigurationCode = ConfigurationCode.INVALID_OPTION,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, code=code, retryable=False, cause=cause)


class DataError(QueueError):
    kind = ErrorKind.DATA

    def __init__(
        self,
        message: str,
        *,
        code: DataCode,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, code=code, retryable=False, cause=cause)


class NotFoundError(QueueError):
    kind = ErrorKind.NOT_FOUND

    def __init__(
        self,
        message: str,
        *,
        code: NotFoundCode = NotFoundCode.JOB,
        job_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.job_id = job_id
        super().__init__(message, code=code, retryable=False, cause=cause)


class QueueRuntimeError(QueueError):
    kind = ErrorKind.RUNTIME

    def __init__(
        self,
        message: str,
        *,
        code: RuntimeCode = RuntimeCode.PROCESSING,
        retryable: bool = False,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, code=code, retryable=retryable, cause=cause)
