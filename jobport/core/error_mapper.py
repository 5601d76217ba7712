"""
Error mapper — total classification of backend failures into QueueError.

Rules are evaluated in order and the first match wins:

  1. structural  — known exception types, SDK error codes, HTTP statuses
                   (most reliable, locale-independent)
  2. system      — errno values and string `code` attributes
                   (ECONNREFUSED, ETIMEDOUT, ...)
  3. message     — case-insensitive substring patterns for failures a
                   backend does not expose structurally
  4. default     — RuntimeError/PROCESSING, retryable=False

Unclassified failures are never retryable: retrying an unknown failure mode
is unsafe by default. Adapters with their own SDK quirks prepend rules:

    mapper = ErrorMapper(extra_rules=(
        ErrorRule("sqs-throttled", _is_sqs_throttle,
                  lambda exc: QueueRuntimeError(str(exc), code=RuntimeCode.RATE_LIMIT,
                                                retryable=True, cause=exc)),
    ))
"""

from __future__ import annotations

import dataclasses
import errno
import json
from collections.abc import Callable, Sequence

import pydantic
import pydantic_core

from jobport.domain.errors import (
    CASConflictError,
    ConfigurationCode,
    ConfigurationError,
    DataCode,
    DataError,
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

ErrorFactory = Callable[[BaseException], QueueError]


@dataclasses.dataclass(frozen=True)
class ErrorRule:
    """One classification rule: a predicate and the QueueError it produces."""

    name: str
    matches: Callable[[BaseException], bool]
    build: ErrorFactory


# --------------------------------------------------------------------------- #
# Factories                                                                     #
# --------------------------------------------------------------------------- #


def _runtime(code: RuntimeCode, *, retryable: bool) -> ErrorFactory:
    def _build(exc: BaseException) -> QueueError:
        return QueueRuntimeError(
            _message(exc), code=code, retryable=retryable, cause=exc
        )

    return _build


def _data(code: DataCode) -> ErrorFactory:
    def _build(exc: BaseException) -> QueueError:
        return DataError(_message(exc), code=code, cause=exc)

    return _build


def _configuration(code: ConfigurationCode) -> ErrorFactory:
    def _build(exc: BaseException) -> QueueError:
        return ConfigurationError(_message(exc), code=code, cause=exc)

    return _build


def _not_found(code: NotFoundCode) -> ErrorFactory:
    def _build(exc: BaseException) -> QueueError:
        return NotFoundError(
            _message(exc), code=code, job_id=getattr(exc, "job_id", None), cause=exc
        )

    return _build


def _message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


# --------------------------------------------------------------------------- #
# 1. Structural rules                                                           #
# --------------------------------------------------------------------------- #

_THROTTLE_CODES = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequests",
        "TooManyRequestsException",
    }
)
_MISSING_QUEUE_CODES = frozenset(
    {"NoSuchBucket", "NonExistentQueue", "QueueDoesNotExist", "AWS.SimpleQueueService.NonExistentQueue"}
)
_DENIED_CODES = frozenset({"AccessDenied", "Forbidden", "InvalidAccessKeyId"})


def sdk_error_code(exc: BaseException) -> str:
    """Extract the error code from a botocore-style ClientError, or return ''."""
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        error = response.get("Error", {})
        if isinstance(error, dict):
            code = error.get("Code", "")
            return str(code) if code else ""
    return ""


def http_status(exc: BaseException) -> int | None:
    """HTTP status from `status_code`, an int `code` (google-api-core) or a botocore response."""
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool) and 100 <= value < 600:
            return value
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if isinstance(status, int):
            return status
    return None


def _sdk_code_in(codes: frozenset[str]) -> Callable[[BaseException], bool]:
    return lambda exc: sdk_error_code(exc) in codes


def _status_in(*statuses: int) -> Callable[[BaseException], bool]:
    return lambda exc: http_status(exc) in statuses


def _type_named(name: str) -> Callable[[BaseException], bool]:
    """Match by class name anywhere in the MRO — e.g. DB-API IntegrityError."""
    return lambda exc: any(cls.__name__ == name for cls in type(exc).__mro__)


def _instance_of(*types: type[BaseException]) -> Callable[[BaseException], bool]:
    return lambda exc: isinstance(exc, types)


STRUCTURAL_RULES: tuple[ErrorRule, ...] = (
    ErrorRule("job-exists", _instance_of(JobExistsError), _data(DataCode.DUPLICATE)),
    ErrorRule("job-not-found", _instance_of(JobNotFoundError), _not_found(NotFoundCode.JOB)),
    ErrorRule("lease", _instance_of(LeaseError), _not_found(NotFoundCode.LEASE)),
    ErrorRule(
        "cas-conflict",
        _instance_of(CASConflictError),
        _runtime(RuntimeCode.PROCESSING, retryable=True),
    ),
    ErrorRule("timeout", _instance_of(TimeoutError), _runtime(RuntimeCode.TIMEOUT, retryable=True)),
    ErrorRule(
        "connection",
        _instance_of(ConnectionError),
        _runtime(RuntimeCode.CONNECTION, retryable=True),
    ),
    ErrorRule(
        "validation",
        _instance_of(pydantic.ValidationError),
        _data(DataCode.VALIDATION),
    ),
    ErrorRule(
        "serialization",
        _instance_of(
            json.JSONDecodeError,
            UnicodeDecodeError,
            UnicodeEncodeError,
            pydantic_core.PydanticSerializationError,
        ),
        _data(DataCode.SERIALIZATION),
    ),
    ErrorRule("integrity", _type_named("IntegrityError"), _data(DataCode.DUPLICATE)),
    ErrorRule(
        "sdk-throttled",
        _sdk_code_in(_THROTTLE_CODES),
        _runtime(RuntimeCode.RATE_LIMIT, retryable=True),
    ),
    ErrorRule(
        "sdk-missing-queue",
        _sdk_code_in(_MISSING_QUEUE_CODES),
        _configuration(ConfigurationCode.QUEUE_NOT_FOUND),
    ),
    ErrorRule(
        "sdk-denied",
        _sdk_code_in(_DENIED_CODES),
        _configuration(ConfigurationCode.PERMISSION_DENIED),
    ),
    ErrorRule(
        "sdk-timeout",
        _sdk_code_in(frozenset({"RequestTimeout", "RequestTimeoutException"})),
        _runtime(RuntimeCode.TIMEOUT, retryable=True),
    ),
    ErrorRule(
        "sdk-precondition",
        _sdk_code_in(frozenset({"PreconditionFailed", "ConditionalRequestConflict"})),
        _runtime(RuntimeCode.PROCESSING, retryable=True),
    ),
    ErrorRule("http-timeout", _status_in(408, 504), _runtime(RuntimeCode.TIMEOUT, retryable=True)),
    ErrorRule("http-throttled", _status_in(429), _runtime(RuntimeCode.RATE_LIMIT, retryable=True)),
    ErrorRule(
        "http-unavailable",
        _status_in(502, 503),
        _runtime(RuntimeCode.CONNECTION, retryable=True),
    ),
    ErrorRule("http-conflict", _status_in(409), _data(DataCode.DUPLICATE)),
    ErrorRule("http-too-large", _status_in(413), _data(DataCode.PAYLOAD_TOO_LARGE)),
    ErrorRule(
        "http-denied",
        _status_in(401, 403),
        _configuration(ConfigurationCode.PERMISSION_DENIED),
    ),
)


# --------------------------------------------------------------------------- #
# 2. System-code rules                                                          #
# --------------------------------------------------------------------------- #

_CONNECTION_ERRNOS = frozenset(
    {
        errno.ECONNREFUSED,
        errno.ECONNRESET,
        errno.ECONNABORTED,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
        errno.EPIPE,
    }
)
_CONNECTION_CODES = frozenset(
    {"ECONNREFUSED", "ECONNRESET", "ENOTFOUND", "EHOSTUNREACH", "EPIPE", "NETWORK_ERROR"}
)
_TIMEOUT_CODES = frozenset({"ETIMEDOUT", "ESOCKETTIMEDOUT", "TIMEOUT"})
_RATE_LIMIT_CODES = frozenset({"RATE_LIMIT", "RATE_LIMITED", "TOO_MANY_REQUESTS"})


def _errno_in(codes: frozenset[int]) -> Callable[[BaseException], bool]:
    return lambda exc: getattr(exc, "errno", None) in codes


def _code_in(codes: frozenset[str]) -> Callable[[BaseException], bool]:
    def _match(exc: BaseException) -> bool:
        code = getattr(exc, "code", None)
        return isinstance(code, str) and code.upper() in codes

    return _match


SYSTEM_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        "errno-connection",
        _errno_in(_CONNECTION_ERRNOS),
        _runtime(RuntimeCode.CONNECTION, retryable=True),
    ),
    ErrorRule(
        "errno-timeout",
        _errno_in(frozenset({errno.ETIMEDOUT})),
        _runtime(RuntimeCode.TIMEOUT, retryable=True),
    ),
    ErrorRule(
        "code-connection",
        _code_in(_CONNECTION_CODES),
        _runtime(RuntimeCode.CONNECTION, retryable=True),
    ),
    ErrorRule(
        "code-timeout",
        _code_in(_TIMEOUT_CODES),
        _runtime(RuntimeCode.TIMEOUT, retryable=True),
    ),
    ErrorRule(
        "code-rate-limit",
        _code_in(_RATE_LIMIT_CODES),
        _runtime(RuntimeCode.RATE_LIMIT, retryable=True),
    ),
)


# --------------------------------------------------------------------------- #
# 3. Message rules                                                              #
# --------------------------------------------------------------------------- #


def _message_contains(*needles: str) -> Callable[[BaseException], bool]:
    def _match(exc: BaseException) -> bool:
        text = str(exc).lower()
        return any(needle in text for needle in needles)

    return _match


MESSAGE_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        "msg-duplicate",
        _message_contains("already exists", "duplicate"),
        _data(DataCode.DUPLICATE),
    ),
    ErrorRule(
        "msg-missing-queue",
        _message_contains("queue does not exist", "no such queue"),
        _configuration(ConfigurationCode.QUEUE_NOT_FOUND),
    ),
    ErrorRule(
        "msg-stalled",
        _message_contains("stalled"),
        _runtime(RuntimeCode.PROCESSING, retryable=True),
    ),
    ErrorRule(
        "msg-lock",
        _message_contains("lock"),
        _runtime(RuntimeCode.PROCESSING, retryable=False),
    ),
    ErrorRule(
        "msg-script",
        _message_contains("script"),
        _runtime(RuntimeCode.PROCESSING, retryable=False),
    ),
    ErrorRule(
        "msg-connection",
        _message_contains("connection refused", "econnrefused", "connection reset"),
        _runtime(RuntimeCode.CONNECTION, retryable=True),
    ),
    ErrorRule(
        "msg-timeout",
        _message_contains("timed out", "timeout", "etimedout"),
        _runtime(RuntimeCode.TIMEOUT, retryable=True),
    ),
    ErrorRule(
        "msg-rate-limit",
        _message_contains("rate limit", "too many requests", "throttl"),
        _runtime(RuntimeCode.RATE_LIMIT, retryable=True),
    ),
)

DEFAULT_RULES: tuple[ErrorRule, ...] = STRUCTURAL_RULES + SYSTEM_RULES + MESSAGE_RULES


# --------------------------------------------------------------------------- #
# Mapper                                                                        #
# --------------------------------------------------------------------------- #


@dataclasses.dataclass(frozen=True)
class ErrorMapper:
    """
    Ordered rule list ending in a conservative default.

    extra_rules are evaluated before the built-in rules.
    """

    extra_rules: Sequence[ErrorRule] = ()
    rules: Sequence[ErrorRule] = DEFAULT_RULES

    def map(self, exc: BaseException) -> QueueError:
        if isinstance(exc, QueueError):
            return exc
        # StorageError is a transport wrapper: classify what it wraps.
        target: BaseException = exc.cause if isinstance(exc, StorageError) else exc
        if isinstance(target, QueueError):
            return target
        for rule in (*self.extra_rules, *self.rules):
            if rule.matches(target):
                return _rebase(rule.build(target), exc)
        return _rebase(
            QueueRuntimeError(
                _message(target), code=RuntimeCode.PROCESSING, retryable=False, cause=target
            ),
            exc,
        )


def _rebase(error: QueueError, original: BaseException) -> QueueError:
    """Keep the outermost exception as cause so adapter context is not lost."""
    if error.cause is not original:
        error.cause = original
    return error


_default_mapper = ErrorMapper()


def map_error(exc: BaseException) -> QueueError:
    """Classify `exc` with the default rule set."""
    return _default_mapper.map(exc)
