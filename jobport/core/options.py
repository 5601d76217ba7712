"""
Option normalization, add-time validation and capability gating.

Everything here is pure (no I/O). Queue.add() runs the checks below before
touching the provider, so invalid or unsupported requests never cost a
backend round trip.

Precedence
----------
    queue defaults  <  per-call JobOptions            (normalize_options)
    adapter defaults  <  provider_options.native  <  identity fields
                                                      (build_backend_options)

Identity fields (job_id, attempts, delay) are always taken from the
normalized JobOptions; a `native` key with one of those names is dropped.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any

import pydantic_core

from jobport.core.envelope import wrap_payload
from jobport.domain.errors import (
    ConfigurationCode,
    ConfigurationError,
    DataCode,
    DataError,
    QueueError,
)
from jobport.domain.models import (
    Job,
    JobIdGenerator,
    JobOptions,
    JobStatus,
    ProviderCapabilities,
)
from jobport.domain.result import Err, Ok, Result

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS: int = 3

IDENTITY_FIELDS: frozenset[str] = frozenset({"job_id", "attempts", "delay"})


def normalize_options(options: JobOptions | None, defaults: JobOptions) -> JobOptions:
    """Per-call options win over queue defaults; metadata is merged shallowly."""
    if options is None:
        return defaults
    return options.merged_over(defaults)


# --------------------------------------------------------------------------- #
# Validation                                                                    #
# --------------------------------------------------------------------------- #


def validate_options(
    queue_name: str,
    job_name: str,
    options: JobOptions,
) -> ConfigurationError | None:
    """Reject malformed input. Returns the first problem found, or None."""
    if not queue_name or not queue_name.strip():
        return ConfigurationError("queue name must be a non-empty string")
    if not job_name or not job_name.strip():
        return ConfigurationError("job name must be a non-empty string")
    if isinstance(options.job_id, str) and not options.job_id:
        return ConfigurationError("job_id must be a non-empty string")
    if options.attempts is not None and options.attempts < 1:
        return ConfigurationError(
            f"attempts must be a positive integer, got {options.attempts}"
        )
    if options.priority is not None and options.priority < 0:
        return ConfigurationError(
            f"priority must be non-negative, got {options.priority}"
        )
    if options.delay is not None:
        if math.isnan(options.delay) or math.isinf(options.delay):
            return ConfigurationError(f"delay must be finite, got {options.delay}")
        if options.delay < 0:
            return ConfigurationError(f"delay must be non-negative, got {options.delay}")
    if options.delay is not None and options.scheduled_for is not None:
        return ConfigurationError("delay and scheduled_for are mutually exclusive")
    if options.scheduled_for is not None and options.scheduled_for.tzinfo is None:
        return ConfigurationError("scheduled_for must be timezone-aware")
    return None


def check_capabilities(
    options: JobOptions,
    capabilities: ProviderCapabilities,
    *,
    now: datetime,
) -> ConfigurationError | None:
    """Fail fast on features the adapter cannot honor instead of degrading."""
    delay = _requested_delay(options, now)
    if delay is not None and delay > 0:
        if not capabilities.supports_delayed_jobs:
            return unsupported_feature("delayed jobs")
        if (
            capabilities.max_delay_seconds is not None
            and delay > capabilities.max_delay_seconds
        ):
            return unsupported_feature(
                f"delay of {delay:.3f}s (max {capabilities.max_delay_seconds}s)"
            )
    if options.priority is not None and not capabilities.supports_priority:
        return unsupported_feature("job priority")
    if options.attempts is not None and options.attempts > 1:
        if not capabilities.supports_retries:
            return unsupported_feature("retries (attempts > 1)")
    return None


def check_payload_size(
    data: Any,
    metadata: dict[str, Any],
    capabilities: ProviderCapabilities,
) -> DataError | None:
    """Only measured when the adapter declares a max_job_size."""
    if capabilities.max_job_size is None:
        return None
    try:
        size = len(pydantic_core.to_json(wrap_payload(data, metadata)))
    except pydantic_core.PydanticSerializationError as exc:
        return DataError(
            f"job payload is not serializable: {exc}",
            code=DataCode.SERIALIZATION,
            cause=exc,
        )
    if size > capabilities.max_job_size:
        return DataError(
            f"job payload is {size} bytes, adapter limit is {capabilities.max_job_size}",
            code=DataCode.PAYLOAD_TOO_LARGE,
        )
    return None


def check_batch_size(
    size: int, capabilities: ProviderCapabilities
) -> ConfigurationError | None:
    if not capabilities.supports_batching:
        return unsupported_feature("batch add")
    if capabilities.max_batch_size is not None and size > capabilities.max_batch_size:
        return unsupported_feature(
            f"batch of {size} jobs (max {capabilities.max_batch_size})"
        )
    return None


def unsupported_feature(feature: str) -> ConfigurationError:
    return ConfigurationError(
        f"provider does not support {feature}",
        code=ConfigurationCode.UNSUPPORTED_FEATURE,
    )


# --------------------------------------------------------------------------- #
# Job construction                                                              #
# --------------------------------------------------------------------------- #


def resolve_job_id(options: JobOptions, id_generator: JobIdGenerator) -> str:
    match options.job_id:
        case str() as explicit:
            return explicit
        case None:
            return id_generator()
        case generator:
            return generator()


def build_job(
    queue_name: str,
    job_name: str,
    data: Any,
    options: JobOptions,
    capabilities: ProviderCapabilities,
    *,
    id_generator: JobIdGenerator,
    now: datetime,
) -> Result[Job, QueueError]:
    """Validate, capability-gate and build a WAITING/DELAYED Job."""
    error: QueueError | None = (
        validate_options(queue_name, job_name, options)
        or check_capabilities(options, capabilities, now=now)
        or check_payload_size(data, options.metadata, capabilities)
    )
    if error is not None:
        return Err(error)

    job_id = resolve_job_id(options, id_generator)
    if not isinstance(job_id, str) or not job_id:
        return Err(ConfigurationError(f"job id generator returned {job_id!r}"))

    scheduled_for = _scheduled_for(options, now)
    delayed = scheduled_for is not None and scheduled_for > now
    attempts = options.attempts or (
        DEFAULT_ATTEMPTS if capabilities.supports_retries else 1
    )
    return Ok(
        Job(
            id=job_id,
            name=job_name,
            queue_name=queue_name,
            data=data,
            status=JobStatus.DELAYED if delayed else JobStatus.WAITING,
            attempts=0,
            max_attempts=attempts,
            priority=options.priority,
            scheduled_for=scheduled_for if delayed else None,
            created_at=now,
            metadata=dict(options.metadata),
        )
    )


def delay_seconds(job: Job, now: datetime) -> float:
    """Relative delay for backends with a native 'delay' parameter (never negative)."""
    if job.scheduled_for is None:
        return 0.0
    return max((job.scheduled_for - now).total_seconds(), 0.0)


def _requested_delay(options: JobOptions, now: datetime) -> float | None:
    if options.delay is not None:
        return options.delay
    if options.scheduled_for is not None:
        return (options.scheduled_for - now).total_seconds()
    return None


def _scheduled_for(options: JobOptions, now: datetime) -> datetime | None:
    if options.delay:
        return now + timedelta(seconds=options.delay)
    return options.scheduled_for


# --------------------------------------------------------------------------- #
# Backend translation                                                           #
# --------------------------------------------------------------------------- #


def resolve_remove_on_complete(options: JobOptions) -> bool | int:
    """provider_options.remove_on_complete, when set, refines the top-level value."""
    po = options.provider_options
    if po is not None and po.remove_on_complete is not None:
        return po.remove_on_complete
    return options.remove_on_complete


def build_backend_options(
    job: Job,
    options: JobOptions,
    adapter_defaults: dict[str, Any] | None = None,
    *,
    now: datetime,
) -> dict[str, Any]:
    """
    Flatten everything an adapter needs to translate `job` into backend form.

    Layering: adapter defaults, then provider_options.native, then the
    normalized fields. Identity fields always come last and cannot be
    overridden.
    """
    po = options.provider_options
    native = dict(po.native) if po is not None else {}
    blocked = IDENTITY_FIELDS & native.keys()
    if blocked:
        logger.warning(
            "Ignoring identity fields %s in provider_options.native for job %r",
            sorted(blocked),
            job.id,
        )
        for key in blocked:
            del native[key]

    merged: dict[str, Any] = {**(adapter_defaults or {}), **native}
    merged["priority"] = job.priority
    merged["remove_on_complete"] = resolve_remove_on_complete(options)
    merged["remove_on_fail"] = options.remove_on_fail
    if po is not None and po.backoff is not None:
        merged["backoff"] = po.backoff
    merged["job_id"] = job.id
    merged["attempts"] = job.max_attempts
    merged["delay"] = delay_seconds(job, now)
    return merged
