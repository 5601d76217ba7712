import math
from datetime import UTC, datetime, timedelta
from itertools import count

import pytest

from jobport.core.envelope import ENVELOPE_MARKER, is_envelope, unwrap_payload, wrap_payload
from jobport.core.ids import prefixed_id, uuid_id
from jobport.core.options import (
    DEFAULT_ATTEMPTS,
    build_backend_options,
    build_job,
    check_batch_size,
    check_capabilities,
    check_payload_size,
    delay_seconds,
    normalize_options,
    validate_options,
)
from jobport.domain.errors import ConfigurationCode, ConfigurationError, DataCode, DataError
from jobport.domain.models import (
    BackoffPolicy,
    JobOptions,
    JobStatus,
    ProviderCapabilities,
    ProviderOptions,
)
from jobport.domain.result import Err, Ok

NOW = datetime(2026, 1, 1, tzinfo=UTC)

ALL = ProviderCapabilities(
    supports_delayed_jobs=True,
    supports_priority=True,
    supports_retries=True,
    supports_dlq=True,
    supports_batching=True,
)
NONE = ProviderCapabilities()


def _build(options: JobOptions = JobOptions(), caps: ProviderCapabilities = ALL, data=None):
    return build_job(
        "emails", "send", data, options, caps, id_generator=lambda: "generated", now=NOW
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "queue_name, job_name, options",
    [
        ("", "send", JobOptions()),
        ("emails", "  ", JobOptions()),
        ("emails", "send", JobOptions(job_id="")),
        ("emails", "send", JobOptions(attempts=0)),
        ("emails", "send", JobOptions(attempts=-1)),
        ("emails", "send", JobOptions(priority=-1)),
        ("emails", "send", JobOptions(delay=-0.5)),
        ("emails", "send", JobOptions(delay=math.inf)),
        ("emails", "send", JobOptions(delay=math.nan)),
        ("emails", "send", JobOptions(delay=1, scheduled_for=NOW)),
        ("emails", "send", JobOptions(scheduled_for=datetime(2026, 1, 1))),
    ],
)
def test_validate_rejects(queue_name, job_name, options):
    error = validate_options(queue_name, job_name, options)
    assert isinstance(error, ConfigurationError)
    assert error.code is ConfigurationCode.INVALID_OPTION


def test_validate_accepts_reasonable_options():
    options = JobOptions(attempts=3, priority=0, delay=0, metadata={"a": 1})
    assert validate_options("emails", "send", options) is None


# ---------------------------------------------------------------------------
# Capability gating
# ---------------------------------------------------------------------------


def test_delay_requires_delayed_jobs():
    error = check_capabilities(JobOptions(delay=5), NONE, now=NOW)
    assert error is not None
    assert error.code is ConfigurationCode.UNSUPPORTED_FEATURE


def test_zero_delay_is_not_a_delayed_job():
    assert check_capabilities(JobOptions(delay=0), NONE, now=NOW) is None


def test_delay_respects_max_delay():
    caps = ALL.model_copy(update={"max_delay_seconds": 10})
    assert check_capabilities(JobOptions(delay=10), caps, now=NOW) is None
    assert check_capabilities(JobOptions(delay=11), caps, now=NOW) is not None


def test_scheduled_for_counts_as_delay():
    options = JobOptions(scheduled_for=NOW + timedelta(minutes=1))
    assert check_capabilities(options, NONE, now=NOW) is not None


def test_priority_requires_support():
    assert check_capabilities(JobOptions(priority=1), NONE, now=NOW) is not None


def test_retries_require_support():
    assert check_capabilities(JobOptions(attempts=2), NONE, now=NOW) is not None
    assert check_capabilities(JobOptions(attempts=1), NONE, now=NOW) is None


def test_payload_size_only_checked_with_a_limit():
    assert check_payload_size("x" * 10_000, {}, ALL) is None
    caps = ALL.model_copy(update={"max_job_size": 100})
    error = check_payload_size("x" * 10_000, {}, caps)
    assert isinstance(error, DataError)
    assert error.code is DataCode.PAYLOAD_TOO_LARGE


def test_unserializable_payload_is_a_serialization_error():
    caps = ALL.model_copy(update={"max_job_size": 100})
    error = check_payload_size(object(), {}, caps)
    assert isinstance(error, DataError)
    assert error.code is DataCode.SERIALIZATION


def test_batch_size():
    assert check_batch_size(5, NONE) is not None
    assert check_batch_size(5, ALL) is None
    limited = ALL.model_copy(update={"max_batch_size": 2})
    assert check_batch_size(3, limited) is not None


# ---------------------------------------------------------------------------
# build_job
# ---------------------------------------------------------------------------


def test_build_job_uses_generator_when_no_id_given():
    job = _build().unwrap()
    assert job.id == "generated"
    assert job.name == "send"
    assert job.queue_name == "emails"
    assert job.status == JobStatus.WAITING
    assert job.created_at == NOW


def test_explicit_job_id_wins():
    assert _build(JobOptions(job_id="mine")).unwrap().id == "mine"


def test_per_call_generator():
    ids = count(1)
    job = _build(JobOptions(job_id=lambda: f"n{next(ids)}")).unwrap()
    assert job.id == "n1"


def test_default_attempts_depend_on_retry_support():
    assert _build().unwrap().max_attempts == DEFAULT_ATTEMPTS
    assert _build(caps=NONE).unwrap().max_attempts == 1
    assert _build(JobOptions(attempts=7)).unwrap().max_attempts == 7


def test_delayed_job_is_scheduled():
    job = _build(JobOptions(delay=30)).unwrap()
    assert job.status == JobStatus.DELAYED
    assert job.scheduled_for == NOW + timedelta(seconds=30)


def test_past_schedule_is_waiting():
    job = _build(JobOptions(scheduled_for=NOW - timedelta(seconds=1))).unwrap()
    assert job.status == JobStatus.WAITING
    assert job.scheduled_for is None


def test_build_job_returns_err_without_raising():
    match _build(JobOptions(priority=3), caps=NONE):
        case Err(error):
            assert error.code is ConfigurationCode.UNSUPPORTED_FEATURE
        case Ok(_):
            pytest.fail("expected Err")


def test_generator_returning_empty_id_is_rejected():
    result = build_job(
        "emails", "send", None, JobOptions(), ALL, id_generator=lambda: "", now=NOW
    )
    assert isinstance(result, Err)


def test_metadata_is_copied_onto_job():
    job = _build(JobOptions(metadata={"trace": "t-1"})).unwrap()
    assert job.metadata == {"trace": "t-1"}


# ---------------------------------------------------------------------------
# Normalization and backend translation
# ---------------------------------------------------------------------------


def test_normalize_without_call_options_returns_defaults():
    defaults = JobOptions(attempts=4)
    assert normalize_options(None, defaults) is defaults


def test_normalize_per_call_wins():
    merged = normalize_options(JobOptions(attempts=2), JobOptions(attempts=4, priority=1))
    assert merged.attempts == 2
    assert merged.priority == 1


def test_backend_options_layering():
    options = JobOptions(
        attempts=4,
        delay=2,
        priority=5,
        remove_on_complete=True,
        provider_options=ProviderOptions(
            remove_on_complete=10,
            backoff=BackoffPolicy(type="fixed", delay=3),
            native={"lifo": True, "timeout": 99},
        ),
    )
    job = _build(options).unwrap()
    merged = build_backend_options(job, options, {"timeout": 30, "region": "eu"}, now=NOW)
    assert merged["region"] == "eu"
    assert merged["timeout"] == 99
    assert merged["lifo"] is True
    assert merged["priority"] == 5
    assert merged["remove_on_complete"] == 10
    assert merged["backoff"] == BackoffPolicy(type="fixed", delay=3)
    assert merged["job_id"] == "generated"
    assert merged["attempts"] == 4
    assert merged["delay"] == pytest.approx(2.0)


def test_absolute_schedule_translates_to_relative_delay():
    options = JobOptions(scheduled_for=NOW + timedelta(milliseconds=5000))
    job = _build(options).unwrap()
    assert job.status == JobStatus.DELAYED
    assert delay_seconds(job, NOW) == pytest.approx(5.0, abs=0.2)
    merged = build_backend_options(job, options, now=NOW)
    assert merged["delay"] == pytest.approx(5.0, abs=0.2)
    later = build_backend_options(job, options, now=NOW + timedelta(seconds=2))
    assert later["delay"] == pytest.approx(3.0, abs=0.2)
    assert delay_seconds(job, NOW + timedelta(seconds=9)) == 0.0


def test_native_identity_fields_are_dropped(caplog):
    options = JobOptions(
        provider_options=ProviderOptions(native={"job_id": "x", "attempts": 99, "delay": 5})
    )
    job = _build(options).unwrap()
    merged = build_backend_options(job, options, now=NOW)
    assert merged["job_id"] == "generated"
    assert merged["attempts"] == DEFAULT_ATTEMPTS
    assert merged["delay"] == 0.0
    assert "Ignoring identity fields" in caplog.text


# ---------------------------------------------------------------------------
# Envelope and ids
# ---------------------------------------------------------------------------


def test_envelope_round_trip_copies():
    data = {"nested": [1, 2]}
    body = wrap_payload(data, {"m": 1})
    assert is_envelope(body)
    assert body[ENVELOPE_MARKER] == 1
    data["nested"].append(3)
    restored, metadata = unwrap_payload(body)
    assert restored == {"nested": [1, 2]}
    assert metadata == {"m": 1}


def test_unwrap_raw_body_is_data():
    assert unwrap_payload({"plain": True}) == ({"plain": True}, {})
    assert unwrap_payload("text") == ("text", {})


def test_unwrap_tolerates_bad_metadata():
    assert unwrap_payload({ENVELOPE_MARKER: 1, "data": 1, "metadata": "x"}) == (1, {})


def test_id_generators():
    assert uuid_id() != uuid_id()
    gen = prefixed_id("tenant")
    assert gen().startswith("tenant-")
