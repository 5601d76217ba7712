"""
Codec — StoredQueue to and from bytes, using Pydantic v2.

Wire format (model_dump_json):

{
  "version": 7,
  "paused": false,
  "completed_total": 3,
  "failed_total": 1,
  "next_seq": 5,
  "jobs": [
    {
      "job": {"id": "…", "name": "send-welcome", "status": "waiting", …},
      "body": {"__jobport__": 1, "data": {…}, "metadata": {…}},
      "seq": 4,
      "ready_at": "2026-01-01T00:00:00Z",
      "lease_token": null,
      …
    }
  ]
}

Datetimes are ISO-8601 with offset; enums serialize to their values. User
data must be JSON-serializable; anything else fails with
PydanticSerializationError, which the error mapper classifies as a
serialization DataError.
"""

from __future__ import annotations

from jobport.domain.state import StoredQueue


def encode(state: StoredQueue) -> bytes:
    """StoredQueue → UTF-8 JSON bytes."""
    return state.model_dump_json().encode("utf-8")


def decode(data: bytes) -> StoredQueue:
    """UTF-8 JSON bytes → StoredQueue. Empty bytes is an empty queue."""
    if not data:
        return StoredQueue()
    return StoredQueue.model_validate_json(data)
