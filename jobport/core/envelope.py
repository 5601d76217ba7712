"""
Payload envelope — keeps user data apart from backend-native fields.

Adapters store

    {"__jobport__": 1, "data": <user data>, "metadata": {...}}

instead of the bare payload, so a backend that adds its own keys to the
stored body can never be confused with user `data`. unwrap_payload() is
defensive: a body without the marker (e.g. enqueued by another producer) is
returned as raw data with empty metadata.
"""

from __future__ import annotations

import copy
from typing import Any

ENVELOPE_MARKER = "__jobport__"
ENVELOPE_VERSION = 1


def wrap_payload(data: Any, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        ENVELOPE_MARKER: ENVELOPE_VERSION,
        "data": copy.deepcopy(data),
        "metadata": copy.deepcopy(metadata or {}),
    }


def is_envelope(body: Any) -> bool:
    return isinstance(body, dict) and ENVELOPE_MARKER in body and "data" in body


def unwrap_payload(body: Any) -> tuple[Any, dict[str, Any]]:
    """Return (data, metadata) from a stored body, wrapped or not."""
    if not is_envelope(body):
        return copy.deepcopy(body), {}
    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    return copy.deepcopy(body["data"]), copy.deepcopy(metadata)
