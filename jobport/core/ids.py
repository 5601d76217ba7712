"""Job-id generators. Any zero-argument callable returning a unique str qualifies."""

from __future__ import annotations

import uuid
from collections.abc import Callable


def uuid_id() -> str:
    """Random UUID4 string. The default generator for Queue."""
    return str(uuid.uuid4())


def prefixed_id(prefix: str) -> Callable[[], str]:
    """Generator producing '<prefix>-<uuid4 hex>' ids, e.g. for per-tenant queues."""

    def _generate() -> str:
        return f"{prefix}-{uuid.uuid4().hex}"

    return _generate
