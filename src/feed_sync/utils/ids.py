# src/feed_sync/utils/ids.py
"""Helpers for the client-only temporary id namespace."""

from __future__ import annotations

import secrets
import time

TEMP_ID_PREFIX = "temp-"


def new_temp_id() -> str:
    """Return a fresh placeholder id that can never collide with a server id."""
    return f"{TEMP_ID_PREFIX}{time.time_ns()}-{secrets.token_hex(4)}"


def is_temp_id(value: str | None) -> bool:
    """Return True if the id belongs to the temporary namespace."""
    return value is not None and value.startswith(TEMP_ID_PREFIX)
