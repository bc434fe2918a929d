"""Shared helpers for job handlers."""

from __future__ import annotations

from uuid import UUID


def uuid_from_payload(payload: dict | None, key: str) -> UUID:
    """Read a UUID field from a job payload, raising ValueError when missing/invalid."""
    value = (payload or {}).get(key)
    if not value:
        raise ValueError(f"Missing {key} in job payload")
    try:
        return UUID(str(value))
    except ValueError:
        raise ValueError(f"Invalid {key} in job payload: {value!r}")
