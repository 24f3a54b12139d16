"""Checks shared by the ``__post_init__`` of the frozen models.

Type problems raise ``TypeError`` and bad values raise ``ValueError``, so
callers parsing untrusted input (relay events, stored records) can catch
both in one clause.
"""

from __future__ import annotations

from typing import Any


def _type_name(value: Any) -> str:
    return type(value).__name__


def validate_instance(value: Any, expected: type, name: str) -> None:
    if not isinstance(value, expected):
        raise TypeError(f"{name}: expected {expected.__name__}, got {_type_name(value)}")


def _validate_int(value: Any, name: str, low: int, high: int | None = None) -> None:
    # bool is an int subclass; True is never a valid kind, timestamp or hour
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name}: expected int, got {_type_name(value)}")
    if value < low or (high is not None and value > high):
        bounds = f">= {low}" if high is None else f"in {low}..{high}"
        raise ValueError(f"{name} must be {bounds}, got {value}")


def validate_timestamp(value: Any, name: str) -> None:
    """Non-negative ``int``; also used for event kinds."""
    _validate_int(value, name, 0)


def validate_hour(value: Any, name: str) -> None:
    _validate_int(value, name, 0, 23)


def validate_str_no_null(value: Any, name: str) -> None:
    """A ``str`` without NUL characters, which PostgreSQL text cannot store."""
    validate_instance(value, str, name)
    if "\x00" in value:
        raise ValueError(f"{name} contains null bytes")


def validate_str_not_empty(value: Any, name: str) -> None:
    validate_str_no_null(value, name)
    if not value:
        raise ValueError(f"{name} must not be empty")
