"""Small general-purpose helpers."""

from __future__ import annotations

from typing import TypeVar

T = TypeVar("T")


def if_then_else(condition: bool, then_value: T, else_value: T) -> T:
    """Return ``then_value`` when ``condition`` holds, otherwise ``else_value``."""
    if condition:
        return then_value
    return else_value