"""Utility helpers for the after-sales core."""

from .currency import format_amount, to_cents
from .error_messages import get_error_message
from .timestamps import from_iso, parse_external_time, to_iso, utcnow

__all__ = [
    "format_amount",
    "to_cents",
    "get_error_message",
    "from_iso",
    "parse_external_time",
    "to_iso",
    "utcnow",
]
