"""Currency conversion and formatting utilities."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation


def format_amount(cents: int, symbol: str = "¥") -> str:
    """
    Format a value in cents as a currency string.

    Args:
        cents: Amount in cents (e.g., 1999 for 19.99)
        symbol: Currency symbol prefix

    Returns:
        Formatted currency string (e.g., "¥19.99")
    """
    sign = "-" if cents < 0 else ""
    units, remainder = divmod(abs(cents), 100)
    return f"{sign}{symbol}{units:,}.{remainder:02d}"


def to_cents(amount: object) -> int:
    """Convert a decimal amount (string, int or float) to integer cents.

    Raises ValueError for values that are not numeric.
    """
    if isinstance(amount, bool):
        raise ValueError(f"Invalid amount: {amount!r}")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
