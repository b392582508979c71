"""Standardized error messages for after-sales operations."""

from __future__ import annotations

from typing import Any


def get_error_message(error_type: str, **kwargs: Any) -> str:
    """
    Get formatted error message with variables.

    Args:
        error_type: Type of error (key from ERROR_MESSAGES)
        **kwargs: Variables to format into the message

    Returns:
        Formatted error message string
    """
    message_template = ERROR_MESSAGES.get(error_type, "An error occurred. Please try again later.")

    try:
        return message_template.format(**kwargs)
    except KeyError:
        # If a required variable is missing, return a generic message
        return f"{error_type.replace('_', ' ').capitalize()} error occurred."


ERROR_MESSAGES = {
    "validation_failed": "Case validation failed: {details}",
    "illegal_transition": "Action '{action}' is not allowed while the case is {state}.",
    "record_transition": "Action '{action}' is not allowed while {record} {number} is {state}.",
    "modification_cap": (
        "Case has been modified {count} times and needs customer-service intervention; "
        "it can no longer be resubmitted."
    ),
    "amount_cap": "Refund amount {requested} exceeds the original amount {original}.",
    "case_not_found": "After-sales case {case_id} was not found.",
    "reconciliation_failed": "Failed to reconcile OMS case {reference}: {cause}",
    "reconciliation_conflict": "OMS case {reference}: {cause}",
    "transient_persistence": "The case is busy, please retry: {cause}",
    "stale_case": "Case {case_id} was modified concurrently (version {version}).",
}


def format_violations(violations: list[Any]) -> str:
    """Join violations into a single line for error messages."""
    return "; ".join(f"{v.field}: {v.message}" for v in violations)
