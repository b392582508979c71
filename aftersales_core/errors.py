"""Error taxonomy for after-sales operations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .utils.error_messages import format_violations, get_error_message

if TYPE_CHECKING:
    from .validation import Violation


class AftersalesError(RuntimeError):
    """Base class for every error raised by the after-sales core."""

    error_type = "aftersales_error"

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        if message is None:
            message = get_error_message(self.error_type, **kwargs)
        super().__init__(message)


class ValidationError(AftersalesError):
    """Raised with every violation found; nothing has been applied."""

    error_type = "validation_failed"

    def __init__(self, violations: list[Violation]) -> None:
        self.violations = list(violations)
        super().__init__(details=format_violations(self.violations))

    @property
    def fields(self) -> list[str]:
        return [v.field for v in self.violations]


class IllegalTransition(AftersalesError):
    """Raised when an action is not permitted in the case's current state."""

    error_type = "illegal_transition"

    def __init__(self, state: Any, action: Any, message: str | None = None) -> None:
        self.state = getattr(state, "value", state)
        self.action = getattr(action, "value", action)
        super().__init__(message, state=self.state, action=self.action)


class ModificationCapExceeded(IllegalTransition):
    """Raised when a case has used up its self-service modifications."""

    error_type = "modification_cap"

    def __init__(self, state: Any, action: Any, count: int) -> None:
        self.count = count
        super().__init__(state, action, get_error_message(self.error_type, count=count))


class AmountCapExceeded(AftersalesError):
    """Raised when a refund amount would exceed the originally requested amount."""

    error_type = "amount_cap"

    def __init__(self, requested_cents: int, original_cents: int) -> None:
        self.requested_cents = requested_cents
        self.original_cents = original_cents
        super().__init__(requested=requested_cents, original=original_cents)


class CaseNotFound(AftersalesError):
    error_type = "case_not_found"

    def __init__(self, case_id: Any) -> None:
        self.case_id = case_id
        super().__init__(case_id=case_id)


class ReconciliationError(AftersalesError):
    """Raised when an inbound OMS event could not be applied.

    The unit that failed has been rolled back in full.
    """

    error_type = "reconciliation_failed"

    def __init__(self, reference_number: str, cause: BaseException | str) -> None:
        self.reference_number = reference_number
        self.cause = cause
        super().__init__(reference=reference_number, cause=cause)


class ReconciliationConflict(ReconciliationError):
    """Create for an existing reference, or update for a missing one."""

    error_type = "reconciliation_conflict"


class TransientPersistenceError(AftersalesError):
    """Lock contention or connection loss; safe to retry."""

    error_type = "transient_persistence"

    def __init__(self, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(cause=cause)


class StaleCaseError(TransientPersistenceError):
    """The case row changed between read and write."""

    error_type = "stale_case"

    def __init__(self, case_id: int, version: int) -> None:
        self.case_id = case_id
        self.version = version
        AftersalesError.__init__(self, case_id=case_id, version=version)
        self.cause = self.args[0]
