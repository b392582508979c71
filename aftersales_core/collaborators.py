"""Interfaces for services the core consumes but does not implement."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .events import DomainEvent
    from .models import CaseRecord, ProductSnapshot, RefundExecution
    from .validation import Violation


@dataclass(frozen=True)
class RefundResult:
    """Outcome reported by a refund gateway."""

    success: bool
    transaction_no: Optional[str] = None
    failure_reason: Optional[str] = None
    response: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class UserDirectory(Protocol):
    async def find_by_phone(self, phone: str) -> Optional[str]:
        """Return the user id registered with phone, or None."""
        ...


@runtime_checkable
class SnapshotProvider(Protocol):
    async def get_snapshot(self, order_number: str, order_product_id: str) -> "ProductSnapshot":
        """Capture the order line as it was sold."""
        ...


@runtime_checkable
class RefundGateway(Protocol):
    async def refund(self, execution: "RefundExecution", case: "CaseRecord") -> RefundResult:
        ...


@runtime_checkable
class Validator(Protocol):
    def validate(self, case: "CaseRecord") -> list["Violation"]:
        ...


@runtime_checkable
class EventSink(Protocol):
    async def publish(self, event: "DomainEvent") -> None:
        ...
