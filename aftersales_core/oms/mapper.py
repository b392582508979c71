"""Translate OMS codes into core enums."""

from __future__ import annotations

from ..enums import CaseStage, CaseState, CaseType, RefundReason
from ..errors import ValidationError
from ..validation import Violation

TYPE_MAP: dict[str, CaseType] = {
    "refund": CaseType.REFUND_ONLY,
    "return": CaseType.RETURN_REFUND,
    "exchange": CaseType.EXCHANGE,
}

REASON_MAP: dict[str, RefundReason] = {
    "unused_discount": RefundReason.UNUSED_DISCOUNT,
    "quality_issue": RefundReason.QUALITY_ISSUE,
    "quality": RefundReason.QUALITY_ISSUE,
    "damaged": RefundReason.QUALITY_ISSUE,
    "price_issue": RefundReason.PRICE_ISSUE,
    "dont_want": RefundReason.DONT_WANT,
    "no_longer_wanted": RefundReason.DONT_WANT,
    "out_of_stock": RefundReason.OUT_OF_STOCK,
    "missing_item": RefundReason.MISSING_ITEM,
    "delivery_timeout": RefundReason.DELIVERY_TIMEOUT,
    "other": RefundReason.OTHER,
}

STATUS_MAP: dict[str, tuple[CaseState, CaseStage]] = {
    "pending": (CaseState.PENDING_APPROVAL, CaseStage.APPLY),
    "submitted": (CaseState.PENDING_APPROVAL, CaseStage.APPLY),
    "approved": (CaseState.APPROVED, CaseStage.AUDIT),
    "processing": (CaseState.APPROVED, CaseStage.RETURN),
    "rejected": (CaseState.REJECTED, CaseStage.AUDIT),
    "refused": (CaseState.REJECTED, CaseStage.AUDIT),
    "completed": (CaseState.COMPLETED, CaseStage.COMPLETE),
    "finished": (CaseState.COMPLETED, CaseStage.COMPLETE),
    "cancelled": (CaseState.CANCELLED, CaseStage.COMPLETE),
    "closed": (CaseState.CANCELLED, CaseStage.COMPLETE),
}

UNMAPPED_STATUS = (CaseState.PENDING_APPROVAL, CaseStage.APPLY)

# Local states that already fulfil an OMS status, so a replay does not pull the case back
FULFILLED_BY: dict[str, frozenset[CaseState]] = {
    "processing": frozenset(
        {CaseState.APPROVED, CaseState.PENDING_RETURN, CaseState.PENDING_RECEIVE, CaseState.PENDING_REFUND}
    ),
}


class OmsStatusMapper:
    @staticmethod
    def map_type(value: str) -> CaseType:
        case_type = TYPE_MAP.get((value or "").strip().lower())
        if case_type is None:
            raise ValidationError([Violation("aftersalesType", f"unknown after-sales type {value!r}")])
        return case_type

    @staticmethod
    def map_reason(value: str | None) -> RefundReason:
        return REASON_MAP.get((value or "").strip().lower(), RefundReason.OTHER)

    @staticmethod
    def map_status(value: str | None) -> tuple[CaseState, CaseStage]:
        return STATUS_MAP.get((value or "").strip().lower(), UNMAPPED_STATUS)

    @staticmethod
    def is_fulfilled_by(value: str | None, state: CaseState) -> bool:
        return state in FULFILLED_BY.get((value or "").strip().lower(), frozenset())

    @staticmethod
    def is_known_status(value: str | None) -> bool:
        return (value or "").strip().lower() in STATUS_MAP
