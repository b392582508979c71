"""Domain records for after-sales cases and their satellite processes."""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

from . import constants
from .enums import (
    ActorType,
    CaseStage,
    CaseState,
    CaseType,
    ExchangeStatus,
    LogAction,
    PaymentMethod,
    RefundReason,
    RefundStatus,
    ReturnStatus,
)
from .errors import IllegalTransition
from .utils.error_messages import get_error_message
from .utils.timestamps import from_iso, utcnow


def generate_business_number(prefix: str, now: datetime | None = None) -> str:
    """Return prefix + YYYYMMDD + 6 random digits, e.g. RF20240101123456."""
    now = now or utcnow()
    return f"{prefix}{now.strftime('%Y%m%d')}{secrets.randbelow(1_000_000):06d}"


def _load_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


@dataclass(frozen=True)
class Actor:
    """Who performed a mutation."""

    type: ActorType
    id: Optional[str] = None

    @classmethod
    def system(cls, name: str = "system") -> "Actor":
        return cls(ActorType.SYSTEM, name)

    @classmethod
    def user(cls, user_id: str) -> "Actor":
        return cls(ActorType.USER, user_id)

    @classmethod
    def operator(cls, operator_id: str) -> "Actor":
        return cls(ActorType.OPERATOR, operator_id)


@dataclass(frozen=True)
class ProductSnapshot:
    """Order-line data captured when the case was opened. Never replaced."""

    product_id: str
    sku_id: str
    product_name: str
    sku_name: str | None = None
    original_price_cents: int = 0
    paid_price_cents: int = 0
    order_quantity: int = 1
    refund_quantity: int = 1
    attributes: dict[str, Any] = field(default_factory=dict)
    products: list[dict[str, Any]] = field(default_factory=list)

    @property
    def refund_amount_cents(self) -> int:
        return self.paid_price_cents * self.refund_quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "sku_id": self.sku_id,
            "product_name": self.product_name,
            "sku_name": self.sku_name,
            "original_price_cents": self.original_price_cents,
            "paid_price_cents": self.paid_price_cents,
            "order_quantity": self.order_quantity,
            "refund_quantity": self.refund_quantity,
            "attributes": dict(self.attributes),
            "products": list(self.products),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProductSnapshot":
        return cls(
            product_id=str(data["product_id"]),
            sku_id=str(data["sku_id"]),
            product_name=str(data["product_name"]),
            sku_name=data.get("sku_name"),
            original_price_cents=int(data.get("original_price_cents", 0)),
            paid_price_cents=int(data.get("paid_price_cents", 0)),
            order_quantity=int(data.get("order_quantity", 1)),
            refund_quantity=int(data.get("refund_quantity", 1)),
            attributes=dict(data.get("attributes") or {}),
            products=list(data.get("products") or []),
        )


@dataclass
class CaseRecord:
    """One after-sales claim against one order line."""

    reference_number: str
    case_type: CaseType
    reason: RefundReason
    order_number: str
    original_refund_cents: int
    state: CaseState = CaseState.PENDING_APPROVAL
    stage: CaseStage = CaseStage.APPLY
    id: Optional[int] = None
    order_product_id: Optional[str] = None
    user_id: Optional[str] = None
    applicant_name: Optional[str] = None
    applicant_phone: Optional[str] = None
    description: Optional[str] = None
    proof_images: list[str] = field(default_factory=list)
    approved_refund_cents: Optional[int] = None
    actual_refund_cents: Optional[int] = None
    refund_amount_modified: bool = False
    refund_amount_modify_reason: Optional[str] = None
    modification_count: int = 0
    deadline_at: Optional[datetime] = None
    audit_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reject_reason: Optional[str] = None
    service_note: Optional[str] = None
    processor: Optional[str] = None
    product_snapshot: Optional[ProductSnapshot] = None
    exchange_address: Optional[dict[str, Any]] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def total_refund_cents(self) -> int:
        if self.actual_refund_cents is not None:
            return self.actual_refund_cents
        return self.original_refund_cents

    @property
    def needs_intervention(self) -> bool:
        return self.modification_count >= constants.MAX_MODIFICATIONS

    @property
    def can_cancel(self) -> bool:
        return self.state in (
            CaseState.PENDING_APPROVAL,
            CaseState.PENDING_RETURN,
            CaseState.REJECTED,
        )

    @property
    def can_modify_amount(self) -> bool:
        return self.state == CaseState.PENDING_APPROVAL

    @property
    def can_resubmit(self) -> bool:
        return self.state == CaseState.REJECTED and not self.needs_intervention

    def is_timed_out(self, now: datetime | None = None) -> bool:
        if self.deadline_at is None:
            return False
        return self.deadline_at <= (now or utcnow())

    def attach_snapshot(self, snapshot: ProductSnapshot) -> None:
        if self.product_snapshot is not None and self.product_snapshot != snapshot:
            raise ValueError(f"Case {self.reference_number} already has a product snapshot")
        self.product_snapshot = snapshot

    def copy(self) -> "CaseRecord":
        return replace(self, proof_images=list(self.proof_images))

    @classmethod
    def from_row(cls, row: Any) -> "CaseRecord":
        snapshot = _load_json(row["product_snapshot"], None)
        return cls(
            id=row["id"],
            reference_number=row["reference_number"],
            case_type=CaseType(row["case_type"]),
            reason=RefundReason(row["reason"]),
            state=CaseState(row["state"]),
            stage=CaseStage(row["stage"]),
            order_number=row["order_number"],
            order_product_id=row["order_product_id"],
            user_id=row["user_id"],
            applicant_name=row["applicant_name"],
            applicant_phone=row["applicant_phone"],
            description=row["description"],
            proof_images=_load_json(row["proof_images"], []),
            original_refund_cents=row["original_refund_cents"],
            approved_refund_cents=row["approved_refund_cents"],
            actual_refund_cents=row["actual_refund_cents"],
            refund_amount_modified=bool(row["refund_amount_modified"]),
            refund_amount_modify_reason=row["refund_amount_modify_reason"],
            modification_count=row["modification_count"],
            deadline_at=from_iso(row["deadline_at"]),
            audit_at=from_iso(row["audit_at"]),
            completed_at=from_iso(row["completed_at"]),
            reject_reason=row["reject_reason"],
            service_note=row["service_note"],
            processor=row["processor"],
            product_snapshot=ProductSnapshot.from_dict(snapshot) if snapshot else None,
            exchange_address=_load_json(row["exchange_address"], None),
            version=row["version"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


def _record_error(record: str, number: str, status: Any, action: str) -> IllegalTransition:
    state = getattr(status, "value", status)
    message = get_error_message("record_transition", action=action, record=record, number=number, state=state)
    return IllegalTransition(status, action, message)


def _check_case_type(kind: str, case_type: CaseType, allowed: tuple[CaseType, ...]) -> None:
    if case_type not in allowed:
        raise ValueError(f"{kind} is not valid for {case_type.value} cases")


@dataclass
class RefundExecution:
    """Money-movement attempt for a refund_only or return_refund case."""

    case_id: int
    case_type: CaseType
    amount_cents: int
    refund_no: str = field(default_factory=lambda: generate_business_number(constants.REFUND_NUMBER_PREFIX))
    status: RefundStatus = RefundStatus.PENDING
    payment_method: Optional[PaymentMethod] = None
    transaction_no: Optional[str] = None
    retry_count: int = 0
    failure_reason: Optional[str] = None
    gateway_response: Optional[dict[str, Any]] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    max_retries: int = constants.MAX_REFUND_RETRIES

    def __post_init__(self) -> None:
        _check_case_type("Refund execution", self.case_type, (CaseType.REFUND_ONLY, CaseType.RETURN_REFUND))

    def _illegal(self, action: str) -> IllegalTransition:
        return _record_error("refund", self.refund_no, self.status, action)

    @property
    def can_retry(self) -> bool:
        return self.status == RefundStatus.FAILED and self.retry_count < self.max_retries

    @property
    def can_start(self) -> bool:
        return self.status == RefundStatus.PENDING or self.can_retry

    def mark_processing(self, now: datetime | None = None) -> None:
        if not self.can_start:
            raise self._illegal("process_refund")
        self.status = RefundStatus.PROCESSING
        self.failure_reason = None
        self.processed_at = now or utcnow()

    def mark_success(self, transaction_no: str | None, response: dict[str, Any] | None = None,
                     now: datetime | None = None) -> None:
        if self.status != RefundStatus.PROCESSING:
            raise self._illegal("complete_refund")
        self.status = RefundStatus.SUCCESS
        self.transaction_no = transaction_no
        self.gateway_response = response
        self.completed_at = now or utcnow()

    def mark_failed(self, reason: str, response: dict[str, Any] | None = None) -> None:
        if self.status != RefundStatus.PROCESSING:
            raise self._illegal("fail_refund")
        self.status = RefundStatus.FAILED
        self.failure_reason = reason
        self.gateway_response = response
        self.retry_count += 1

    def mark_cancelled(self) -> None:
        if self.status in (RefundStatus.SUCCESS, RefundStatus.PROCESSING):
            raise self._illegal("cancel")
        self.status = RefundStatus.CANCELLED

    @classmethod
    def from_row(cls, row: Any) -> "RefundExecution":
        return cls(
            id=row["id"],
            case_id=row["case_id"],
            case_type=CaseType(row["case_type"]),
            refund_no=row["refund_no"],
            amount_cents=row["amount_cents"],
            status=RefundStatus(row["status"]),
            payment_method=PaymentMethod(row["payment_method"]) if row["payment_method"] else None,
            transaction_no=row["transaction_no"],
            retry_count=row["retry_count"],
            failure_reason=row["failure_reason"],
            gateway_response=_load_json(row["gateway_response"], None),
            processed_at=from_iso(row["processed_at"]),
            completed_at=from_iso(row["completed_at"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class ReturnShipment:
    """Customer-to-merchant parcel for a return_refund case."""

    case_id: int
    case_type: CaseType
    return_no: str = field(default_factory=lambda: generate_business_number(constants.RETURN_NUMBER_PREFIX))
    status: ReturnStatus = ReturnStatus.PENDING
    carrier: Optional[str] = None
    tracking_no: Optional[str] = None
    remark: Optional[str] = None
    shipped_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    inspected_at: Optional[datetime] = None
    inspection_passed: Optional[bool] = None
    inspection_note: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _check_case_type("Return shipment", self.case_type, (CaseType.RETURN_REFUND,))

    def _illegal(self, action: str) -> IllegalTransition:
        return _record_error("return shipment", self.return_no, self.status, action)

    @property
    def can_ship(self) -> bool:
        return self.status == ReturnStatus.PENDING

    def mark_shipped(self, carrier: str, tracking_no: str, remark: str | None = None,
                     now: datetime | None = None) -> None:
        if not self.can_ship:
            raise self._illegal("ship_return")
        self.status = ReturnStatus.SHIPPED
        self.carrier = carrier
        self.tracking_no = tracking_no
        self.remark = remark
        self.shipped_at = now or utcnow()

    def mark_received(self, now: datetime | None = None) -> None:
        if self.status not in (ReturnStatus.SHIPPED, ReturnStatus.IN_TRANSIT):
            raise self._illegal("receive_return")
        self.status = ReturnStatus.RECEIVED
        self.received_at = now or utcnow()

    def mark_inspected(self, passed: bool, note: str | None = None, now: datetime | None = None) -> None:
        if self.status != ReturnStatus.RECEIVED:
            raise self._illegal("inspect_return")
        self.status = ReturnStatus.INSPECTED if passed else ReturnStatus.REJECTED
        self.inspection_passed = passed
        self.inspection_note = note
        self.inspected_at = now or utcnow()

    def reopen(self) -> None:
        """Reset a rejected parcel so a resubmitted case can ship again."""
        if self.status != ReturnStatus.REJECTED:
            raise self._illegal("reopen")
        self.status = ReturnStatus.PENDING
        self.carrier = None
        self.tracking_no = None
        self.remark = None
        self.shipped_at = None
        self.received_at = None
        self.inspected_at = None
        self.inspection_passed = None
        self.inspection_note = None

    @classmethod
    def from_row(cls, row: Any) -> "ReturnShipment":
        passed = row["inspection_passed"]
        return cls(
            id=row["id"],
            case_id=row["case_id"],
            case_type=CaseType(row["case_type"]),
            return_no=row["return_no"],
            status=ReturnStatus(row["status"]),
            carrier=row["carrier"],
            tracking_no=row["tracking_no"],
            remark=row["remark"],
            shipped_at=from_iso(row["shipped_at"]),
            received_at=from_iso(row["received_at"]),
            inspected_at=from_iso(row["inspected_at"]),
            inspection_passed=None if passed is None else bool(passed),
            inspection_note=row["inspection_note"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class ExchangeShipment:
    """Two-leg parcel exchange: customer return, then merchant replacement."""

    case_id: int
    case_type: CaseType
    exchange_no: str = field(default_factory=lambda: generate_business_number(constants.EXCHANGE_NUMBER_PREFIX))
    status: ExchangeStatus = ExchangeStatus.PENDING
    return_carrier: Optional[str] = None
    return_tracking_no: Optional[str] = None
    return_shipped_at: Optional[datetime] = None
    return_received_at: Optional[datetime] = None
    exchange_carrier: Optional[str] = None
    exchange_tracking_no: Optional[str] = None
    exchange_shipped_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reject_reason: Optional[str] = None
    shipping_address: Optional[dict[str, Any]] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _check_case_type("Exchange shipment", self.case_type, (CaseType.EXCHANGE,))

    def _illegal(self, action: str) -> IllegalTransition:
        return _record_error("exchange", self.exchange_no, self.status, action)

    @property
    def can_ship(self) -> bool:
        return self.status == ExchangeStatus.PENDING

    def mark_return_shipped(self, carrier: str, tracking_no: str, now: datetime | None = None) -> None:
        if not self.can_ship:
            raise self._illegal("ship_return")
        self.status = ExchangeStatus.RETURN_SHIPPED
        self.return_carrier = carrier
        self.return_tracking_no = tracking_no
        self.return_shipped_at = now or utcnow()

    def mark_return_received(self, now: datetime | None = None) -> None:
        if self.status != ExchangeStatus.RETURN_SHIPPED:
            raise self._illegal("receive_exchange")
        self.status = ExchangeStatus.RETURN_RECEIVED
        self.return_received_at = now or utcnow()

    def mark_exchange_shipped(self, carrier: str, tracking_no: str, now: datetime | None = None) -> None:
        if self.status != ExchangeStatus.RETURN_RECEIVED:
            raise self._illegal("ship_exchange")
        self.status = ExchangeStatus.EXCHANGE_SHIPPED
        self.exchange_carrier = carrier
        self.exchange_tracking_no = tracking_no
        self.exchange_shipped_at = now or utcnow()

    def mark_completed(self, now: datetime | None = None) -> None:
        if self.status != ExchangeStatus.EXCHANGE_SHIPPED:
            raise self._illegal("complete")
        self.status = ExchangeStatus.COMPLETED
        self.completed_at = now or utcnow()

    def mark_rejected(self, reason: str | None) -> None:
        if self.status in (ExchangeStatus.COMPLETED, ExchangeStatus.CANCELLED):
            raise self._illegal("reject")
        self.status = ExchangeStatus.REJECTED
        self.reject_reason = reason

    def reopen(self) -> None:
        """Reset a rejected exchange so a resubmitted case can ship again."""
        if self.status != ExchangeStatus.REJECTED:
            raise self._illegal("reopen")
        self.status = ExchangeStatus.PENDING
        self.return_carrier = None
        self.return_tracking_no = None
        self.return_shipped_at = None
        self.return_received_at = None
        self.exchange_carrier = None
        self.exchange_tracking_no = None
        self.exchange_shipped_at = None
        self.completed_at = None
        self.reject_reason = None

    @classmethod
    def from_row(cls, row: Any) -> "ExchangeShipment":
        return cls(
            id=row["id"],
            case_id=row["case_id"],
            case_type=CaseType(row["case_type"]),
            exchange_no=row["exchange_no"],
            status=ExchangeStatus(row["status"]),
            return_carrier=row["return_carrier"],
            return_tracking_no=row["return_tracking_no"],
            return_shipped_at=from_iso(row["return_shipped_at"]),
            return_received_at=from_iso(row["return_received_at"]),
            exchange_carrier=row["exchange_carrier"],
            exchange_tracking_no=row["exchange_tracking_no"],
            exchange_shipped_at=from_iso(row["exchange_shipped_at"]),
            completed_at=from_iso(row["completed_at"]),
            reject_reason=row["reject_reason"],
            shipping_address=_load_json(row["shipping_address"], None),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class Carrier:
    """Registered courier company that return and replacement parcels may use."""

    code: str
    name: str
    tracking_url_template: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0
    description: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def matches(self, name_or_code: str) -> bool:
        value = name_or_code.strip().lower()
        return value in (self.code.lower(), self.name.lower())

    def tracking_url(self, tracking_no: str) -> Optional[str]:
        """Public tracking page for a parcel, or None when the carrier has no template."""
        if not self.tracking_url_template or not tracking_no:
            return None
        return self.tracking_url_template.replace("{tracking_no}", quote(tracking_no.strip(), safe=""))

    @classmethod
    def from_row(cls, row: Any) -> "Carrier":
        return cls(
            id=row["id"],
            code=row["code"],
            name=row["name"],
            tracking_url_template=row["tracking_url_template"],
            is_active=bool(row["is_active"]),
            sort_order=row["sort_order"],
            description=row["description"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class ReturnAddress:
    """Merchant warehouse that customers send return parcels to."""

    name: str
    contact_name: str
    contact_phone: str
    province: str
    city: str
    address: str
    district: Optional[str] = None
    zip_code: Optional[str] = None
    company_name: Optional[str] = None
    business_hours: Optional[str] = None
    special_instructions: Optional[str] = None
    is_default: bool = False
    is_active: bool = True
    sort_order: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def full_address(self) -> str:
        parts = (self.province, self.city, self.district, self.address)
        return " ".join(part for part in parts if part)

    def to_dict(self) -> dict[str, Any]:
        """Shape handed to customers together with a pending_return case."""
        return {
            "id": self.id,
            "name": self.name,
            "contact_name": self.contact_name,
            "contact_phone": self.contact_phone,
            "full_address": self.full_address,
            "province": self.province,
            "city": self.city,
            "district": self.district,
            "address": self.address,
            "zip_code": self.zip_code,
            "company_name": self.company_name,
            "business_hours": self.business_hours,
            "special_instructions": self.special_instructions,
        }

    @classmethod
    def from_row(cls, row: Any) -> "ReturnAddress":
        return cls(
            id=row["id"],
            name=row["name"],
            contact_name=row["contact_name"],
            contact_phone=row["contact_phone"],
            province=row["province"],
            city=row["city"],
            district=row["district"],
            address=row["address"],
            zip_code=row["zip_code"],
            company_name=row["company_name"],
            business_hours=row["business_hours"],
            special_instructions=row["special_instructions"],
            is_default=bool(row["is_default"]),
            is_active=bool(row["is_active"]),
            sort_order=row["sort_order"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass(frozen=True)
class AuditLogEntry:
    """One immutable audit row."""

    case_id: int
    action: LogAction
    actor_type: ActorType
    actor_id: Optional[str] = None
    previous_state: Optional[CaseState] = None
    next_state: Optional[CaseState] = None
    content: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "AuditLogEntry":
        return cls(
            id=row["id"],
            case_id=row["case_id"],
            action=LogAction(row["action"]),
            actor_type=ActorType(row["actor_type"]),
            actor_id=row["actor_id"],
            previous_state=CaseState(row["previous_state"]) if row["previous_state"] else None,
            next_state=CaseState(row["next_state"]) if row["next_state"] else None,
            content=row["content"],
            context=_load_json(row["context"], {}),
            created_at=from_iso(row["created_at"]),
        )
