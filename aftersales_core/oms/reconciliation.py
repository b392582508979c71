"""Apply OMS create, status and info events to case records.

The OMS is authoritative: status updates set state directly instead of going
through the transition gate. Each operation is one unit; any failure rolls
it back and surfaces as ``ReconciliationError`` carrying the reference
number and the root cause.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..enums import CaseStage, CaseState, CaseType, ExchangeStatus, LogAction, ReturnStatus
from ..errors import AmountCapExceeded, ReconciliationConflict, ReconciliationError, ValidationError
from ..events import CaseCreated, DomainEvent, state_change_events
from ..logger import get_logger
from ..models import Actor, CaseRecord, ExchangeShipment, ProductSnapshot, ReturnShipment
from ..service import AftersalesService
from ..utils.timestamps import utcnow
from ..workflow import advance_stage
from .mapper import OmsStatusMapper
from .schemas import (
    OmsCreateEvent,
    OmsExchangeAddress,
    OmsInfoEvent,
    OmsProduct,
    OmsReturnLogistics,
    OmsStatusEvent,
    parse_event,
)

logger = get_logger()

OMS_ACTOR_ID = "OMS_SYNC"

# A shipped return leg in one of these states means the merchant now waits on the parcel
RETURN_WAITING_STATES = (CaseState.APPROVED, CaseState.PENDING_RETURN)

# OMS info field -> case attribute
INFO_FIELDS = {
    "description": "description",
    "proof_images": "proof_images",
    "refund_amount_cents": "original_refund_cents",
    "applicant_name": "applicant_name",
    "applicant_phone": "applicant_phone",
    "service_note": "service_note",
}


def _reference_of(payload: Any) -> str:
    if isinstance(payload, dict):
        return str(payload.get("aftersalesNo") or payload.get("reference_number") or "<unknown>")
    return str(getattr(payload, "reference_number", "<unknown>"))


def snapshot_from_products(products: list[OmsProduct]) -> Optional[ProductSnapshot]:
    """Build the immutable snapshot from the first OMS product line."""
    if not products:
        return None
    first = products[0]
    product_id = first.product_id or first.product_code or "unknown-product"
    product_name = first.product_name or "Unknown Product"
    paid = first.paid_price_cents or 0
    return ProductSnapshot(
        product_id=product_id,
        sku_id=first.sku_id or f"{product_id}-sku",
        product_name=product_name,
        sku_name=first.sku_name or f"{product_name} (Default SKU)",
        original_price_cents=first.original_price_cents or paid,
        paid_price_cents=paid,
        order_quantity=first.quantity,
        refund_quantity=first.quantity,
        products=[p.model_dump(by_alias=True, exclude_none=True) for p in products],
    )


class OmsReconciliationService:
    """Keeps case records consistent with events pushed by the OMS."""

    def __init__(self, service: AftersalesService, mapper: OmsStatusMapper | None = None) -> None:
        self.service = service
        self.db = service.db
        self.mapper = mapper or OmsStatusMapper()

    async def _guard(self, reference: str, label: str, operation: Callable[[], Awaitable[CaseRecord]]) -> CaseRecord:
        try:
            return await operation()
        except ReconciliationError:
            raise
        except Exception as e:
            logger.error(f"OMS {label} for {reference} failed: {e}", exc_info=True)
            raise ReconciliationError(reference, e) from e

    async def _associate_user(self, phone: str | None) -> Optional[str]:
        directory = self.service.user_directory
        if not phone or directory is None:
            return None
        try:
            return await directory.find_by_phone(phone)
        except Exception as e:
            logger.warning(f"User association by phone failed, continuing without it: {e}")
            return None

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, payload: Any) -> CaseRecord:
        reference = _reference_of(payload)
        return await self._guard(reference, "create", lambda: self._create(payload))

    async def _create(self, payload: Any) -> CaseRecord:
        event = parse_event(OmsCreateEvent, payload)
        case = self._build_case(event)
        case.user_id = await self._associate_user(event.applicant_phone)

        violations = self.service.validator.validate(case)
        if violations:
            raise ValidationError(violations)

        async def unit() -> tuple[CaseRecord, list[DomainEvent]]:
            record = case.copy()
            async with self.db.atomic():
                if await self.db.find_case_by_reference(record.reference_number) is not None:
                    raise ReconciliationConflict(record.reference_number, "case already exists")
                try:
                    await self.db.insert_case(record)
                except sqlite3.IntegrityError as e:
                    raise ReconciliationConflict(record.reference_number, "case already exists") from e
                merged = await self._merge_logistics(record, event.return_logistics, event.exchange_address)
                if "state" in merged or "stage" in merged:
                    await self.db.update_case(record)
                await self.service.log(
                    record,
                    LogAction.SYSTEM_SYNC,
                    Actor.system(OMS_ACTOR_ID),
                    next_state=record.state,
                    content=f"Synchronised from OMS with status {event.status}",
                    context={
                        "source": "oms",
                        "status": event.status,
                        "aftersales_type": event.aftersales_type,
                        "user_associated": record.user_id is not None,
                    },
                )
            created = CaseCreated(
                case_id=record.id,
                reference_number=record.reference_number,
                next_state=record.state,
                action="oms_create",
            )
            return record, [created]

        record = await self.service.run_unit(unit, f"OMS create {case.reference_number}")
        logger.info(f"Created case {record.reference_number} from OMS in state {record.state.value}")
        return record

    def _build_case(self, event: OmsCreateEvent) -> CaseRecord:
        now = utcnow()
        case_type = self.mapper.map_type(event.aftersales_type)
        state, stage = self.mapper.map_status(event.status)
        if not self.mapper.is_known_status(event.status):
            logger.warning(f"Unmapped OMS status {event.status!r} for {event.reference_number}; using {state.value}")

        snapshot = snapshot_from_products(event.products)
        refund_cents = event.refund_amount_cents
        if refund_cents is None and event.products:
            refund_cents = event.products[0].refund_amount_cents
        if refund_cents is None and snapshot is not None:
            refund_cents = snapshot.refund_amount_cents

        case = CaseRecord(
            reference_number=event.reference_number,
            case_type=case_type,
            reason=self.mapper.map_reason(event.reason),
            order_number=event.order_number,
            original_refund_cents=refund_cents or 0,
            state=state,
            stage=stage,
            order_product_id=event.products[0].order_product_id if event.products else None,
            applicant_name=event.applicant_name,
            applicant_phone=event.applicant_phone,
            description=event.description,
            proof_images=list(event.proof_images),
            approved_refund_cents=event.approved_amount_cents,
            audit_at=event.audit_time,
            processor=event.auditor,
            reject_reason=event.audit_remark if state == CaseState.REJECTED else None,
            service_note=event.service_note,
            product_snapshot=snapshot,
            exchange_address=event.exchange_address.to_dict() if event.exchange_address else None,
            created_at=event.apply_time or now,
        )
        if case.approved_refund_cents is not None and case.approved_refund_cents > case.original_refund_cents:
            raise AmountCapExceeded(case.approved_refund_cents, case.original_refund_cents)
        case.deadline_at = self.service.timeout_policy.deadline_for(case_type, state, now)
        if state.is_terminal:
            case.completed_at = now
        return case

    # ------------------------------------------------------------------
    # Update status
    # ------------------------------------------------------------------

    async def update_status(self, payload: Any) -> CaseRecord:
        reference = _reference_of(payload)
        return await self._guard(reference, "status update", lambda: self._update_status(payload))

    async def _update_status(self, payload: Any) -> CaseRecord:
        event = self._parse_status(payload)

        async def unit() -> tuple[CaseRecord, list[DomainEvent]]:
            async with self.db.atomic():
                return await self._apply_status(event)

        return await self.service.run_unit(unit, f"OMS status update {event.reference_number}")

    def _parse_status(self, payload: Any) -> OmsStatusEvent:
        event = parse_event(OmsStatusEvent, payload)
        if not self.mapper.is_known_status(event.status):
            state, _ = self.mapper.map_status(event.status)
            logger.warning(f"Unmapped OMS status {event.status!r} for {event.reference_number}; using {state.value}")
        return event

    async def _apply_status(self, event: OmsStatusEvent) -> tuple[CaseRecord, list[DomainEvent]]:
        """Fold one status event into the stored case. Runs inside an open unit."""
        now = utcnow()
        new_state, new_stage = self.mapper.map_status(event.status)
        case = await self._require(event.reference_number)
        previous_state = case.state
        changed: list[str] = []

        if case.state != new_state and not self.mapper.is_fulfilled_by(event.status, case.state):
            case.state = new_state
            case.stage = advance_stage(case.stage, new_stage)
            case.deadline_at = self.service.timeout_policy.deadline_for(case.case_type, new_state, now)
            if new_state.is_terminal and case.completed_at is None:
                case.completed_at = now
            changed.append("state")

        changed.extend(self._merge_metadata(case, event, new_state))
        if case.approved_refund_cents is not None and case.approved_refund_cents > case.original_refund_cents:
            raise AmountCapExceeded(case.approved_refund_cents, case.original_refund_cents)
        changed.extend(await self._merge_logistics(case, event.return_logistics, event.exchange_address, now))

        if not changed:
            return case, []

        violations = self.service.validator.validate(case)
        if violations:
            raise ValidationError(violations)

        await self.db.update_case(case)
        actor = Actor.system(event.auditor or OMS_ACTOR_ID)
        context = {
            "old_status": previous_state.value,
            "new_status": event.status,
            "remark": event.audit_remark,
            "changed_fields": changed,
        }
        if case.state != previous_state:
            await self.service.log(
                case,
                LogAction.STATUS_CHANGE,
                actor,
                previous_state=previous_state,
                next_state=case.state,
                content=f"OMS status change: {event.status}",
                context=context,
            )
        else:
            await self.service.log(
                case,
                LogAction.SYSTEM_UPDATE,
                actor,
                content=f"OMS updated {', '.join(changed)}",
                context=context,
            )
        return case, state_change_events(case, previous_state, "oms_status", {"status": event.status})

    def _merge_metadata(self, case: CaseRecord, event: OmsStatusEvent, state: CaseState) -> list[str]:
        changed: list[str] = []

        def assign(attr: str, value: Any) -> None:
            if value is not None and getattr(case, attr) != value:
                setattr(case, attr, value)
                changed.append(attr)

        assign("processor", event.auditor)
        assign("approved_refund_cents", event.approved_amount_cents)
        assign("audit_at", event.audit_time or event.process_time)
        assign("completed_at", event.completed_time)
        if state == CaseState.REJECTED:
            assign("reject_reason", event.audit_remark)
        return changed

    async def _merge_logistics(
        self,
        case: CaseRecord,
        logistics: OmsReturnLogistics | None,
        address: OmsExchangeAddress | None,
        now: datetime | None = None,
    ) -> list[str]:
        """Fold parcel and address data into the satellite records. Returns changed names.

        A return leg that ships for the first time moves the case to the
        receive stage, and an approved or awaiting-return case on to
        pending_receive, so local receipt confirmation can follow.
        """
        changed: list[str] = []
        shipped = False

        if address is not None:
            address_dict = address.to_dict()
            if case.exchange_address != address_dict:
                case.exchange_address = address_dict
                changed.append("exchange_address")

        if case.case_type == CaseType.RETURN_REFUND and logistics is not None:
            shipment = await self.db.get_return_shipment(case.id)
            if shipment is None:
                shipment = ReturnShipment(case_id=case.id, case_type=case.case_type)
            if shipment.status == ReturnStatus.PENDING:
                shipment.mark_shipped(logistics.company, logistics.tracking_number, now=logistics.return_time)
                shipped = True
            elif (shipment.carrier, shipment.tracking_no) == (logistics.company, logistics.tracking_number):
                shipment = None
            else:
                shipment.carrier = logistics.company
                shipment.tracking_no = logistics.tracking_number
            if shipment is not None:
                await self.db.save_return_shipment(shipment)
                changed.append("return_logistics")

        if case.case_type == CaseType.EXCHANGE and (logistics is not None or "exchange_address" in changed):
            exchange = await self.db.get_exchange_shipment(case.id)
            dirty = exchange is None
            if exchange is None:
                exchange = ExchangeShipment(case_id=case.id, case_type=case.case_type)
            if "exchange_address" in changed or exchange.shipping_address != case.exchange_address:
                exchange.shipping_address = case.exchange_address
                dirty = True
            if logistics is not None:
                if exchange.status == ExchangeStatus.PENDING:
                    exchange.mark_return_shipped(logistics.company, logistics.tracking_number, now=logistics.return_time)
                    shipped = True
                    dirty = True
                    changed.append("return_logistics")
                elif (exchange.return_carrier, exchange.return_tracking_no) != (
                    logistics.company,
                    logistics.tracking_number,
                ):
                    exchange.return_carrier = logistics.company
                    exchange.return_tracking_no = logistics.tracking_number
                    dirty = True
                    changed.append("return_logistics")
            if dirty:
                await self.db.save_exchange_shipment(exchange)

        if shipped:
            changed.extend(self._advance_to_receive(case, now or utcnow()))
        return changed

    def _advance_to_receive(self, case: CaseRecord, now: datetime) -> list[str]:
        changed: list[str] = []
        if case.state in RETURN_WAITING_STATES:
            case.state = CaseState.PENDING_RECEIVE
            case.deadline_at = self.service.timeout_policy.deadline_for(case.case_type, case.state, now)
            changed.append("state")
        stage = advance_stage(case.stage, CaseStage.RECEIVE)
        if stage != case.stage:
            case.stage = stage
            changed.append("stage")
        return changed

    # ------------------------------------------------------------------
    # Update info
    # ------------------------------------------------------------------

    async def update_info(self, payload: Any) -> CaseRecord:
        reference = _reference_of(payload)
        return await self._guard(reference, "info update", lambda: self._update_info(payload))

    async def _update_info(self, payload: Any) -> CaseRecord:
        event = parse_event(OmsInfoEvent, payload)

        async def unit() -> tuple[CaseRecord, list[DomainEvent]]:
            async with self.db.atomic():
                return await self._apply_info(event)

        return await self.service.run_unit(unit, f"OMS info update {event.reference_number}")

    async def _apply_info(self, event: OmsInfoEvent) -> tuple[CaseRecord, list[DomainEvent]]:
        """Apply the fields present in one info event. Runs inside an open unit."""
        present = event.model_fields_set
        case = await self._require(event.reference_number)
        changed: list[str] = []

        for field_name, attr in INFO_FIELDS.items():
            if field_name not in present:
                continue
            value = getattr(event, field_name)
            if attr == "proof_images":
                value = list(value or [])
            elif attr == "original_refund_cents" and value is None:
                continue
            if getattr(case, attr) != value:
                setattr(case, attr, value)
                changed.append(attr)

        if "products" in present and event.products and case.product_snapshot is None:
            case.attach_snapshot(snapshot_from_products(event.products))
            changed.append("product_snapshot")

        if not changed:
            return case, []

        violations = self.service.validator.validate(case)
        if violations:
            raise ValidationError(violations)

        case.modification_count += 1
        await self.db.update_case(case)
        await self.service.log(
            case,
            LogAction.MODIFY_INFO,
            Actor.system(OMS_ACTOR_ID),
            content=f"OMS modified {', '.join(changed)}",
            context={
                "modified_fields": changed,
                "reason": event.modify_reason,
                "modification_count": case.modification_count,
            },
        )
        if case.needs_intervention:
            logger.warning(
                f"Case {case.reference_number} modified {case.modification_count} times; needs intervention"
            )
        return case, []

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, payload: dict[str, Any]) -> CaseRecord:
        """Create the case if the reference is unknown, otherwise update it.

        An update applies the status part and the info part in one unit, so a
        payload that fails either half leaves the case as it was.
        """
        reference = _reference_of(payload)
        existing = await self._guard_lookup(reference)
        if existing is None:
            return await self.create(payload)
        return await self._guard(reference, "sync", lambda: self._sync_update(payload))

    async def _sync_update(self, payload: Any) -> CaseRecord:
        status_event = None
        if isinstance(payload, dict) and payload.get("status"):
            status_event = self._parse_status(payload)
        info_event = parse_event(OmsInfoEvent, payload)

        async def unit() -> tuple[CaseRecord, list[DomainEvent]]:
            events: list[DomainEvent] = []
            async with self.db.atomic():
                if status_event is not None:
                    _, events = await self._apply_status(status_event)
                case, _ = await self._apply_info(info_event)
            return case, events

        return await self.service.run_unit(unit, f"OMS sync {info_event.reference_number}")

    async def _guard_lookup(self, reference: str) -> Optional[CaseRecord]:
        try:
            return await self.db.find_case_by_reference(reference)
        except Exception as e:
            raise ReconciliationError(reference, e) from e

    async def _require(self, reference_number: str) -> CaseRecord:
        case = await self.db.find_case_by_reference(reference_number)
        if case is None:
            raise ReconciliationConflict(reference_number, "case does not exist")
        return case
