"""Case operations: application, gate actions, amendments and satellite processes.

Every mutation runs as one unit (``Database.atomic``): the case is re-read,
checked, changed, written with its version guard and audited before commit.
Domain events go out only after the commit. Units that hit lock contention
or a lost version race are retried with exponential backoff.
"""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from . import constants
from .auto_audit import AutoApprovalRule
from .collaborators import RefundGateway, RefundResult, SnapshotProvider, UserDirectory, Validator
from .config import Config
from .database import Database
from .enums import (
    ActorType,
    CaseAction,
    CaseState,
    CaseType,
    ExchangeStatus,
    LogAction,
    PaymentMethod,
    RefundReason,
    RefundStatus,
    ReturnStatus,
)
from .errors import (
    AmountCapExceeded,
    CaseNotFound,
    IllegalTransition,
    TransientPersistenceError,
    ValidationError,
)
from .events import CaseCreated, DomainEvent, EventDispatcher, transition_events
from .logger import get_audit_logger, get_logger
from .models import (
    Actor,
    AuditLogEntry,
    Carrier,
    CaseRecord,
    ExchangeShipment,
    ProductSnapshot,
    RefundExecution,
    ReturnAddress,
    ReturnShipment,
    generate_business_number,
)
from .timeouts import SWEEPABLE_STATES, TimeoutPolicy
from .utils.currency import format_amount
from .utils.timestamps import utcnow
from .validation import CaseValidator, Violation, validate_carrier, validate_return_address, validate_shipment
from .workflow import CaseWorkflow, TransitionResult

logger = get_logger()
audit_logger = get_audit_logger()

T = TypeVar("T")

LOG_ACTION_FOR = {
    CaseAction.APPROVE: LogAction.APPROVE,
    CaseAction.REJECT: LogAction.REJECT,
    CaseAction.CANCEL: LogAction.CANCEL,
    CaseAction.START_PROCESSING: LogAction.STATE_CHANGE,
    CaseAction.SHIP_RETURN: LogAction.SHIP_RETURN,
    CaseAction.CONFIRM_RECEIVE: LogAction.RECEIVE_RETURN,
    CaseAction.REJECT_RECEIVE: LogAction.INSPECT_RETURN,
    CaseAction.COMPLETE_REFUND: LogAction.COMPLETE_REFUND,
    CaseAction.RESUBMIT: LogAction.SUBMIT,
}


@dataclass
class CaseApplication:
    """A customer's request to open a case."""

    case_type: CaseType
    reason: RefundReason
    order_number: str
    order_product_id: Optional[str] = None
    refund_amount_cents: Optional[int] = None
    reference_number: Optional[str] = None
    user_id: Optional[str] = None
    applicant_name: Optional[str] = None
    applicant_phone: Optional[str] = None
    description: Optional[str] = None
    proof_images: list[str] = field(default_factory=list)
    exchange_address: Optional[dict[str, Any]] = None
    product_snapshot: Optional[ProductSnapshot] = None


@dataclass
class CaseAmendment:
    """Field edits submitted together with a resubmission. None leaves a field as is."""

    reason: Optional[RefundReason] = None
    description: Optional[str] = None
    proof_images: Optional[list[str]] = None
    refund_amount_cents: Optional[int] = None


class AftersalesService:
    """Entry point for every user, operator and system mutation of a case."""

    def __init__(
        self,
        db: Database,
        config: Config | None = None,
        *,
        dispatcher: EventDispatcher | None = None,
        snapshot_provider: SnapshotProvider | None = None,
        user_directory: UserDirectory | None = None,
        validator: Validator | None = None,
    ) -> None:
        self.db = db
        self.config = config or Config()
        self.timeout_policy = TimeoutPolicy(self.config.timeouts)
        self.workflow = CaseWorkflow(self.timeout_policy, self.config.modifications.max_modifications)
        self.auto_approval = AutoApprovalRule(self.config.auto_approval)
        self.dispatcher = dispatcher or EventDispatcher()
        self.snapshot_provider = snapshot_provider
        self.user_directory = user_directory
        self.validator = validator or CaseValidator()

    # ------------------------------------------------------------------
    # Unit plumbing
    # ------------------------------------------------------------------

    async def run_unit(
        self,
        unit: Callable[[], Awaitable[tuple[T, list[DomainEvent]]]],
        label: str,
    ) -> T:
        """Run unit, retrying transient failures, then publish its events."""
        attempt = 1
        while True:
            try:
                value, events = await unit()
            except TransientPersistenceError as e:
                if attempt >= constants.UNIT_MAX_ATTEMPTS:
                    logger.error(f"{label} failed after {attempt} attempts: {e}")
                    raise
                wait_seconds = constants.UNIT_RETRY_BASE_DELAY_SECONDS * 2 ** (attempt - 1)
                logger.warning(f"{label} hit a transient failure ({e}); retrying in {wait_seconds}s")
                await asyncio.sleep(wait_seconds)
                attempt += 1
                continue
            await self.dispatcher.publish(events)
            return value

    async def load_case(self, case_id: int) -> CaseRecord:
        case = await self.db.get_case(case_id)
        if case is None:
            raise CaseNotFound(case_id)
        return case

    async def log(
        self,
        case: CaseRecord,
        action: LogAction,
        actor: Actor,
        *,
        previous_state: CaseState | None = None,
        next_state: CaseState | None = None,
        content: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> int:
        audit_logger.info(
            f"case={case.reference_number} action={action.value} "
            f"actor={actor.type.value}:{actor.id or '-'} "
            f"state={previous_state.value if previous_state else '-'}->{next_state.value if next_state else '-'}"
        )
        return await self.db.append_audit_log(
            AuditLogEntry(
                case_id=case.id,
                action=action,
                actor_type=actor.type,
                actor_id=actor.id,
                previous_state=previous_state,
                next_state=next_state,
                content=content,
                context=context or {},
            )
        )

    async def transition(
        self,
        case: CaseRecord,
        action: CaseAction,
        actor: Actor,
        *,
        log_action: LogAction | None = None,
        content: str | None = None,
        context: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> tuple[TransitionResult, list[DomainEvent]]:
        """Apply a gate action inside an open unit: satellites, case row, audit entry."""
        now = now or utcnow()
        result = self.workflow.apply(case, action, now)
        await self._sync_satellites(case, result, now)
        await self.db.update_case(case)
        await self.log(
            case,
            log_action or LOG_ACTION_FOR[result.action],
            actor,
            previous_state=result.previous_state,
            next_state=result.next_state,
            content=content,
            context=context,
        )
        logger.info(
            f"Case {case.reference_number}: {result.action.value} "
            f"{result.previous_state.value} -> {result.next_state.value} by {actor.type.value}"
        )
        return result, transition_events(case, result, context)

    async def _sync_satellites(self, case: CaseRecord, result: TransitionResult, now: datetime) -> None:
        """Open, advance or close satellite records that follow the case state."""
        if result.next_state == CaseState.PENDING_RETURN:
            if case.case_type == CaseType.RETURN_REFUND:
                shipment = await self.db.get_return_shipment(case.id)
                if shipment is None:
                    await self.db.save_return_shipment(ReturnShipment(case_id=case.id, case_type=case.case_type))
                elif shipment.status == ReturnStatus.REJECTED:
                    shipment.reopen()
                    await self.db.save_return_shipment(shipment)
            elif case.case_type == CaseType.EXCHANGE:
                exchange = await self.db.get_exchange_shipment(case.id)
                if exchange is None:
                    await self.db.save_exchange_shipment(
                        ExchangeShipment(
                            case_id=case.id,
                            case_type=case.case_type,
                            shipping_address=case.exchange_address,
                        )
                    )
                elif exchange.status == ExchangeStatus.REJECTED:
                    exchange.reopen()
                    exchange.shipping_address = case.exchange_address
                    await self.db.save_exchange_shipment(exchange)

        if result.next_state == CaseState.PENDING_REFUND:
            execution = await self.db.get_refund_execution(case.id)
            if execution is None:
                await self.db.save_refund_execution(
                    RefundExecution(
                        case_id=case.id,
                        case_type=case.case_type,
                        amount_cents=case.total_refund_cents,
                        max_retries=self.config.refunds.max_retries,
                    )
                )

        if result.action in (CaseAction.CONFIRM_RECEIVE, CaseAction.REJECT_RECEIVE):
            passed = result.action == CaseAction.CONFIRM_RECEIVE
            if case.case_type == CaseType.RETURN_REFUND:
                shipment = await self.db.get_return_shipment(case.id)
                if shipment is not None and shipment.status in (ReturnStatus.SHIPPED, ReturnStatus.IN_TRANSIT):
                    shipment.mark_received(now)
                    shipment.mark_inspected(passed, case.reject_reason, now)
                    await self.db.save_return_shipment(shipment)
            elif case.case_type == CaseType.EXCHANGE:
                exchange = await self.db.get_exchange_shipment(case.id)
                if exchange is not None and exchange.status == ExchangeStatus.RETURN_SHIPPED:
                    if passed:
                        exchange.mark_return_received(now)
                    else:
                        exchange.mark_rejected(case.reject_reason)
                    await self.db.save_exchange_shipment(exchange)

        if result.next_state == CaseState.CANCELLED:
            execution = await self.db.get_refund_execution(case.id)
            if execution is not None and execution.status in (RefundStatus.PENDING, RefundStatus.FAILED):
                execution.mark_cancelled()
                await self.db.save_refund_execution(execution)
            shipment = await self.db.get_return_shipment(case.id)
            if shipment is not None and shipment.status == ReturnStatus.PENDING:
                shipment.status = ReturnStatus.CANCELLED
                await self.db.save_return_shipment(shipment)
            exchange = await self.db.get_exchange_shipment(case.id)
            if exchange is not None and exchange.status == ExchangeStatus.PENDING:
                exchange.status = ExchangeStatus.CANCELLED
                await self.db.save_exchange_shipment(exchange)

    async def _auto_approve(self, case: CaseRecord, now: datetime) -> list[DomainEvent]:
        decision = self.auto_approval.evaluate(case)
        if not decision.approve:
            return []
        _, events = await self.transition(
            case,
            CaseAction.APPROVE,
            Actor.system("auto_approval"),
            log_action=LogAction.AUTO_APPROVE,
            content=decision.reason,
            now=now,
        )
        return events

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_case(self, case_id: int) -> CaseRecord:
        return await self.load_case(case_id)

    async def get_case_by_reference(self, reference_number: str) -> Optional[CaseRecord]:
        return await self.db.find_case_by_reference(reference_number)

    async def list_cases(self, **filters: Any) -> list[CaseRecord]:
        return await self.db.list_cases(**filters)

    async def audit_trail(self, case_id: int) -> list[AuditLogEntry]:
        return await self.db.list_audit_logs(case_id)

    async def allowed_actions(self, case_id: int) -> set[CaseAction]:
        return self.workflow.allowed_actions(await self.load_case(case_id))

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    async def apply_case(self, application: CaseApplication, actor: Actor) -> CaseRecord:
        """Open a case, capture the product snapshot, and run the auto-approval rule."""
        snapshot = application.product_snapshot
        if snapshot is None and self.snapshot_provider is not None and application.order_product_id:
            snapshot = await self.snapshot_provider.get_snapshot(
                application.order_number, application.order_product_id
            )

        refund_cents = application.refund_amount_cents
        if refund_cents is None:
            if snapshot is None:
                raise ValidationError([Violation("refund_amount_cents", "is required without a product snapshot")])
            refund_cents = snapshot.refund_amount_cents

        now = utcnow()
        case = CaseRecord(
            reference_number=application.reference_number
            or generate_business_number(constants.CASE_NUMBER_PREFIX, now),
            case_type=CaseType(application.case_type),
            reason=RefundReason(application.reason),
            order_number=application.order_number,
            order_product_id=application.order_product_id,
            user_id=application.user_id or (actor.id if actor.type == ActorType.USER else None),
            applicant_name=application.applicant_name,
            applicant_phone=application.applicant_phone,
            description=application.description,
            proof_images=list(application.proof_images),
            original_refund_cents=refund_cents,
            exchange_address=application.exchange_address,
            product_snapshot=snapshot,
            created_at=now,
        )
        case.deadline_at = self.timeout_policy.deadline_for(case.case_type, case.state, now)
        if snapshot is not None and refund_cents > snapshot.refund_amount_cents > 0:
            raise AmountCapExceeded(refund_cents, snapshot.refund_amount_cents)

        violations = self.validator.validate(case)
        if violations:
            raise ValidationError(violations)

        async def unit() -> tuple[CaseRecord, list[DomainEvent]]:
            record = case.copy()
            async with self.db.atomic():
                if await self.db.find_case_by_reference(record.reference_number) is not None:
                    raise ValidationError([Violation("reference_number", "already exists")])
                try:
                    await self.db.insert_case(record)
                except sqlite3.IntegrityError as e:
                    if "reference_number" not in str(e):
                        raise
                    raise ValidationError([Violation("reference_number", "already exists")]) from e
                await self.log(
                    record,
                    LogAction.CREATE,
                    actor,
                    next_state=record.state,
                    content=f"{record.case_type.value} requested for {format_amount(record.original_refund_cents)}",
                    context={"reason": record.reason.value, "order_number": record.order_number},
                )
                events: list[DomainEvent] = [
                    CaseCreated(
                        case_id=record.id,
                        reference_number=record.reference_number,
                        next_state=CaseState.PENDING_APPROVAL,
                        action="create",
                    )
                ]
                events.extend(await self._auto_approve(record, now))
            return record, events

        return await self.run_unit(unit, f"apply case {case.reference_number}")

    # ------------------------------------------------------------------
    # Gate actions
    # ------------------------------------------------------------------

    async def perform_action(
        self,
        case_id: int,
        action: CaseAction,
        actor: Actor,
        *,
        reason: str | None = None,
    ) -> CaseRecord:
        """Apply a single gate action on behalf of actor."""
        action = CaseAction(action)

        async def unit() -> tuple[CaseRecord, list[DomainEvent]]:
            async with self.db.atomic():
                case = await self.load_case(case_id)
                self.workflow.next_state(case, action)
                if action in (CaseAction.REJECT, CaseAction.REJECT_RECEIVE):
                    case.reject_reason = reason
                if action == CaseAction.APPROVE and actor.type == ActorType.OPERATOR:
                    case.processor = actor.id
                _, events = await self.transition(case, action, actor, content=reason)
            return case, events

        return await self.run_unit(unit, f"{action.value} case {case_id}")

    async def approve(self, case_id: int, actor: Actor, note: str | None = None) -> CaseRecord:
        return await self.perform_action(case_id, CaseAction.APPROVE, actor, reason=note)

    async def reject(self, case_id: int, actor: Actor, reason: str) -> CaseRecord:
        return await self.perform_action(case_id, CaseAction.REJECT, actor, reason=reason)

    async def cancel(self, case_id: int, actor: Actor, reason: str | None = None) -> CaseRecord:
        return await self.perform_action(case_id, CaseAction.CANCEL, actor, reason=reason)

    async def start_processing(self, case_id: int, actor: Actor) -> CaseRecord:
        return await self.perform_action(case_id, CaseAction.START_PROCESSING, actor)

    async def modify_refund_amount(
        self, case_id: int, amount_cents: int, actor: Actor, reason: str | None = None
    ) -> CaseRecord:
        """Set the actual refund amount while the case awaits approval."""

        async def unit() -> tuple[CaseRecord, list[DomainEvent]]:
            async with self.db.atomic():
                case = await self.load_case(case_id)
                if not case.can_modify_amount:
                    raise IllegalTransition(case.state, "modify_refund_amount")
                if amount_cents < 0:
                    raise ValidationError([Violation("actual_refund_cents", "must not be negative")])
                if amount_cents > case.original_refund_cents:
                    raise AmountCapExceeded(amount_cents, case.original_refund_cents)

                old_cents = case.total_refund_cents
                case.actual_refund_cents = amount_cents
                case.refund_amount_modified = True
                case.refund_amount_modify_reason = reason
                await self.db.update_case(case)
                await self.log(
                    case,
                    LogAction.MODIFY_REFUND_AMOUNT,
                    actor,
                    content=f"Refund amount {format_amount(old_cents)} -> {format_amount(amount_cents)}",
                    context={"old_cents": old_cents, "new_cents": amount_cents, "reason": reason},
                )
            return case, []

        return await self.run_unit(unit, f"modify refund amount of case {case_id}")

    async def resubmit(self, case_id: int, amendment: CaseAmendment, actor: Actor) -> CaseRecord:
        """Edit a rejected case and send it back for approval."""

        async def unit() -> tuple[CaseRecord, list[DomainEvent]]:
            now = utcnow()
            async with self.db.atomic():
                case = await self.load_case(case_id)
                self.workflow.next_state(case, CaseAction.RESUBMIT)

                changed: list[str] = []
                if amendment.reason is not None and amendment.reason != case.reason:
                    case.reason = RefundReason(amendment.reason)
                    changed.append("reason")
                if amendment.description is not None and amendment.description != case.description:
                    case.description = amendment.description
                    changed.append("description")
                if amendment.proof_images is not None and amendment.proof_images != case.proof_images:
                    case.proof_images = list(amendment.proof_images)
                    changed.append("proof_images")
                if amendment.refund_amount_cents is not None:
                    if amendment.refund_amount_cents > case.original_refund_cents:
                        raise AmountCapExceeded(amendment.refund_amount_cents, case.original_refund_cents)
                    if amendment.refund_amount_cents != case.total_refund_cents:
                        case.actual_refund_cents = amendment.refund_amount_cents
                        case.refund_amount_modified = True
                        changed.append("refund_amount")

                violations = self.validator.validate(case)
                if violations:
                    raise ValidationError(violations)

                _, events = await self.transition(
                    case,
                    CaseAction.RESUBMIT,
                    actor,
                    content=f"Resubmitted ({', '.join(changed) or 'no field changes'})",
                    context={"modified_fields": changed, "modification_count": case.modification_count + 1},
                    now=now,
                )
                events.extend(await self._auto_approve(case, now))
            return case, events

        return await self.run_unit(unit, f"resubmit case {case_id}")

    async def annotate(self, case_id: int, note: str, actor: Actor) -> CaseRecord:
        """Append a service note. Allowed in every state, terminal ones included."""
        if not note or not note.strip():
            raise ValidationError([Violation("note", "must not be empty")])

        async def unit() -> tuple[CaseRecord, list[DomainEvent]]:
            async with self.db.atomic():
                case = await self.load_case(case_id)
                case.service_note = f"{case.service_note}\n{note}" if case.service_note else note
                await self.db.update_case(case)
                await self.log(case, LogAction.ADD_REMARK, actor, content=note)
            return case, []

        return await self.run_unit(unit, f"annotate case {case_id}")

    # ------------------------------------------------------------------
    # Parcels
    # ------------------------------------------------------------------

    async def submit_return_shipment(
        self,
        case_id: int,
        carrier: str,
        tracking_no: str,
        actor: Actor,
        remark: str | None = None,
    ) -> CaseRecord:
        """Record the customer's return parcel and move the case to pending_receive."""
        violations = validate_shipment(carrier, tracking_no)
        if violations:
            raise ValidationError(violations)
        carrier = carrier.strip()
        tracking_no = tracking_no.strip()

        async def unit() -> tuple[CaseRecord, list[DomainEvent]]:
            now = utcnow()
            async with self.db.atomic():
                case = await self.load_case(case_id)
                if not case.case_type.requires_shipment:
                    raise IllegalTransition(case.state, CaseAction.SHIP_RETURN)
                self.workflow.next_state(case, CaseAction.SHIP_RETURN)
                registered = await self._require_carrier(carrier)

                if case.case_type == CaseType.RETURN_REFUND:
                    shipment = await self.db.get_return_shipment(case.id)
                    if shipment is None:
                        shipment = ReturnShipment(case_id=case.id, case_type=case.case_type)
                    shipment.mark_shipped(carrier, tracking_no, remark, now)
                    await self.db.save_return_shipment(shipment)
                else:
                    exchange = await self.db.get_exchange_shipment(case.id)
                    if exchange is None:
                        exchange = ExchangeShipment(
                            case_id=case.id, case_type=case.case_type, shipping_address=case.exchange_address
                        )
                    exchange.mark_return_shipped(carrier, tracking_no, now)
                    await self.db.save_exchange_shipment(exchange)

                _, events = await self.transition(
                    case,
                    CaseAction.SHIP_RETURN,
                    actor,
                    content=f"Return shipped via {carrier} ({tracking_no})",
                    context={
                        "carrier": carrier,
                        "carrier_code": registered.code,
                        "tracking_no": tracking_no,
                        "tracking_url": registered.tracking_url(tracking_no),
                        "remark": remark,
                    },
                    now=now,
                )
            return case, events

        return await self.run_unit(unit, f"submit return shipment for case {case_id}")

    async def confirm_receipt(
        self, case_id: int, actor: Actor, *, passed: bool = True, note: str | None = None
    ) -> CaseRecord:
        """Merchant confirms the returned parcel arrived and passed (or failed) inspection."""
        action = CaseAction.CONFIRM_RECEIVE if passed else CaseAction.REJECT_RECEIVE
        return await self.perform_action(case_id, action, actor, reason=note)

    async def ship_exchange_replacement(
        self, case_id: int, carrier: str, tracking_no: str, actor: Actor
    ) -> ExchangeShipment:
        """Record the replacement parcel. Only the exchange record changes."""
        violations = validate_shipment(carrier, tracking_no)
        if violations:
            raise ValidationError(violations)

        async def unit() -> tuple[ExchangeShipment, list[DomainEvent]]:
            async with self.db.atomic():
                case = await self.load_case(case_id)
                exchange = await self.db.get_exchange_shipment(case.id)
                if case.case_type != CaseType.EXCHANGE or exchange is None:
                    raise IllegalTransition(case.state, "ship_exchange")
                registered = await self._require_carrier(carrier)
                exchange.mark_exchange_shipped(carrier.strip(), tracking_no.strip())
                await self.db.save_exchange_shipment(exchange)
                await self.log(
                    case,
                    LogAction.SHIP_EXCHANGE,
                    actor,
                    content=f"Replacement shipped via {exchange.exchange_carrier} ({exchange.exchange_tracking_no})",
                    context={
                        "exchange_no": exchange.exchange_no,
                        "carrier_code": registered.code,
                        "tracking_url": registered.tracking_url(exchange.exchange_tracking_no),
                    },
                )
            return exchange, []

        return await self.run_unit(unit, f"ship exchange replacement for case {case_id}")

    async def confirm_exchange_delivered(self, case_id: int, actor: Actor) -> ExchangeShipment:
        async def unit() -> tuple[ExchangeShipment, list[DomainEvent]]:
            async with self.db.atomic():
                case = await self.load_case(case_id)
                exchange = await self.db.get_exchange_shipment(case.id)
                if exchange is None:
                    raise IllegalTransition(case.state, "receive_exchange")
                exchange.mark_completed()
                await self.db.save_exchange_shipment(exchange)
                await self.log(
                    case,
                    LogAction.RECEIVE_EXCHANGE,
                    actor,
                    content="Replacement delivered",
                    context={"exchange_no": exchange.exchange_no},
                )
            return exchange, []

        return await self.run_unit(unit, f"confirm exchange delivery for case {case_id}")

    # ------------------------------------------------------------------
    # Carriers and return addresses
    # ------------------------------------------------------------------

    async def _require_carrier(self, carrier: str) -> Carrier:
        registered = await self.db.find_carrier(carrier)
        if registered is None or not registered.is_active:
            raise ValidationError([Violation("carrier", "is not a supported carrier")])
        return registered

    async def list_carriers(self) -> list[Carrier]:
        """Active carriers in display order."""
        return await self.db.list_carriers()

    async def save_carrier(self, carrier: Carrier) -> Carrier:
        violations = validate_carrier(carrier)
        if violations:
            raise ValidationError(violations)
        async with self.db.atomic():
            await self.db.save_carrier(carrier)
        logger.info(f"Saved carrier {carrier.code} (active={carrier.is_active})")
        return carrier

    async def tracking_url(self, carrier: str, tracking_no: str) -> Optional[str]:
        registered = await self.db.find_carrier(carrier)
        if registered is None:
            return None
        return registered.tracking_url(tracking_no)

    async def return_tracking_url(self, case_id: int) -> Optional[str]:
        """Tracking page of the customer's return parcel, once it has shipped."""
        case = await self.load_case(case_id)
        carrier = tracking_no = None
        if case.case_type == CaseType.RETURN_REFUND:
            shipment = await self.db.get_return_shipment(case.id)
            if shipment is not None:
                carrier, tracking_no = shipment.carrier, shipment.tracking_no
        elif case.case_type == CaseType.EXCHANGE:
            exchange = await self.db.get_exchange_shipment(case.id)
            if exchange is not None:
                carrier, tracking_no = exchange.return_carrier, exchange.return_tracking_no
        if not carrier or not tracking_no:
            return None
        return await self.tracking_url(carrier, tracking_no)

    async def replacement_tracking_url(self, case_id: int) -> Optional[str]:
        exchange = await self.db.get_exchange_shipment(case_id)
        if exchange is None or not exchange.exchange_carrier or not exchange.exchange_tracking_no:
            return None
        return await self.tracking_url(exchange.exchange_carrier, exchange.exchange_tracking_no)

    async def get_return_address(self) -> Optional[ReturnAddress]:
        """Where customers should send return parcels."""
        return await self.db.get_default_return_address()

    async def list_return_addresses(self) -> list[ReturnAddress]:
        return await self.db.list_return_addresses()

    async def save_return_address(self, address: ReturnAddress) -> ReturnAddress:
        violations = validate_return_address(address)
        if violations:
            raise ValidationError(violations)
        async with self.db.atomic():
            await self.db.save_return_address(address)
        logger.info(f"Saved return address {address.name} (default={address.is_default})")
        return address

    # ------------------------------------------------------------------
    # Refund execution
    # ------------------------------------------------------------------

    async def execute_refund(
        self,
        case_id: int,
        gateway: RefundGateway,
        actor: Actor,
        payment_method: PaymentMethod | None = None,
    ) -> RefundExecution:
        """Claim the refund, call the gateway outside any unit, then record the outcome."""

        async def claim() -> tuple[tuple[CaseRecord, RefundExecution], list[DomainEvent]]:
            async with self.db.atomic():
                case = await self.load_case(case_id)
                if case.state != CaseState.PENDING_REFUND:
                    raise IllegalTransition(case.state, "execute_refund")
                execution = await self.db.get_refund_execution(case.id)
                if execution is None:
                    execution = RefundExecution(
                        case_id=case.id, case_type=case.case_type, amount_cents=case.total_refund_cents
                    )
                execution.max_retries = self.config.refunds.max_retries
                if payment_method is not None:
                    execution.payment_method = PaymentMethod(payment_method)
                execution.mark_processing()
                await self.db.save_refund_execution(execution)
                await self.log(
                    case,
                    LogAction.PROCESS_REFUND,
                    actor,
                    content=f"Refund {execution.refund_no} of {format_amount(execution.amount_cents)} started",
                    context={"refund_no": execution.refund_no, "attempt": execution.retry_count + 1},
                )
            return (case, execution), []

        case, execution = await self.run_unit(claim, f"claim refund for case {case_id}")

        try:
            outcome = await gateway.refund(execution, case)
        except Exception as e:
            logger.error(f"Refund gateway raised for case {case.reference_number}: {e}", exc_info=True)
            outcome = RefundResult(success=False, failure_reason=str(e) or type(e).__name__)

        async def record() -> tuple[RefundExecution, list[DomainEvent]]:
            events: list[DomainEvent] = []
            async with self.db.atomic():
                current_case = await self.load_case(case_id)
                current = await self.db.get_refund_execution(case_id)
                if current is None or current.status != RefundStatus.PROCESSING:
                    raise IllegalTransition(current.status if current else None, "record_refund")
                current.max_retries = self.config.refunds.max_retries
                if outcome.success:
                    current.mark_success(outcome.transaction_no, outcome.response)
                    await self.db.save_refund_execution(current)
                    current_case.actual_refund_cents = current.amount_cents
                    _, events = await self.transition(
                        current_case,
                        CaseAction.COMPLETE_REFUND,
                        actor,
                        content=f"Refund {current.refund_no} succeeded",
                        context={"refund_no": current.refund_no, "transaction_no": outcome.transaction_no},
                    )
                else:
                    current.mark_failed(outcome.failure_reason or "refund failed", outcome.response)
                    await self.db.save_refund_execution(current)
                    await self.log(
                        current_case,
                        LogAction.FAIL_REFUND,
                        actor,
                        content=f"Refund {current.refund_no} failed: {current.failure_reason}",
                        context={
                            "refund_no": current.refund_no,
                            "retry_count": current.retry_count,
                            "can_retry": current.can_retry,
                        },
                    )
            return current, events

        result = await self.run_unit(record, f"record refund outcome for case {case_id}")
        if not result.can_retry and result.status == RefundStatus.FAILED:
            logger.warning(
                f"Refund {result.refund_no} for case {case.reference_number} failed "
                f"{result.retry_count} times; manual handling required"
            )
        return result

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    async def process_timeout(self, case_id: int, now: datetime | None = None) -> bool:
        """Handle one expired case. Returns False when it no longer qualifies."""
        now = now or utcnow()

        async def unit() -> tuple[bool, list[DomainEvent]]:
            async with self.db.atomic():
                case = await self.db.get_case(case_id)
                if case is None or case.state not in SWEEPABLE_STATES or not case.is_timed_out(now):
                    return False, []

                actor = Actor.system("timeout_sweep")
                context = {
                    "deadline_at": case.deadline_at.isoformat() if case.deadline_at else None,
                    "timed_out_state": case.state.value,
                }
                action = self.timeout_policy.action_for(case.state)
                if action is None:
                    note = "Approval window elapsed; flagged for manual review"
                    case.deadline_at = None
                    case.service_note = f"{case.service_note}\n{note}" if case.service_note else note
                    await self.db.update_case(case)
                    await self.log(case, LogAction.TIMEOUT_PROCESS, actor, content=note, context=context)
                    return True, []

                _, events = await self.transition(
                    case,
                    action,
                    actor,
                    log_action=LogAction.TIMEOUT_PROCESS,
                    content=f"Timed out in {context['timed_out_state']}; {action.value}",
                    context=dict(context, action=action.value),
                    now=now,
                )
            return True, events

        return await self.run_unit(unit, f"timeout case {case_id}")
