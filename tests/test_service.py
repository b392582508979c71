import asyncio

import pytest

import aftersales_core.constants as constants
from aftersales_core.enums import ActorType, CaseAction, CaseStage, CaseState, CaseType, LogAction, RefundReason
from aftersales_core.errors import (
    AmountCapExceeded,
    CaseNotFound,
    IllegalTransition,
    ModificationCapExceeded,
    StaleCaseError,
    TransientPersistenceError,
    ValidationError,
)
from aftersales_core.models import Actor
from aftersales_core.service import CaseAmendment


async def _actions(service, case_id: int) -> list[LogAction]:
    return [entry.action for entry in await service.audit_trail(case_id)]


@pytest.mark.asyncio
async def test_apply_case_opens_pending_case(service, case_factory, event_sink):
    case = await case_factory(description="Handle cracked on arrival", applicant_phone="13800138000")

    assert case.id is not None
    assert case.reference_number.startswith("AS")
    assert case.state == CaseState.PENDING_APPROVAL
    assert case.stage == CaseStage.APPLY
    assert case.user_id == "user-42"
    assert case.deadline_at is not None

    trail = await service.audit_trail(case.id)
    assert [entry.action for entry in trail] == [LogAction.CREATE]
    assert trail[0].actor_type == ActorType.USER
    assert trail[0].next_state == CaseState.PENDING_APPROVAL
    assert event_sink.names() == ["case_created"]


@pytest.mark.asyncio
async def test_apply_case_takes_amount_from_snapshot(service, case_factory, snapshot_provider):
    snapshot = snapshot_provider.add("ORD-2002", "LINE-1", paid_price_cents=4_950, refund_quantity=2)

    case = await case_factory(order_number="ORD-2002", order_product_id="LINE-1", refund_amount_cents=None)

    assert case.original_refund_cents == 9_900
    stored = await service.get_case(case.id)
    assert stored.product_snapshot == snapshot


@pytest.mark.asyncio
async def test_apply_case_amount_above_snapshot_is_rejected(service, case_factory, snapshot_provider):
    snapshot_provider.add("ORD-2002", "LINE-1", paid_price_cents=4_950)

    with pytest.raises(AmountCapExceeded):
        await case_factory(order_number="ORD-2002", order_product_id="LINE-1", refund_amount_cents=5_000)

    assert await service.list_cases() == []


@pytest.mark.asyncio
async def test_apply_case_without_amount_or_snapshot_is_rejected(case_factory):
    with pytest.raises(ValidationError) as excinfo:
        await case_factory(refund_amount_cents=None)

    assert excinfo.value.fields == ["refund_amount_cents"]


@pytest.mark.asyncio
async def test_apply_case_reports_every_violation(service, case_factory):
    with pytest.raises(ValidationError) as excinfo:
        await case_factory(
            proof_images=[f"https://cdn.example/{i}.png" for i in range(10)],
            applicant_phone="call me",
            description="x" * 501,
        )

    assert set(excinfo.value.fields) == {"proof_images", "applicant_phone", "description"}
    assert await service.list_cases() == []


@pytest.mark.asyncio
async def test_duplicate_reference_is_rejected(service, case_factory):
    await case_factory(reference_number="AS-DUP-1")

    with pytest.raises(ValidationError) as excinfo:
        await case_factory(reference_number="AS-DUP-1")

    assert excinfo.value.fields == ["reference_number"]
    assert len(await service.list_cases()) == 1


@pytest.mark.asyncio
async def test_reference_taken_between_check_and_insert_is_a_validation_error(service, case_factory, monkeypatch):
    await case_factory(reference_number="AS-DUP-2")

    async def not_found(reference_number):
        return None

    monkeypatch.setattr(service.db, "find_case_by_reference", not_found)

    with pytest.raises(ValidationError) as excinfo:
        await case_factory(reference_number="AS-DUP-2")

    assert excinfo.value.fields == ["reference_number"]
    monkeypatch.undo()
    assert len(await service.list_cases()) == 1


@pytest.mark.asyncio
async def test_low_risk_case_is_auto_approved(service, case_factory, event_sink):
    case = await case_factory(reason=RefundReason.DONT_WANT, refund_amount_cents=15_000)

    assert case.state == CaseState.APPROVED
    assert case.approved_refund_cents == 15_000
    trail = await service.audit_trail(case.id)
    assert [entry.action for entry in trail] == [LogAction.CREATE, LogAction.AUTO_APPROVE]
    assert trail[1].actor_type == ActorType.SYSTEM
    assert trail[1].actor_id == "auto_approval"
    assert event_sink.names() == ["case_created", "status_changed"]


@pytest.mark.asyncio
async def test_operator_approval_records_processor(service, case_factory, operator):
    case = await case_factory()

    approved = await service.approve(case.id, operator)

    assert approved.state == CaseState.APPROVED
    assert approved.processor == "op-7"
    assert approved.audit_at is not None


@pytest.mark.asyncio
async def test_reject_records_reason(service, case_factory, operator):
    case = await case_factory()

    rejected = await service.reject(case.id, operator, "Photos do not show the defect")

    assert rejected.state == CaseState.REJECTED
    assert rejected.reject_reason == "Photos do not show the defect"
    trail = await service.audit_trail(case.id)
    assert trail[-1].action == LogAction.REJECT
    assert trail[-1].content == "Photos do not show the defect"


@pytest.mark.asyncio
async def test_illegal_transition_leaves_case_unchanged(service, case_factory, operator):
    case = await case_factory()
    await service.approve(case.id, operator)
    before = await service.get_case(case.id)

    with pytest.raises(IllegalTransition):
        await service.approve(case.id, operator)
    with pytest.raises(IllegalTransition):
        await service.perform_action(case.id, CaseAction.CONFIRM_RECEIVE, operator)

    after = await service.get_case(case.id)
    assert after == before
    assert await _actions(service, case.id) == [LogAction.CREATE, LogAction.APPROVE]


@pytest.mark.asyncio
async def test_unknown_case_raises_not_found(service, operator):
    with pytest.raises(CaseNotFound):
        await service.approve(999, operator)


@pytest.mark.asyncio
async def test_allowed_actions_for_pending_case(service, case_factory):
    case = await case_factory()

    assert await service.allowed_actions(case.id) == {CaseAction.APPROVE, CaseAction.REJECT, CaseAction.CANCEL}


@pytest.mark.asyncio
async def test_modify_refund_amount_within_cap(service, case_factory, operator):
    case = await case_factory(refund_amount_cents=30_000)

    updated = await service.modify_refund_amount(case.id, 25_000, operator, "partial refund agreed")

    assert updated.actual_refund_cents == 25_000
    assert updated.refund_amount_modified is True
    trail = await service.audit_trail(case.id)
    assert trail[-1].action == LogAction.MODIFY_REFUND_AMOUNT
    assert trail[-1].context["old_cents"] == 30_000
    assert trail[-1].context["new_cents"] == 25_000


@pytest.mark.asyncio
async def test_modify_refund_amount_above_original_is_rejected(service, case_factory, operator):
    case = await case_factory(refund_amount_cents=30_000)
    before = await service.get_case(case.id)

    with pytest.raises(AmountCapExceeded) as excinfo:
        await service.modify_refund_amount(case.id, 50_000, operator)

    assert excinfo.value.requested_cents == 50_000
    assert excinfo.value.original_cents == 30_000
    assert await service.get_case(case.id) == before


@pytest.mark.asyncio
async def test_modify_refund_amount_rejects_negative(service, case_factory, operator):
    case = await case_factory()

    with pytest.raises(ValidationError):
        await service.modify_refund_amount(case.id, -1, operator)


@pytest.mark.asyncio
async def test_modify_refund_amount_only_while_pending_approval(service, case_factory, operator):
    case = await case_factory()
    await service.approve(case.id, operator)

    with pytest.raises(IllegalTransition):
        await service.modify_refund_amount(case.id, 100, operator)


@pytest.mark.asyncio
async def test_concurrent_amount_changes_never_exceed_original(service, case_factory, operator):
    case = await case_factory(refund_amount_cents=10_000)

    results = await asyncio.gather(
        service.modify_refund_amount(case.id, 9_000, operator),
        service.modify_refund_amount(case.id, 12_000, operator),
        service.modify_refund_amount(case.id, 8_000, operator),
        return_exceptions=True,
    )

    assert sum(isinstance(r, AmountCapExceeded) for r in results) == 1
    stored = await service.get_case(case.id)
    assert stored.actual_refund_cents in (9_000, 8_000)
    assert stored.actual_refund_cents <= stored.original_refund_cents


@pytest.mark.asyncio
async def test_concurrent_gate_actions_apply_once(service, case_factory, operator, customer):
    case = await case_factory()

    results = await asyncio.gather(
        service.approve(case.id, operator),
        service.cancel(case.id, customer),
        return_exceptions=True,
    )

    assert sum(isinstance(r, IllegalTransition) for r in results) == 1
    actions = await _actions(service, case.id)
    assert len(actions) == 2
    assert actions[1] in (LogAction.APPROVE, LogAction.CANCEL)


@pytest.mark.asyncio
async def test_resubmit_applies_amendment(service, case_factory, operator, customer):
    case = await case_factory(refund_amount_cents=10_000)
    await service.reject(case.id, operator, "missing photos")

    resubmitted = await service.resubmit(
        case.id,
        CaseAmendment(description="Added photos", proof_images=["https://cdn.example/1.png"],
                      refund_amount_cents=8_000),
        customer,
    )

    assert resubmitted.state == CaseState.PENDING_APPROVAL
    assert resubmitted.modification_count == 1
    assert resubmitted.reject_reason is None
    assert resubmitted.actual_refund_cents == 8_000
    trail = await service.audit_trail(case.id)
    assert trail[-1].action == LogAction.SUBMIT
    assert trail[-1].context["modified_fields"] == ["description", "proof_images", "refund_amount"]


@pytest.mark.asyncio
async def test_resubmit_amount_above_original_is_rejected(service, case_factory, operator, customer):
    case = await case_factory(refund_amount_cents=10_000)
    await service.reject(case.id, operator, "wrong amount")

    with pytest.raises(AmountCapExceeded):
        await service.resubmit(case.id, CaseAmendment(refund_amount_cents=10_001), customer)

    stored = await service.get_case(case.id)
    assert stored.state == CaseState.REJECTED
    assert stored.modification_count == 0


@pytest.mark.asyncio
async def test_fourth_modification_needs_intervention(service, case_factory, operator, customer):
    case = await case_factory()

    for attempt in range(3):
        await service.reject(case.id, operator, f"rejection {attempt + 1}")
        await service.resubmit(case.id, CaseAmendment(description=f"try {attempt + 2}"), customer)

    await service.reject(case.id, operator, "rejection 4")
    with pytest.raises(ModificationCapExceeded):
        await service.resubmit(case.id, CaseAmendment(description="try 5"), customer)

    stored = await service.get_case(case.id)
    assert stored.modification_count == 3
    assert stored.needs_intervention is True
    assert stored.state == CaseState.REJECTED
    assert CaseAction.RESUBMIT not in await service.allowed_actions(case.id)


@pytest.mark.asyncio
async def test_resubmitted_merchant_fault_case_is_auto_approved(service, case_factory, operator, customer):
    case = await case_factory()
    await service.reject(case.id, operator, "pick the right reason")

    resubmitted = await service.resubmit(case.id, CaseAmendment(reason=RefundReason.QUALITY_ISSUE), customer)

    assert resubmitted.state == CaseState.APPROVED
    assert (await _actions(service, case.id))[-2:] == [LogAction.SUBMIT, LogAction.AUTO_APPROVE]


@pytest.mark.asyncio
async def test_annotate_works_on_terminal_case(service, case_factory, customer, operator):
    case = await case_factory()
    await service.cancel(case.id, customer, "changed my mind")

    await service.annotate(case.id, "Customer confirmed by phone", operator)
    annotated = await service.annotate(case.id, "Closed ticket", operator)

    assert annotated.state == CaseState.CANCELLED
    assert annotated.service_note == "Customer confirmed by phone\nClosed ticket"
    assert (await _actions(service, case.id))[-2:] == [LogAction.ADD_REMARK, LogAction.ADD_REMARK]


@pytest.mark.asyncio
async def test_annotate_rejects_blank_note(service, case_factory, operator):
    case = await case_factory()

    with pytest.raises(ValidationError):
        await service.annotate(case.id, "   ", operator)


@pytest.mark.asyncio
async def test_cancel_sets_completion(service, case_factory, customer, event_sink):
    case = await case_factory()

    cancelled = await service.cancel(case.id, customer)

    assert cancelled.state == CaseState.CANCELLED
    assert cancelled.stage == CaseStage.COMPLETE
    assert cancelled.completed_at is not None
    assert cancelled.deadline_at is None
    assert event_sink.names()[-2:] == ["status_changed", "cancelled"]


@pytest.mark.asyncio
async def test_lost_version_race_is_retried(service, case_factory, operator, monkeypatch):
    monkeypatch.setattr(constants, "UNIT_RETRY_BASE_DELAY_SECONDS", 0)
    case = await case_factory()
    original_update = service.db.update_case
    calls = {"count": 0}

    async def flaky_update(record):
        calls["count"] += 1
        if calls["count"] == 1:
            raise StaleCaseError(record.id, record.version)
        await original_update(record)

    monkeypatch.setattr(service.db, "update_case", flaky_update)

    approved = await service.approve(case.id, operator)

    assert approved.state == CaseState.APPROVED
    assert calls["count"] == 2
    # the failed attempt left no trace
    assert await _actions(service, case.id) == [LogAction.CREATE, LogAction.APPROVE]


@pytest.mark.asyncio
async def test_persistent_transient_failure_is_raised(service, case_factory, operator, monkeypatch):
    monkeypatch.setattr(constants, "UNIT_RETRY_BASE_DELAY_SECONDS", 0)
    case = await case_factory()

    async def always_stale(record):
        raise StaleCaseError(record.id, record.version)

    monkeypatch.setattr(service.db, "update_case", always_stale)

    with pytest.raises(TransientPersistenceError):
        await service.approve(case.id, operator)

    monkeypatch.undo()
    stored = await service.get_case(case.id)
    assert stored.state == CaseState.PENDING_APPROVAL
    assert await _actions(service, case.id) == [LogAction.CREATE]


@pytest.mark.asyncio
async def test_exchange_case_keeps_address(service, case_factory):
    address = {"name": "Han Meimei", "city": "Suzhou", "address": "88 Canal Rd"}

    case = await case_factory(case_type=CaseType.EXCHANGE, exchange_address=address)

    assert (await service.get_case(case.id)).exchange_address == address


def test_system_actor_helpers():
    assert Actor.system().id == "system"
    assert Actor.user("u1").type == ActorType.USER
    assert Actor.operator("o1").type == ActorType.OPERATOR
