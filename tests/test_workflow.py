from datetime import datetime, timedelta, timezone

import pytest

from aftersales_core.config import TimeoutSettings
from aftersales_core.enums import CaseAction, CaseStage, CaseState, CaseType, RefundReason
from aftersales_core.errors import IllegalTransition, ModificationCapExceeded
from aftersales_core.models import CaseRecord
from aftersales_core.timeouts import TimeoutPolicy
from aftersales_core.workflow import CaseWorkflow, advance_stage, stage_for

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _case(case_type: CaseType = CaseType.RETURN_REFUND, **overrides) -> CaseRecord:
    payload = {
        "reference_number": "AS-WF-1",
        "case_type": case_type,
        "reason": RefundReason.OTHER,
        "order_number": "ORD-1",
        "original_refund_cents": 5_000,
    }
    payload.update(overrides)
    return CaseRecord(**payload)


@pytest.fixture
def workflow() -> CaseWorkflow:
    return CaseWorkflow(TimeoutPolicy(TimeoutSettings()))


def test_approve_records_audit_time_and_approved_amount(workflow):
    case = _case()

    result = workflow.apply(case, CaseAction.APPROVE, NOW)

    assert result.previous_state == CaseState.PENDING_APPROVAL
    assert case.state == CaseState.APPROVED
    assert case.stage == CaseStage.AUDIT
    assert case.audit_at == NOW
    assert case.approved_refund_cents == 5_000
    assert case.deadline_at is None


def test_start_processing_routes_by_case_type(workflow):
    refund_only = _case(CaseType.REFUND_ONLY, state=CaseState.APPROVED, stage=CaseStage.AUDIT)
    return_refund = _case(CaseType.RETURN_REFUND, state=CaseState.APPROVED, stage=CaseStage.AUDIT)
    exchange = _case(CaseType.EXCHANGE, state=CaseState.APPROVED, stage=CaseStage.AUDIT)

    workflow.apply(refund_only, CaseAction.START_PROCESSING, NOW)
    workflow.apply(return_refund, CaseAction.START_PROCESSING, NOW)
    workflow.apply(exchange, CaseAction.START_PROCESSING, NOW)

    assert refund_only.state == CaseState.PENDING_REFUND
    assert refund_only.stage == CaseStage.AUDIT
    assert refund_only.deadline_at is None

    assert return_refund.state == CaseState.PENDING_RETURN
    assert return_refund.stage == CaseStage.RETURN
    assert return_refund.deadline_at == NOW + timedelta(hours=168)

    assert exchange.state == CaseState.PENDING_RETURN


def test_exchange_completes_when_return_is_received(workflow):
    case = _case(CaseType.EXCHANGE, state=CaseState.PENDING_RECEIVE, stage=CaseStage.RECEIVE)

    workflow.apply(case, CaseAction.CONFIRM_RECEIVE, NOW)

    assert case.state == CaseState.COMPLETED
    assert case.stage == CaseStage.COMPLETE
    assert case.completed_at == NOW


def test_illegal_action_leaves_case_untouched(workflow):
    case = _case(state=CaseState.COMPLETED, stage=CaseStage.COMPLETE, actual_refund_cents=4_000)
    before = case.copy()

    with pytest.raises(IllegalTransition) as excinfo:
        workflow.apply(case, CaseAction.APPROVE, NOW)

    assert excinfo.value.state == "completed"
    assert excinfo.value.action == "approve"
    assert case == before


def test_refund_only_has_no_parcel_actions(workflow):
    case = _case(CaseType.REFUND_ONLY, state=CaseState.PENDING_RECEIVE, stage=CaseStage.RECEIVE)

    assert CaseAction.CONFIRM_RECEIVE not in workflow.allowed_actions(case)
    with pytest.raises(IllegalTransition):
        workflow.next_state(case, CaseAction.CONFIRM_RECEIVE)


def test_terminal_states_allow_nothing(workflow):
    for state in (CaseState.COMPLETED, CaseState.CANCELLED):
        assert workflow.allowed_actions(_case(state=state)) == set()


def test_resubmit_increments_count_and_clears_reject_reason(workflow):
    case = _case(state=CaseState.REJECTED, stage=CaseStage.AUDIT, reject_reason="blurry photos")

    workflow.apply(case, CaseAction.RESUBMIT, NOW)

    assert case.state == CaseState.PENDING_APPROVAL
    assert case.modification_count == 1
    assert case.reject_reason is None
    # stage does not fall back to apply
    assert case.stage == CaseStage.AUDIT
    assert case.deadline_at == NOW + timedelta(hours=72)


def test_resubmit_rejected_at_modification_cap(workflow):
    case = _case(state=CaseState.REJECTED, stage=CaseStage.AUDIT, modification_count=3)

    assert CaseAction.RESUBMIT not in workflow.allowed_actions(case)
    assert case.needs_intervention
    with pytest.raises(ModificationCapExceeded) as excinfo:
        workflow.apply(case, CaseAction.RESUBMIT, NOW)

    assert excinfo.value.count == 3
    assert case.modification_count == 3
    assert case.state == CaseState.REJECTED


def test_stage_never_moves_backwards(workflow):
    case = _case(state=CaseState.PENDING_RECEIVE, stage=CaseStage.RECEIVE)

    workflow.apply(case, CaseAction.REJECT_RECEIVE, NOW)

    assert case.state == CaseState.REJECTED
    assert case.stage == CaseStage.RECEIVE


def test_stage_helpers():
    assert stage_for(CaseState.PENDING_REFUND, CaseType.REFUND_ONLY) == CaseStage.AUDIT
    assert stage_for(CaseState.PENDING_REFUND, CaseType.RETURN_REFUND) == CaseStage.RECEIVE
    assert advance_stage(CaseStage.RECEIVE, CaseStage.AUDIT) == CaseStage.RECEIVE
    assert advance_stage(CaseStage.APPLY, CaseStage.AUDIT) == CaseStage.AUDIT


def test_workflow_without_policy_clears_deadline():
    case = _case(deadline_at=NOW)

    CaseWorkflow().apply(case, CaseAction.REJECT, NOW)

    assert case.deadline_at is None


@pytest.mark.parametrize(
    "state,can_cancel",
    [
        (CaseState.PENDING_APPROVAL, True),
        (CaseState.APPROVED, False),
        (CaseState.PENDING_RETURN, True),
        (CaseState.PENDING_RECEIVE, False),
        (CaseState.REJECTED, True),
        (CaseState.COMPLETED, False),
    ],
)
def test_can_cancel_matches_gate(workflow, state, can_cancel):
    case = _case(state=state)

    assert case.can_cancel is can_cancel
    assert (CaseAction.CANCEL in workflow.allowed_actions(case)) is can_cancel


def test_can_resubmit_until_modification_cap():
    assert _case(state=CaseState.REJECTED).can_resubmit is True
    assert _case(state=CaseState.REJECTED, modification_count=3).can_resubmit is False
    assert _case(state=CaseState.APPROVED).can_resubmit is False


def test_case_type_flags():
    assert CaseType.REFUND_ONLY.requires_refund and not CaseType.REFUND_ONLY.requires_shipment
    assert CaseType.RETURN_REFUND.requires_refund and CaseType.RETURN_REFUND.requires_shipment
    assert not CaseType.EXCHANGE.requires_refund and CaseType.EXCHANGE.requires_shipment


def _illegal_combinations():
    gate = CaseWorkflow()
    for state in CaseState:
        for case_type in CaseType:
            allowed = gate.allowed_actions(_case(case_type, state=state))
            for action in CaseAction:
                if action not in allowed:
                    yield pytest.param(state, case_type, action, id=f"{state.value}-{case_type.value}-{action.value}")


@pytest.mark.asyncio
@pytest.mark.parametrize("state,case_type,action", list(_illegal_combinations()))
async def test_disallowed_action_leaves_stored_case_untouched(
    db, service, case_builder, operator, state, case_type, action
):
    case = case_builder(
        case_type=case_type,
        state=state,
        stage=stage_for(state, case_type),
        approved_refund_cents=4_000,
        actual_refund_cents=4_000 if state == CaseState.COMPLETED else None,
    )
    await db.insert_case(case)
    await db._connection.commit()
    before = await service.get_case(case.id)
    trail_before = len(await service.audit_trail(case.id))

    with pytest.raises(IllegalTransition):
        await service.perform_action(case.id, action, operator, reason="not allowed here")

    after = await service.get_case(case.id)
    assert after.state == before.state
    assert after.stage == before.stage
    assert after.original_refund_cents == before.original_refund_cents
    assert after.approved_refund_cents == before.approved_refund_cents
    assert after.actual_refund_cents == before.actual_refund_cents
    assert after.reject_reason == before.reject_reason
    assert after.version == before.version
    assert len(await service.audit_trail(case.id)) == trail_before
