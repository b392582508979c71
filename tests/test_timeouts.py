import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from aftersales_core.config import AuditRetentionSettings, Config, SweepSettings, TimeoutSettings
from aftersales_core.enums import ActorType, CaseAction, CaseState, CaseType, LogAction, ReturnStatus
from aftersales_core.models import AuditLogEntry
from aftersales_core.service import AftersalesService, CaseApplication
from aftersales_core.timeouts import TimeoutPolicy, TimeoutScheduler, TimeoutSweeper


def _later(hours: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


@pytest.fixture
def sweeper(db, service) -> TimeoutSweeper:
    return TimeoutSweeper(db, service, SweepSettings())


def test_policy_windows_and_actions():
    policy = TimeoutPolicy(TimeoutSettings())
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert policy.deadline_for(CaseType.REFUND_ONLY, CaseState.PENDING_APPROVAL, now) == now + timedelta(hours=72)
    assert policy.deadline_for(CaseType.EXCHANGE, CaseState.PENDING_RETURN, now) == now + timedelta(days=7)
    assert policy.deadline_for(CaseType.RETURN_REFUND, CaseState.PENDING_RECEIVE, now) == now + timedelta(hours=72)
    assert policy.deadline_for(CaseType.REFUND_ONLY, CaseState.PENDING_RETURN, now) is None
    assert policy.deadline_for(CaseType.RETURN_REFUND, CaseState.APPROVED, now) is None

    assert policy.action_for(CaseState.PENDING_APPROVAL) == CaseAction.APPROVE
    assert policy.action_for(CaseState.PENDING_RETURN) == CaseAction.CANCEL
    assert policy.action_for(CaseState.PENDING_RECEIVE) == CaseAction.CONFIRM_RECEIVE
    with pytest.raises(ValueError):
        policy.action_for(CaseState.APPROVED)


def test_flag_policy_has_no_approval_action():
    policy = TimeoutPolicy(TimeoutSettings(pending_approval_action="flag"))

    assert policy.action_for(CaseState.PENDING_APPROVAL) is None


@pytest.mark.asyncio
async def test_expired_pending_case_is_approved_once(service, sweeper, case_factory):
    case = await case_factory()
    now = _later(73)

    first = await sweeper.run_once(now)
    second = await sweeper.run_once(now)

    assert first.processed == 1
    assert second.total == 0
    stored = await service.get_case(case.id)
    assert stored.state == CaseState.APPROVED
    assert stored.deadline_at is None
    trail = await service.audit_trail(case.id)
    assert [entry.action for entry in trail] == [LogAction.CREATE, LogAction.TIMEOUT_PROCESS]
    assert trail[-1].actor_type == ActorType.SYSTEM
    assert trail[-1].actor_id == "timeout_sweep"
    assert trail[-1].context["timed_out_state"] == "pending_approval"


@pytest.mark.asyncio
async def test_case_not_yet_expired_is_left_alone(service, sweeper, case_factory):
    case = await case_factory()

    result = await sweeper.run_once(_later(71))

    assert result.total == 0
    assert (await service.get_case(case.id)).state == CaseState.PENDING_APPROVAL


@pytest.mark.asyncio
async def test_unshipped_return_is_cancelled(service, sweeper, case_factory, operator):
    case = await case_factory()
    await service.approve(case.id, operator)
    await service.start_processing(case.id, operator)

    result = await sweeper.run_once(_later(24 * 7 + 1))

    assert result.processed == 1
    stored = await service.get_case(case.id)
    assert stored.state == CaseState.CANCELLED
    shipment = await service.db.get_return_shipment(case.id)
    assert shipment.status == ReturnStatus.CANCELLED


@pytest.mark.asyncio
async def test_unconfirmed_receipt_is_confirmed(service, sweeper, case_factory, operator, customer):
    case = await case_factory()
    await service.approve(case.id, operator)
    await service.start_processing(case.id, operator)
    await service.submit_return_shipment(case.id, "SF Express", "SF1", customer)

    result = await sweeper.run_once(_later(73))

    assert result.processed == 1
    stored = await service.get_case(case.id)
    assert stored.state == CaseState.PENDING_REFUND
    assert await service.db.get_refund_execution(case.id) is not None


@pytest.mark.asyncio
async def test_flag_mode_only_annotates(db, customer):
    service = AftersalesService(db, Config(timeouts=TimeoutSettings(pending_approval_action="flag")))
    sweeper = TimeoutSweeper(db, service)
    case = await service.apply_case(
        CaseApplication(
            case_type=CaseType.REFUND_ONLY,
            reason="other",
            order_number="ORD-7",
            refund_amount_cents=3_000,
        ),
        customer,
    )
    now = _later(73)

    first = await sweeper.run_once(now)
    second = await sweeper.run_once(now)

    assert first.processed == 1
    assert second.total == 0
    stored = await service.get_case(case.id)
    assert stored.state == CaseState.PENDING_APPROVAL
    assert stored.deadline_at is None
    assert "flagged for manual review" in stored.service_note
    actions = [entry.action for entry in await service.audit_trail(case.id)]
    assert actions == [LogAction.CREATE, LogAction.TIMEOUT_PROCESS]


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(service, sweeper, case_factory):
    case = await case_factory(reference_number="AS-DRY-1")

    result = await sweeper.run_once(_later(73), dry_run=True)

    assert result.dry_run is True
    assert result.candidates == ["AS-DRY-1"]
    assert result.processed == 0
    assert (await service.get_case(case.id)).state == CaseState.PENDING_APPROVAL
    assert len(await service.audit_trail(case.id)) == 1


@pytest.mark.asyncio
async def test_sweep_walks_every_batch(db, service, case_factory):
    for index in range(5):
        await case_factory(reference_number=f"AS-BATCH-{index}")
    sweeper = TimeoutSweeper(db, service, SweepSettings(batch_size=2))

    result = await sweeper.run_once(_later(73))

    assert result.processed == 5
    assert sorted(result.candidates) == [f"AS-BATCH-{i}" for i in range(5)]
    assert await service.list_cases(state=CaseState.PENDING_APPROVAL) == []


@pytest.mark.asyncio
async def test_sweep_limit(service, sweeper, case_factory):
    for index in range(3):
        await case_factory(reference_number=f"AS-LIMIT-{index}")

    result = await sweeper.run_once(_later(73), limit=2)

    assert result.processed == 2
    assert len(await service.list_cases(state=CaseState.PENDING_APPROVAL)) == 1


@pytest.mark.asyncio
async def test_one_failing_case_does_not_stop_the_sweep(service, sweeper, case_factory, monkeypatch):
    broken = await case_factory(reference_number="AS-BROKEN")
    healthy = await case_factory(reference_number="AS-HEALTHY")
    original = service.process_timeout

    async def flaky(case_id, now=None):
        if case_id == broken.id:
            raise RuntimeError("unexpected row")
        return await original(case_id, now)

    monkeypatch.setattr(service, "process_timeout", flaky)

    result = await sweeper.run_once(_later(73))

    assert result.errors == 1
    assert result.processed == 1
    assert (await service.get_case(healthy.id)).state == CaseState.APPROVED
    assert (await service.get_case(broken.id)).state == CaseState.PENDING_APPROVAL


@pytest.mark.asyncio
async def test_process_timeout_skips_case_that_moved_on(service, case_factory, operator):
    case = await case_factory()
    await service.reject(case.id, operator, "duplicate claim")

    assert await service.process_timeout(case.id, _later(73)) is False
    assert await service.process_timeout(999, _later(73)) is False


@pytest.mark.asyncio
async def test_scheduler_cycle_sweeps_and_purges(db, service, sweeper, case_factory):
    case = await case_factory()
    await db.append_audit_log(
        AuditLogEntry(
            case_id=case.id,
            action=LogAction.ADD_REMARK,
            actor_type=ActorType.OPERATOR,
            created_at=datetime.now(timezone.utc) - timedelta(days=30),
        )
    )
    await db._connection.commit()
    scheduler = TimeoutScheduler(
        sweeper, db, SweepSettings(), AuditRetentionSettings(enabled=True, retention_days=7)
    )

    result = await scheduler.run_cycle(_later(73))

    assert result.processed == 1
    actions = [entry.action for entry in await service.audit_trail(case.id)]
    assert LogAction.ADD_REMARK not in actions
    assert LogAction.TIMEOUT_PROCESS in actions


@pytest.mark.asyncio
async def test_scheduler_once_runs_single_cycle(db, service, sweeper, case_factory):
    case = await case_factory()
    scheduler = TimeoutScheduler(sweeper, db, SweepSettings())

    await asyncio.wait_for(scheduler.run_forever(once=True), timeout=5)

    # deadline is in the future, nothing to do yet
    assert (await service.get_case(case.id)).state == CaseState.PENDING_APPROVAL


@pytest.mark.asyncio
async def test_scheduler_stops_between_cycles(db, sweeper):
    scheduler = TimeoutScheduler(sweeper, db, SweepSettings(interval_seconds=60))

    task = asyncio.create_task(scheduler.run_forever())
    await asyncio.sleep(0.05)
    scheduler.stop()

    await asyncio.wait_for(task, timeout=5)
    assert task.done()
