"""Deadline policy, the expired-case sweep, and the sweep scheduler."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from .config import AuditRetentionSettings, SweepSettings, TimeoutSettings
from .enums import CaseAction, CaseState, CaseType
from .logger import get_logger
from .utils.timestamps import utcnow

if TYPE_CHECKING:
    from .database import Database
    from .service import AftersalesService

logger = get_logger()

SWEEPABLE_STATES = (
    CaseState.PENDING_APPROVAL,
    CaseState.PENDING_RETURN,
    CaseState.PENDING_RECEIVE,
)


class TimeoutPolicy:
    """How long a case may sit in a waiting state, and what happens after."""

    def __init__(self, settings: TimeoutSettings | None = None) -> None:
        self.settings = settings or TimeoutSettings()

    def window_for(self, case_type: CaseType, state: CaseState) -> Optional[timedelta]:
        if state == CaseState.PENDING_APPROVAL:
            return timedelta(hours=self.settings.pending_approval_hours)
        if state == CaseState.PENDING_RETURN and case_type.requires_shipment:
            return timedelta(hours=self.settings.pending_return_hours)
        if state == CaseState.PENDING_RECEIVE:
            return timedelta(hours=self.settings.pending_receive_hours)
        return None

    def deadline_for(self, case_type: CaseType, state: CaseState, now: datetime | None = None) -> Optional[datetime]:
        window = self.window_for(case_type, state)
        if window is None:
            return None
        return (now or utcnow()) + window

    def action_for(self, state: CaseState) -> Optional[CaseAction]:
        """Gate action driven on expiry; None means the case is only flagged."""
        if state == CaseState.PENDING_APPROVAL:
            if self.settings.pending_approval_action == "flag":
                return None
            return CaseAction.APPROVE
        if state == CaseState.PENDING_RETURN:
            return CaseAction.CANCEL
        if state == CaseState.PENDING_RECEIVE:
            return CaseAction.CONFIRM_RECEIVE
        raise ValueError(f"No timeout handling for state {state.value}")


@dataclass
class SweepResult:
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    candidates: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def total(self) -> int:
        return self.processed + self.skipped + self.errors


class TimeoutSweeper:
    """Drives expired cases through the transition gate, one unit per case.

    Each case is re-read and re-checked inside its own unit, so a case that
    was moved on by a user action or an OMS event since it was selected is
    skipped, and running the sweep twice changes nothing the second time.
    """

    def __init__(
        self,
        db: "Database",
        service: "AftersalesService",
        settings: SweepSettings | None = None,
    ) -> None:
        self.db = db
        self.service = service
        self.settings = settings or SweepSettings()

    async def run_once(self, now: datetime | None = None, *, dry_run: bool = False,
                       limit: int | None = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult(dry_run=dry_run)
        after: tuple[datetime, int] | None = None

        while True:
            batch = await self.db.find_expired_cases(
                now, SWEEPABLE_STATES, limit=self.settings.batch_size, after=after
            )
            if not batch:
                break

            for case in batch:
                if limit is not None and result.total >= limit:
                    break
                result.candidates.append(case.reference_number)
                if dry_run:
                    result.skipped += 1
                    continue
                try:
                    changed = await self.service.process_timeout(case.id, now)
                except Exception as e:
                    result.errors += 1
                    logger.error(
                        f"Timeout processing failed for case {case.reference_number} (id={case.id}): {e}",
                        exc_info=True,
                    )
                    continue
                if changed:
                    result.processed += 1
                else:
                    result.skipped += 1

            if limit is not None and result.total >= limit:
                break
            last = batch[-1]
            after = (last.deadline_at, last.id)
            if len(batch) < self.settings.batch_size:
                break

        logger.info(
            f"Timeout sweep finished{' (dry run)' if dry_run else ''}: "
            f"processed={result.processed} skipped={result.skipped} errors={result.errors}"
        )
        return result


class TimeoutScheduler:
    """Runs the sweep on a fixed interval and purges expired audit entries."""

    def __init__(
        self,
        sweeper: TimeoutSweeper,
        db: "Database",
        sweep_settings: SweepSettings | None = None,
        retention: AuditRetentionSettings | None = None,
    ) -> None:
        self.sweeper = sweeper
        self.db = db
        self.sweep_settings = sweep_settings or SweepSettings()
        self.retention = retention or AuditRetentionSettings()
        self._stop = asyncio.Event()

    async def run_cycle(self, now: datetime | None = None) -> SweepResult:
        now = now or utcnow()
        result = await self.sweeper.run_once(now)
        if self.retention.enabled:
            cutoff = now - timedelta(days=self.retention.retention_days)
            await self.db.purge_audit_logs(cutoff)
        return result

    async def run_forever(self, *, once: bool = False) -> None:
        interval = self.sweep_settings.interval_seconds

        while not self._stop.is_set():
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"Timeout sweep cycle failed: {e}", exc_info=True)

            if once:
                return

            logger.debug(f"Next timeout sweep in {interval}s")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

        logger.info("Timeout scheduler stopped")

    def stop(self) -> None:
        self._stop.set()
