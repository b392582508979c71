"""Case state machine: the only path that moves a case between states.

Every operator, user and sweep action goes through ``CaseWorkflow.apply``.
An action outside ``allowed_actions`` raises ``IllegalTransition`` before the
case is touched. Stage is recomputed on every transition and never moves
backwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Union

from . import constants
from .enums import CaseAction, CaseStage, CaseState, CaseType
from .errors import IllegalTransition, ModificationCapExceeded
from .models import CaseRecord
from .utils.timestamps import utcnow

if TYPE_CHECKING:
    from .timeouts import TimeoutPolicy

_Target = Union[CaseState, dict[CaseType, CaseState]]

TRANSITIONS: dict[CaseState, dict[CaseAction, _Target]] = {
    CaseState.PENDING_APPROVAL: {
        CaseAction.APPROVE: CaseState.APPROVED,
        CaseAction.REJECT: CaseState.REJECTED,
        CaseAction.CANCEL: CaseState.CANCELLED,
    },
    CaseState.APPROVED: {
        CaseAction.START_PROCESSING: {
            CaseType.REFUND_ONLY: CaseState.PENDING_REFUND,
            CaseType.RETURN_REFUND: CaseState.PENDING_RETURN,
            CaseType.EXCHANGE: CaseState.PENDING_RETURN,
        },
    },
    CaseState.PENDING_RETURN: {
        CaseAction.SHIP_RETURN: CaseState.PENDING_RECEIVE,
        CaseAction.CANCEL: CaseState.CANCELLED,
    },
    CaseState.PENDING_RECEIVE: {
        CaseAction.CONFIRM_RECEIVE: {
            CaseType.RETURN_REFUND: CaseState.PENDING_REFUND,
            CaseType.EXCHANGE: CaseState.COMPLETED,
        },
        CaseAction.REJECT_RECEIVE: CaseState.REJECTED,
    },
    CaseState.PENDING_REFUND: {
        CaseAction.COMPLETE_REFUND: CaseState.COMPLETED,
    },
    CaseState.REJECTED: {
        CaseAction.RESUBMIT: CaseState.PENDING_APPROVAL,
        CaseAction.CANCEL: CaseState.CANCELLED,
    },
    CaseState.COMPLETED: {},
    CaseState.CANCELLED: {},
}

_STAGE_BY_STATE: dict[CaseState, CaseStage] = {
    CaseState.PENDING_APPROVAL: CaseStage.APPLY,
    CaseState.APPROVED: CaseStage.AUDIT,
    CaseState.REJECTED: CaseStage.AUDIT,
    CaseState.PENDING_RETURN: CaseStage.RETURN,
    CaseState.PENDING_RECEIVE: CaseStage.RECEIVE,
    CaseState.PENDING_REFUND: CaseStage.RECEIVE,
    CaseState.COMPLETED: CaseStage.COMPLETE,
    CaseState.CANCELLED: CaseStage.COMPLETE,
}


def stage_for(state: CaseState, case_type: CaseType) -> CaseStage:
    """Coarse stage a case in this state should at least have reached."""
    if state == CaseState.PENDING_REFUND and case_type == CaseType.REFUND_ONLY:
        # refund-only skips the parcel legs
        return CaseStage.AUDIT
    return _STAGE_BY_STATE[state]


def advance_stage(current: CaseStage, target: CaseStage) -> CaseStage:
    return target if target.rank > current.rank else current


@dataclass(frozen=True)
class TransitionResult:
    action: CaseAction
    previous_state: CaseState
    next_state: CaseState
    previous_stage: CaseStage
    next_stage: CaseStage

    @property
    def is_terminal(self) -> bool:
        return self.next_state.is_terminal


class CaseWorkflow:
    """Applies gate actions to in-memory case records."""

    def __init__(
        self,
        timeout_policy: "TimeoutPolicy | None" = None,
        max_modifications: int = constants.MAX_MODIFICATIONS,
    ) -> None:
        self.timeout_policy = timeout_policy
        self.max_modifications = max_modifications

    def allowed_actions(self, case: CaseRecord) -> set[CaseAction]:
        actions = set()
        for action, target in TRANSITIONS[case.state].items():
            if isinstance(target, dict) and case.case_type not in target:
                continue
            if action == CaseAction.RESUBMIT and case.modification_count >= self.max_modifications:
                continue
            actions.add(action)
        return actions

    def can(self, case: CaseRecord, action: CaseAction) -> bool:
        return action in self.allowed_actions(case)

    def next_state(self, case: CaseRecord, action: CaseAction) -> CaseState:
        """Resolve the target state, raising IllegalTransition if the action is not allowed."""
        action = CaseAction(action)
        target = TRANSITIONS[case.state].get(action)
        if isinstance(target, dict):
            target = target.get(case.case_type)
        if target is None:
            raise IllegalTransition(case.state, action)
        if action == CaseAction.RESUBMIT and case.modification_count >= self.max_modifications:
            raise ModificationCapExceeded(case.state, action, case.modification_count)
        return target

    def apply(self, case: CaseRecord, action: CaseAction, now: datetime | None = None) -> TransitionResult:
        """Move case through action, updating stage, deadline and timestamps."""
        now = now or utcnow()
        action = CaseAction(action)
        next_state = self.next_state(case, action)

        previous_state = case.state
        previous_stage = case.stage

        case.state = next_state
        case.stage = advance_stage(case.stage, stage_for(next_state, case.case_type))

        if action == CaseAction.RESUBMIT:
            case.modification_count += 1
            case.reject_reason = None
        if action in (CaseAction.APPROVE, CaseAction.REJECT):
            case.audit_at = now
            if action == CaseAction.APPROVE and case.approved_refund_cents is None:
                case.approved_refund_cents = case.total_refund_cents
        if next_state.is_terminal:
            case.completed_at = now

        if self.timeout_policy is not None:
            case.deadline_at = self.timeout_policy.deadline_for(case.case_type, next_state, now)
        else:
            case.deadline_at = None

        return TransitionResult(
            action=action,
            previous_state=previous_state,
            next_state=next_state,
            previous_stage=previous_stage,
            next_stage=case.stage,
        )
