"""Automatic approval rule applied when a case is opened or resubmitted."""

from __future__ import annotations

from dataclasses import dataclass

from .config import AutoApprovalSettings
from .enums import CaseState
from .models import CaseRecord


@dataclass(frozen=True)
class AutoApprovalDecision:
    approve: bool
    reason: str


class AutoApprovalRule:
    """Approve merchant-fault claims, and small low-risk claims."""

    def __init__(self, settings: AutoApprovalSettings | None = None) -> None:
        self.settings = settings or AutoApprovalSettings()

    def evaluate(self, case: CaseRecord) -> AutoApprovalDecision:
        if not self.settings.enabled:
            return AutoApprovalDecision(False, "auto approval disabled")
        if case.state != CaseState.PENDING_APPROVAL:
            return AutoApprovalDecision(False, f"case is {case.state.value}")

        if case.reason.is_merchant_responsibility:
            return AutoApprovalDecision(True, f"merchant responsibility ({case.reason.value})")

        if case.reason in self.settings.low_risk_reasons:
            if case.total_refund_cents <= self.settings.threshold_cents:
                return AutoApprovalDecision(
                    True,
                    f"low-risk reason {case.reason.value} within "
                    f"{self.settings.threshold_cents} cents threshold",
                )
            return AutoApprovalDecision(False, "amount above auto-approval threshold")

        return AutoApprovalDecision(False, "requires manual review")
