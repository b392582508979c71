import pytest

from aftersales_core.auto_audit import AutoApprovalRule
from aftersales_core.config import AutoApprovalSettings
from aftersales_core.enums import CaseState, CaseType, RefundReason
from aftersales_core.models import CaseRecord


def _case(reason: RefundReason, amount_cents: int, state: CaseState = CaseState.PENDING_APPROVAL) -> CaseRecord:
    return CaseRecord(
        reference_number="AS-AUTO-1",
        case_type=CaseType.REFUND_ONLY,
        reason=reason,
        order_number="ORD-1",
        original_refund_cents=amount_cents,
        state=state,
    )


@pytest.fixture
def rule() -> AutoApprovalRule:
    return AutoApprovalRule(AutoApprovalSettings())


@pytest.mark.parametrize(
    "reason",
    [
        RefundReason.QUALITY_ISSUE,
        RefundReason.MISSING_ITEM,
        RefundReason.OUT_OF_STOCK,
        RefundReason.DELIVERY_TIMEOUT,
    ],
)
def test_merchant_responsibility_is_approved_at_any_amount(rule, reason):
    decision = rule.evaluate(_case(reason, 1_000_000))

    assert decision.approve
    assert "merchant responsibility" in decision.reason


def test_low_risk_reason_within_threshold(rule):
    assert rule.evaluate(_case(RefundReason.DONT_WANT, 15_000)).approve
    assert rule.evaluate(_case(RefundReason.DONT_WANT, 20_000)).approve


def test_low_risk_reason_above_threshold(rule):
    decision = rule.evaluate(_case(RefundReason.DONT_WANT, 20_001))

    assert not decision.approve
    assert "threshold" in decision.reason


def test_other_reasons_need_manual_review(rule):
    assert not rule.evaluate(_case(RefundReason.PRICE_ISSUE, 100)).approve
    assert not rule.evaluate(_case(RefundReason.OTHER, 100)).approve


def test_modified_amount_is_what_counts(rule):
    case = _case(RefundReason.DONT_WANT, 50_000)
    case.actual_refund_cents = 10_000

    assert rule.evaluate(case).approve


def test_only_pending_cases_are_considered(rule):
    assert not rule.evaluate(_case(RefundReason.QUALITY_ISSUE, 100, CaseState.REJECTED)).approve


def test_disabled_rule_approves_nothing():
    rule = AutoApprovalRule(AutoApprovalSettings(enabled=False))

    assert not rule.evaluate(_case(RefundReason.QUALITY_ISSUE, 100)).approve


def test_custom_threshold_and_reasons():
    rule = AutoApprovalRule(
        AutoApprovalSettings(threshold_cents=500, low_risk_reasons=frozenset({RefundReason.PRICE_ISSUE}))
    )

    assert rule.evaluate(_case(RefundReason.PRICE_ISSUE, 500)).approve
    assert not rule.evaluate(_case(RefundReason.DONT_WANT, 100)).approve
