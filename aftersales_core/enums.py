"""Closed value sets used across the after-sales core."""

from __future__ import annotations

from enum import Enum


class CaseType(str, Enum):
    REFUND_ONLY = "refund_only"
    RETURN_REFUND = "return_refund"
    EXCHANGE = "exchange"

    @property
    def requires_shipment(self) -> bool:
        return self in (CaseType.RETURN_REFUND, CaseType.EXCHANGE)

    @property
    def requires_refund(self) -> bool:
        return self in (CaseType.REFUND_ONLY, CaseType.RETURN_REFUND)


class CaseState(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING_RETURN = "pending_return"
    PENDING_RECEIVE = "pending_receive"
    PENDING_REFUND = "pending_refund"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CaseState.COMPLETED, CaseState.CANCELLED)


class CaseStage(str, Enum):
    """Coarse forward-only progress marker."""

    APPLY = "apply"
    AUDIT = "audit"
    RETURN = "return"
    RECEIVE = "receive"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER = [
    CaseStage.APPLY,
    CaseStage.AUDIT,
    CaseStage.RETURN,
    CaseStage.RECEIVE,
    CaseStage.COMPLETE,
]


class RefundReason(str, Enum):
    UNUSED_DISCOUNT = "unused_discount"
    QUALITY_ISSUE = "quality_issue"
    PRICE_ISSUE = "price_issue"
    DONT_WANT = "dont_want"
    OUT_OF_STOCK = "out_of_stock"
    MISSING_ITEM = "missing_item"
    DELIVERY_TIMEOUT = "delivery_timeout"
    OTHER = "other"

    @property
    def is_merchant_responsibility(self) -> bool:
        return self in MERCHANT_RESPONSIBILITY_REASONS


MERCHANT_RESPONSIBILITY_REASONS = frozenset(
    {
        RefundReason.QUALITY_ISSUE,
        RefundReason.MISSING_ITEM,
        RefundReason.OUT_OF_STOCK,
        RefundReason.DELIVERY_TIMEOUT,
    }
)


class CaseAction(str, Enum):
    """Actions accepted by the transition gate."""

    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    START_PROCESSING = "start_processing"
    SHIP_RETURN = "ship_return"
    CONFIRM_RECEIVE = "confirm_receive"
    REJECT_RECEIVE = "reject_receive"
    COMPLETE_REFUND = "complete_refund"
    RESUBMIT = "resubmit"


class ActorType(str, Enum):
    SYSTEM = "system"
    USER = "user"
    OPERATOR = "operator"


class LogAction(str, Enum):
    CREATE = "create"
    SUBMIT = "submit"
    MODIFY = "modify"
    CANCEL = "cancel"
    APPROVE = "approve"
    REJECT = "reject"
    AUTO_APPROVE = "auto_approve"
    SHIP_RETURN = "ship_return"
    RECEIVE_RETURN = "receive_return"
    INSPECT_RETURN = "inspect_return"
    SHIP_EXCHANGE = "ship_exchange"
    RECEIVE_EXCHANGE = "receive_exchange"
    REQUEST_REFUND = "request_refund"
    PROCESS_REFUND = "process_refund"
    COMPLETE_REFUND = "complete_refund"
    FAIL_REFUND = "fail_refund"
    TIMEOUT_PROCESS = "timeout_process"
    STATE_CHANGE = "state_change"
    SYSTEM_UPDATE = "system_update"
    SYSTEM_SYNC = "system_sync"
    STATUS_CHANGE = "status_change"
    ADD_REMARK = "add_remark"
    COMPLETE = "complete"
    MODIFY_INFO = "modify_info"
    MODIFY_REFUND_AMOUNT = "modify_refund_amount"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReturnStatus(str, Enum):
    PENDING = "pending"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    INSPECTED = "inspected"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ExchangeStatus(str, Enum):
    PENDING = "pending"
    RETURN_SHIPPED = "return_shipped"
    RETURN_RECEIVED = "return_received"
    EXCHANGE_SHIPPED = "exchange_shipped"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    ALIPAY = "alipay"
    WECHAT_PAY = "wechat_pay"
    UNION_PAY = "union_pay"
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    BALANCE = "balance"
    POINTS = "points"
    COUPON = "coupon"
