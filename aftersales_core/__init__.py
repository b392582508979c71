"""Core modules for the after-sales lifecycle engine."""

from .auto_audit import AutoApprovalRule
from .config import Config, load_config
from .database import Database
from .enums import CaseAction, CaseStage, CaseState, CaseType, LogAction, RefundReason
from .errors import (
    AftersalesError,
    AmountCapExceeded,
    CaseNotFound,
    IllegalTransition,
    ModificationCapExceeded,
    ReconciliationConflict,
    ReconciliationError,
    TransientPersistenceError,
    ValidationError,
)
from .events import EventDispatcher, InMemoryEventSink, WebhookEventSink
from .models import Actor, CaseRecord
from .oms import OmsReconciliationService
from .service import AftersalesService, CaseAmendment, CaseApplication
from .timeouts import TimeoutPolicy, TimeoutScheduler, TimeoutSweeper
from .workflow import CaseWorkflow

__all__ = [
    "AutoApprovalRule",
    "Config",
    "load_config",
    "Database",
    "CaseAction",
    "CaseStage",
    "CaseState",
    "CaseType",
    "LogAction",
    "RefundReason",
    "AftersalesError",
    "AmountCapExceeded",
    "CaseNotFound",
    "IllegalTransition",
    "ModificationCapExceeded",
    "ReconciliationConflict",
    "ReconciliationError",
    "TransientPersistenceError",
    "ValidationError",
    "EventDispatcher",
    "InMemoryEventSink",
    "WebhookEventSink",
    "Actor",
    "CaseRecord",
    "OmsReconciliationService",
    "AftersalesService",
    "CaseAmendment",
    "CaseApplication",
    "TimeoutPolicy",
    "TimeoutScheduler",
    "TimeoutSweeper",
    "CaseWorkflow",
]
