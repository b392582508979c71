"""OMS integration: inbound event schemas, code mapping and reconciliation."""

from .mapper import OmsStatusMapper
from .reconciliation import OmsReconciliationService
from .schemas import OmsCreateEvent, OmsInfoEvent, OmsStatusEvent

__all__ = [
    "OmsStatusMapper",
    "OmsReconciliationService",
    "OmsCreateEvent",
    "OmsInfoEvent",
    "OmsStatusEvent",
]
