"""History log storage."""

from order_saga.storage.events import EventType, HistoryEvent, InstanceStatus, WorkflowInstance
from order_saga.storage.interface import HistoryLog

__all__ = [
    "EventType",
    "HistoryEvent",
    "HistoryLog",
    "InstanceStatus",
    "WorkflowInstance",
]
