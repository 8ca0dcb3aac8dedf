"""Durable, replay-based order fulfillment saga orchestrator."""

__version__ = "1.0.0"

from order_saga.errors import (
    ActivityError,
    ActivityFault,
    InstanceNotFound,
    StorageUnavailable,
    ValidationError,
)
from order_saga.models import OrderPayload, OrderResult

__all__ = [
    "ActivityError",
    "ActivityFault",
    "InstanceNotFound",
    "OrderPayload",
    "OrderResult",
    "StorageUnavailable",
    "ValidationError",
]
