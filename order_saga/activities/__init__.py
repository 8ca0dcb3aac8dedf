"""Activity contracts and local implementations."""

from order_saga.activities.interface import (
    NOTIFY_CUSTOMER,
    PROCESS_PAYMENT,
    RESERVE_INVENTORY,
    UPDATE_INVENTORY,
    ActivityRegistry,
    build_order_activities,
)

__all__ = [
    "NOTIFY_CUSTOMER",
    "PROCESS_PAYMENT",
    "RESERVE_INVENTORY",
    "UPDATE_INVENTORY",
    "ActivityRegistry",
    "build_order_activities",
]
