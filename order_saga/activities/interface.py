"""Capability contracts of the external services the saga calls.

Each activity takes one request record and is expected to be idempotent on
the request's ``request_id``. Implementations signal business failures by
raising ``ActivityError`` and transient infrastructure problems by raising
``ActivityFault`` (or any other exception).
"""

from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Type, runtime_checkable

from pydantic import BaseModel

from order_saga.models import (
    InventoryRequest,
    InventoryResult,
    Notification,
    PaymentRequest,
)


RESERVE_INVENTORY = "ReserveInventory"
PROCESS_PAYMENT = "ProcessPayment"
UPDATE_INVENTORY = "UpdateInventory"
NOTIFY_CUSTOMER = "NotifyCustomer"


@runtime_checkable
class InventoryService(Protocol):
    async def reserve(self, request: InventoryRequest) -> InventoryResult:
        ...

    async def update(self, request: PaymentRequest) -> None:
        ...


@runtime_checkable
class PaymentService(Protocol):
    async def process(self, request: PaymentRequest) -> None:
        ...


@runtime_checkable
class NotificationService(Protocol):
    async def notify(self, notification: Notification) -> None:
        ...


ActivityFunc = Callable[[Any], Awaitable[Any]]


class ActivityDefinition:
    """A named activity and the record type its result is rebuilt into."""

    def __init__(
        self,
        name: str,
        func: ActivityFunc,
        result_type: Optional[Type[BaseModel]] = None
    ):
        self.name = name
        self.func = func
        self.result_type = result_type

    def decode_result(self, payload: Any) -> Any:
        if self.result_type is None or payload is None:
            return payload
        return self.result_type.model_validate(payload)


class ActivityRegistry:
    """Maps activity names to their implementations."""

    def __init__(self):
        self._activities: Dict[str, ActivityDefinition] = {}

    def register(
        self,
        name: str,
        func: ActivityFunc,
        result_type: Optional[Type[BaseModel]] = None
    ) -> None:
        if name in self._activities:
            raise ValueError(f"Activity {name} is already registered")
        self._activities[name] = ActivityDefinition(name, func, result_type)

    def get(self, name: str) -> ActivityDefinition:
        try:
            return self._activities[name]
        except KeyError:
            raise KeyError(f"Activity {name} is not registered") from None


def build_order_activities(
    inventory: InventoryService,
    payments: PaymentService,
    notifications: NotificationService
) -> ActivityRegistry:
    """Bind the four order fulfillment activities to service implementations."""
    registry = ActivityRegistry()
    registry.register(RESERVE_INVENTORY, inventory.reserve, InventoryResult)
    registry.register(PROCESS_PAYMENT, payments.process)
    registry.register(UPDATE_INVENTORY, inventory.update)
    registry.register(NOTIFY_CUSTOMER, notifications.notify)
    return registry
