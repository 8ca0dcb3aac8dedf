"""In-process stand-ins for the inventory, payment and notification services.

Used by ``saga order run``, the default API wiring and the tests. Every
operation is idempotent on ``request_id`` the way the real services must be.
"""

from decimal import Decimal
from typing import Dict, List, Optional

import structlog

from order_saga.errors import ActivityError
from order_saga.models import (
    InventoryRequest,
    InventoryResult,
    Notification,
    PaymentRequest,
)


logger = structlog.get_logger(__name__)


class SimulatedInventory:
    """Stock table with reservations keyed by request id."""

    def __init__(self, stock: Optional[Dict[str, int]] = None):
        self.stock: Dict[str, int] = dict(stock or {})
        self.reservations: Dict[str, InventoryRequest] = {}
        self.committed: Dict[str, PaymentRequest] = {}

    async def reserve(self, request: InventoryRequest) -> InventoryResult:
        if request.request_id in self.reservations:
            return InventoryResult(success=True)

        available = self.stock.get(request.name, 0)
        if available < request.quantity:
            logger.info(
                "inventory_insufficient",
                request_id=request.request_id,
                item=request.name,
                requested=request.quantity,
                available=available
            )
            return InventoryResult(success=False)

        self.stock[request.name] = available - request.quantity
        self.reservations[request.request_id] = request
        logger.info(
            "inventory_reserved",
            request_id=request.request_id,
            item=request.name,
            quantity=request.quantity
        )
        return InventoryResult(success=True)

    async def update(self, request: PaymentRequest) -> None:
        if request.request_id in self.committed:
            return

        reservation = self.reservations.get(request.request_id)
        if reservation is None or reservation.quantity != request.quantity:
            raise ActivityError(
                f"No matching reservation for request {request.request_id}",
                error_kind="ReservationMissing"
            )

        self.committed[request.request_id] = request
        logger.info(
            "inventory_committed",
            request_id=request.request_id,
            item=request.name,
            quantity=request.quantity
        )


class SimulatedPaymentGateway:
    """Payment ledger that declines charges above ``limit``."""

    def __init__(self, limit: Optional[Decimal] = None):
        self.limit = limit
        self.ledger: Dict[str, Decimal] = {}

    async def process(self, request: PaymentRequest) -> None:
        if request.request_id in self.ledger:
            return

        if self.limit is not None and request.total_cost > self.limit:
            raise ActivityError(
                f"Payment of {request.total_cost} declined for {request.request_id}",
                error_kind="PaymentDeclined"
            )

        self.ledger[request.request_id] = request.total_cost
        logger.info(
            "payment_processed",
            request_id=request.request_id,
            amount=str(request.total_cost)
        )


class SimulatedNotifier:
    """Collects customer notifications in an outbox."""

    def __init__(self):
        self.outbox: List[str] = []

    async def notify(self, notification: Notification) -> None:
        self.outbox.append(notification.message)
        logger.info("customer_notified", message=notification.message)
