"""Order fulfillment saga.

Reserve inventory, take payment, commit inventory, notify the customer.
A failed payment or inventory commit ends the order with a refund notice;
there is no payment reversal activity, the refund is communicated only.
"""

from order_saga.activities.interface import (
    NOTIFY_CUSTOMER,
    PROCESS_PAYMENT,
    RESERVE_INVENTORY,
    UPDATE_INVENTORY,
)
from order_saga.execution.context import OrchestrationContext
from order_saga.models import (
    InventoryRequest,
    Notification,
    OrderResult,
    PaymentRequest,
)


WORKFLOW_NAME = "OrderProcessingOrchestration"


async def notify_customer(context: OrchestrationContext, message: str) -> None:
    """Best effort: a failed notification is logged and the saga carries on."""
    outcome = await context.call_activity(NOTIFY_CUSTOMER, Notification(message=message))
    if not outcome.succeeded:
        context.logger.warning(
            "customer_notification_failed",
            error_kind=outcome.error_kind,
            error=outcome.message
        )


async def refund_order(context: OrchestrationContext, failed_step: str) -> OrderResult:
    context.logger.warning("order_rolled_back", failed_step=failed_step)
    await notify_customer(
        context, f"Order {context.instance_id} Failed! You are now getting a refund"
    )
    return OrderResult(processed=False)


async def process_order(context: OrchestrationContext) -> OrderResult:
    order = context.input
    order_id = context.instance_id
    context.logger.info("order_processing_started", item=order.name, quantity=order.quantity)

    reservation = await context.call_activity(
        RESERVE_INVENTORY,
        InventoryRequest(request_id=order_id, name=order.name, quantity=order.quantity)
    )
    # An unreachable inventory service is treated like missing stock
    if not reservation.succeeded or not reservation.value.success:
        await notify_customer(context, f"Insufficient inventory for {order.name}")
        return OrderResult(processed=False)

    payment = PaymentRequest(
        request_id=order_id,
        name=order.name,
        quantity=order.quantity,
        total_cost=order.total_cost
    )

    charged = await context.call_activity(PROCESS_PAYMENT, payment)
    if not charged.succeeded:
        return await refund_order(context, PROCESS_PAYMENT)

    committed = await context.call_activity(UPDATE_INVENTORY, payment)
    if not committed.succeeded:
        return await refund_order(context, UPDATE_INVENTORY)

    await notify_customer(context, f"Order {order_id} has completed!")
    context.logger.info("order_processing_completed")
    return OrderResult(processed=True)
