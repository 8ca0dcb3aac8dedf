"""Shared helpers for the order saga tests."""

from unittest.mock import AsyncMock

from order_saga.activities.interface import build_order_activities
from order_saga.activities.simulated import (
    SimulatedInventory,
    SimulatedNotifier,
    SimulatedPaymentGateway,
)
from order_saga.execution.determinism import DeterminismChecker
from order_saga.execution.executor import ReplayExecutor
from order_saga.execution.retry import RetryPolicy
from order_saga.models import OrderPayload
from order_saga.storage.backends.memory import InMemoryHistoryLog
from order_saga.storage.events import HistoryEvent
from order_saga.workflows import WORKFLOW_NAME, process_order


FAST_RETRY = RetryPolicy(max_retries=2, initial_delay=0.0, jitter=False)


class Crash(BaseException):
    """Simulates the process dying; not caught by ``except Exception``."""


class Services:
    """Simulated services whose activity methods are wrapped in AsyncMocks."""

    def __init__(self, stock=None, payment_limit=None):
        self.inventory = SimulatedInventory(stock if stock is not None else {"Widget": 10})
        self.payments = SimulatedPaymentGateway(limit=payment_limit)
        self.notifier = SimulatedNotifier()

        self.inventory.reserve = AsyncMock(wraps=self.inventory.reserve)
        self.inventory.update = AsyncMock(wraps=self.inventory.update)
        self.payments.process = AsyncMock(wraps=self.payments.process)
        self.notifier.notify = AsyncMock(wraps=self.notifier.notify)

    def registry(self):
        return build_order_activities(self.inventory, self.payments, self.notifier)

    @property
    def messages(self):
        return self.notifier.outbox

    def call_counts(self):
        return {
            "reserve": self.inventory.reserve.await_count,
            "payment": self.payments.process.await_count,
            "update": self.inventory.update.await_count,
            "notify": self.notifier.notify.await_count,
        }


class CrashingHistoryLog(InMemoryHistoryLog):
    """Commits the ``crash_at``-th append, then dies."""

    def __init__(self, crash_at: int):
        super().__init__()
        self.crash_at = crash_at
        self.appends = 0

    async def append(self, instance_id, event, lease=None):
        committed = await super().append(instance_id, event, lease)
        self.appends += 1
        if self.appends == self.crash_at:
            raise Crash(f"crashed after append {self.appends}")
        return committed


def make_executor(history_log, services, **overrides):
    options = dict(
        workflow_name=WORKFLOW_NAME,
        activity_retry=FAST_RETRY,
        storage_retry=FAST_RETRY,
        determinism_checker=DeterminismChecker(strict=True),
    )
    options.update(overrides)
    return ReplayExecutor(history_log, services.registry(), process_order, **options)


async def seed_instance(history_log, executor, instance_id="order-1", order=None):
    """Append the initial entry of an instance without dispatching it."""
    order = order or OrderPayload(name="Widget", quantity=5, total_cost="50")
    await history_log.append(
        instance_id,
        HistoryEvent.instance_created(
            instance_id, order.model_dump(mode="json"), executor.workflow_version
        )
    )
    return instance_id
