"""Wires settings, storage, activities and the saga into an InstanceManager."""

from typing import Optional

from order_saga.activities.interface import ActivityRegistry, build_order_activities
from order_saga.activities.simulated import (
    SimulatedInventory,
    SimulatedNotifier,
    SimulatedPaymentGateway,
)
from order_saga.config import Settings, get_settings
from order_saga.execution.determinism import DeterminismChecker
from order_saga.execution.executor import ReplayExecutor
from order_saga.execution.manager import InstanceManager
from order_saga.storage.backends.memory import InMemoryHistoryLog
from order_saga.storage.backends.sqlite import SQLiteHistoryLog
from order_saga.storage.interface import HistoryLog
from order_saga.workflows import WORKFLOW_NAME, process_order


DEFAULT_STOCK = {"Widget": 100, "Gadget": 25, "Gizmo": 5}


def create_history_log(settings: Settings) -> HistoryLog:
    if settings.storage_backend == "memory":
        return InMemoryHistoryLog()
    if settings.storage_backend == "sqlite":
        return SQLiteHistoryLog(settings.database_url)
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")


def simulated_activities() -> ActivityRegistry:
    return build_order_activities(
        SimulatedInventory(DEFAULT_STOCK),
        SimulatedPaymentGateway(),
        SimulatedNotifier(),
    )


def create_manager(
    settings: Optional[Settings] = None,
    activities: Optional[ActivityRegistry] = None,
    history_log: Optional[HistoryLog] = None
) -> InstanceManager:
    settings = settings or get_settings()
    history_log = history_log or create_history_log(settings)

    executor = ReplayExecutor(
        history_log,
        activities or simulated_activities(),
        process_order,
        workflow_name=WORKFLOW_NAME,
        activity_retry=settings.activity_retry_policy(),
        storage_retry=settings.storage_retry_policy(),
        activity_timeout=settings.activity_timeout,
        determinism_checker=DeterminismChecker(strict=settings.strict_determinism),
        lease_ttl=settings.lease_ttl,
    )
    return InstanceManager(history_log, executor, concurrency=settings.worker_concurrency)
