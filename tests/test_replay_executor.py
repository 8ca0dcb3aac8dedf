"""
Tests for the deterministic replay executor.

Covers:
- replay of recorded steps without re-invoking activities
- crash/resume at every append point of the saga
- retry of activity faults and timeouts
- retry of storage outages
- divergence detection
- workflow-signalled failure
- ownership leases between competing executors
- replay-safe logging
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from order_saga.errors import ActivityFault, InstanceNotFound, StorageUnavailable, WorkflowFailure
from order_saga.execution.context import ActivityFailure, ActivitySuccess
from order_saga.execution.executor import ReplayExecutor
from order_saga.execution.retry import RetryPolicy
from order_saga.models import InventoryRequest
from order_saga.storage.backends.memory import InMemoryHistoryLog
from order_saga.storage.events import EventType, HistoryEvent, InstanceStatus, Lease
from support import (
    FAST_RETRY,
    Crash,
    CrashingHistoryLog,
    Services,
    make_executor,
    seed_instance,
)


def _activity_events(history):
    return [e for e in history if e.sequence_number is not None]


# ============================================================================
# REPLAY
# ============================================================================

class TestReplay:

    @pytest.mark.asyncio
    async def test_completed_instance_is_not_re_executed(self, history_log, services, executor):
        instance_id = await seed_instance(history_log, executor)
        await executor.run(instance_id)
        counts = services.call_counts()

        instance = await executor.run(instance_id)

        assert instance.status == InstanceStatus.COMPLETED
        assert services.call_counts() == counts

    @pytest.mark.asyncio
    async def test_replay_from_recorded_history_invokes_nothing(self, history_log, services, executor):
        """Replay the steps recorded by one executor with a fresh one."""
        instance_id = await seed_instance(history_log, executor)
        await executor.run(instance_id)
        recorded = await history_log.read(instance_id)

        # Copy everything except the terminal event into a new log
        fresh_log = InMemoryHistoryLog()
        for event in recorded[:-1]:
            await fresh_log.append(instance_id, event)

        fresh_services = Services()
        fresh_executor = make_executor(fresh_log, fresh_services)
        instance = await fresh_executor.run(instance_id)

        assert fresh_services.call_counts() == {"reserve": 0, "payment": 0, "update": 0, "notify": 0}
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.result == {"processed": True}
        replayed = await fresh_log.read(instance_id)
        assert [e.event_type for e in replayed] == [e.event_type for e in recorded]
        assert replayed[-1].data == recorded[-1].data

    @pytest.mark.asyncio
    async def test_unknown_instance(self, executor):
        with pytest.raises(InstanceNotFound):
            await executor.run("missing")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("crash_at", range(2, 11))
    async def test_crash_at_any_append_resumes_without_duplicate_effects(self, crash_at):
        """Crash after every possible append; resume must finish with each step done once."""
        crashing_log = CrashingHistoryLog(crash_at=crash_at)
        services = Services()
        executor = make_executor(crashing_log, services)
        instance_id = await seed_instance(crashing_log, executor)

        with pytest.raises(Crash):
            await executor.run(instance_id)

        # New process: same store, fresh executor, same services behind it
        crashing_log.crash_at = 0
        resumed = make_executor(crashing_log, services)
        instance = await resumed.run(instance_id)

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.result == {"processed": True}
        assert services.inventory.committed.keys() == {instance_id}
        assert services.payments.ledger == {instance_id: services.payments.ledger[instance_id]}
        assert services.messages == [f"Order {instance_id} has completed!"]

        history = await crashing_log.read(instance_id)
        scheduled = [e.sequence_number for e in history if e.event_type == EventType.ACTIVITY_SCHEDULED]
        outcomes = [
            e.sequence_number for e in history
            if e.event_type in (EventType.ACTIVITY_COMPLETED, EventType.ACTIVITY_FAILED)
        ]
        assert scheduled == [1, 2, 3, 4]
        assert outcomes == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_completed_steps_are_not_invoked_after_crash(self):
        """Crash while notifying: the three earlier steps must not run again."""
        services = Services()
        original_notify = services.notifier.notify
        services.notifier.notify = AsyncMock(side_effect=Crash("died mid-call"))
        history_log = InMemoryHistoryLog()
        executor = make_executor(history_log, services)
        instance_id = await seed_instance(history_log, executor)

        with pytest.raises(Crash):
            await executor.run(instance_id)
        assert (await history_log.get_instance(instance_id)).status == InstanceStatus.RUNNING

        services.notifier.notify = original_notify
        before = services.call_counts()
        instance = await make_executor(history_log, services).run(instance_id)
        after = services.call_counts()

        assert instance.status == InstanceStatus.COMPLETED
        assert after["reserve"] == before["reserve"] == 1
        assert after["payment"] == before["payment"] == 1
        assert after["update"] == before["update"] == 1
        assert after["notify"] == 1

        # The interrupted step was resumed, not re-scheduled
        history = await history_log.read(instance_id)
        assert len([e for e in history if e.event_type == EventType.ACTIVITY_SCHEDULED]) == 4


# ============================================================================
# ACTIVITY FAULTS
# ============================================================================

class TestActivityFaults:

    @pytest.mark.asyncio
    async def test_fault_is_retried_then_succeeds(self, history_log, services):
        real_process = services.payments.process
        services.payments.process = AsyncMock(
            side_effect=[ActivityFault("gateway timeout"), ActivityFault("gateway timeout"), None]
        )
        executor = make_executor(history_log, services)
        instance_id = await seed_instance(history_log, executor)

        instance = await executor.run(instance_id)

        assert services.payments.process.await_count == 3
        assert instance.result == {"processed": True}
        history = await history_log.read(instance_id)
        payment_events = [e for e in _activity_events(history) if e.sequence_number == 2]
        assert [e.event_type for e in payment_events] == [
            EventType.ACTIVITY_SCHEDULED,
            EventType.ACTIVITY_COMPLETED,
        ]
        assert real_process.await_count == 0

    @pytest.mark.asyncio
    async def test_exhausted_fault_becomes_activity_failure(self, history_log, services):
        services.inventory.update = AsyncMock(side_effect=ConnectionError("db down"))
        executor = make_executor(history_log, services)
        instance_id = await seed_instance(history_log, executor)

        instance = await executor.run(instance_id)

        # max_retries=2 -> three attempts
        assert services.inventory.update.await_count == 3
        assert instance.result == {"processed": False}
        failed = [e for e in await history_log.read(instance_id) if e.event_type == EventType.ACTIVITY_FAILED]
        assert len(failed) == 1
        assert failed[0].data["error_kind"] == "ActivityFault"
        assert failed[0].data["message"] == "db down"

    @pytest.mark.asyncio
    async def test_slow_activity_times_out(self, history_log, services):
        async def hang(request):
            await asyncio.sleep(10)

        services.inventory.reserve = AsyncMock(side_effect=hang)
        executor = make_executor(
            history_log,
            services,
            activity_timeout=0.01,
            activity_retry=RetryPolicy(max_retries=0, initial_delay=0.0, jitter=False)
        )
        instance_id = await seed_instance(history_log, executor)

        instance = await executor.run(instance_id)

        assert instance.result == {"processed": False}
        assert services.messages == ["Insufficient inventory for Widget"]


# ============================================================================
# STORAGE OUTAGES
# ============================================================================

class FlakyHistoryLog(InMemoryHistoryLog):
    """Fails the first ``failures`` activity appends before committing them."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def append(self, instance_id, event, lease=None):
        if event.event_type == EventType.ACTIVITY_SCHEDULED and self.failures > 0:
            self.failures -= 1
            raise StorageUnavailable("disk unavailable")
        return await super().append(instance_id, event, lease)


class TestStorageOutages:

    @pytest.mark.asyncio
    async def test_append_is_retried(self):
        flaky = FlakyHistoryLog(failures=2)
        services = Services()
        executor = make_executor(flaky, services)
        instance_id = await seed_instance(flaky, executor)

        instance = await executor.run(instance_id)

        assert instance.status == InstanceStatus.COMPLETED
        assert services.call_counts()["reserve"] == 1

    @pytest.mark.asyncio
    async def test_outage_past_budget_leaves_instance_running(self):
        flaky = FlakyHistoryLog(failures=10)
        services = Services()
        executor = make_executor(flaky, services)
        instance_id = await seed_instance(flaky, executor)

        with pytest.raises(StorageUnavailable):
            await executor.run(instance_id)

        # The activity was never invoked because its schedule never committed
        assert services.call_counts()["reserve"] == 0
        assert (await flaky.get_instance(instance_id)).status == InstanceStatus.RUNNING

        flaky.failures = 0
        instance = await make_executor(flaky, services).run(instance_id)
        assert instance.status == InstanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_ambiguous_commit_is_recognised(self):
        """An append that commits but reports failure is not duplicated."""

        class CommitThenFail(InMemoryHistoryLog):
            failed = False

            async def append(self, instance_id, event, lease=None):
                committed = await super().append(instance_id, event, lease)
                if event.event_type == EventType.ACTIVITY_COMPLETED and not self.failed:
                    self.failed = True
                    raise StorageUnavailable("lost ack")
                return committed

        store = CommitThenFail()
        services = Services()
        executor = make_executor(store, services)
        instance_id = await seed_instance(store, executor)

        instance = await executor.run(instance_id)

        assert instance.status == InstanceStatus.COMPLETED
        completed = [e for e in await store.read(instance_id) if e.event_type == EventType.ACTIVITY_COMPLETED]
        assert [e.sequence_number for e in completed] == [1, 2, 3, 4]


# ============================================================================
# DIVERGENCE
# ============================================================================

class TestDivergence:

    @pytest.mark.asyncio
    async def test_history_with_different_activity_fails_instance(self, history_log, services, executor):
        instance_id = await seed_instance(history_log, executor)
        await history_log.append(
            instance_id,
            HistoryEvent.activity_scheduled(instance_id, 1, "ProcessPayment", {"request_id": instance_id})
        )

        instance = await executor.run(instance_id)

        assert instance.status == InstanceStatus.FAILED
        assert "ProcessPayment" in instance.error
        assert services.call_counts()["reserve"] == 0

    @pytest.mark.asyncio
    async def test_history_with_different_request_fails_instance(self, history_log, services, executor):
        instance_id = await seed_instance(history_log, executor)
        await history_log.append(
            instance_id,
            HistoryEvent.activity_scheduled(
                instance_id, 1, "ReserveInventory",
                {"request_id": instance_id, "name": "Widget", "quantity": 99}
            )
        )

        instance = await executor.run(instance_id)

        assert instance.status == InstanceStatus.FAILED
        assert "differs" in instance.error

    @pytest.mark.asyncio
    async def test_changed_workflow_version_fails_in_strict_mode(self, history_log, services, executor):
        await history_log.append(
            "old",
            HistoryEvent.instance_created(
                "old", {"name": "Widget", "quantity": 1, "total_cost": "10"}, "0123456789ab"
            )
        )

        instance = await executor.run("old")

        assert instance.status == InstanceStatus.FAILED
        assert "version" in instance.error


# ============================================================================
# WORKFLOW FAILURE
# ============================================================================

async def reserve_then_give_up(context):
    order = context.input
    await context.call_activity(
        "ReserveInventory",
        InventoryRequest(request_id=context.instance_id, name=order.name, quantity=order.quantity)
    )
    raise WorkflowFailure(f"Order {context.instance_id} cannot be fulfilled")


class TestWorkflowFailure:

    @pytest.mark.asyncio
    async def test_workflow_failure_fails_instance(self, history_log, services):
        executor = ReplayExecutor(
            history_log, services.registry(), reserve_then_give_up,
            activity_retry=FAST_RETRY, storage_retry=FAST_RETRY
        )
        instance_id = await seed_instance(history_log, executor)

        instance = await executor.run(instance_id)

        assert instance.status == InstanceStatus.FAILED
        assert "cannot be fulfilled" in instance.error
        history = await history_log.read(instance_id)
        assert history[-1].event_type == EventType.INSTANCE_FAILED
        assert history[-1].data["error_type"] == "WorkflowFailure"

        # A failed instance is final; nothing runs again
        again = await executor.run(instance_id)
        assert again.status == InstanceStatus.FAILED
        assert services.call_counts()["reserve"] == 1


# ============================================================================
# OWNERSHIP LEASE
# ============================================================================

class RivalWriter(InMemoryHistoryLog):
    """Lets a competing writer commit the payment step's schedule first."""

    def __init__(self):
        super().__init__()
        self.rival_wrote = False

    async def append(self, instance_id, event, lease=None):
        if (event.event_type == EventType.ACTIVITY_SCHEDULED
                and event.sequence_number == 2 and not self.rival_wrote):
            self.rival_wrote = True
            await super().append(instance_id, event)
        return await super().append(instance_id, event, lease)


class TestOwnershipLease:

    @pytest.mark.asyncio
    async def test_live_lease_held_elsewhere_blocks_run(self, history_log, services, executor):
        instance_id = await seed_instance(history_log, executor)
        assert await history_log.acquire_lease(instance_id, Lease("other-process", ttl=60))

        instance = await executor.run(instance_id)

        assert instance.status == InstanceStatus.RUNNING
        assert instance.owner == "other-process"
        assert services.call_counts() == {"reserve": 0, "payment": 0, "update": 0, "notify": 0}
        assert len(await history_log.read(instance_id)) == 1

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, history_log, services, executor):
        instance_id = await seed_instance(history_log, executor)
        assert await history_log.acquire_lease(instance_id, Lease("crashed-process", ttl=0))

        instance = await executor.run(instance_id)

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.owner is None

    @pytest.mark.asyncio
    async def test_duplicate_append_abandons_run(self):
        """A step committed by another writer leaves the instance Running, not Failed."""
        store = RivalWriter()
        services = Services()
        executor = make_executor(store, services)
        instance_id = await seed_instance(store, executor)

        instance = await executor.run(instance_id)

        assert instance.status == InstanceStatus.RUNNING
        assert instance.owner is None
        history = await store.read(instance_id)
        assert EventType.INSTANCE_FAILED not in [e.event_type for e in history]
        assert services.call_counts()["payment"] == 0

        resumed = await executor.run(instance_id)

        assert resumed.status == InstanceStatus.COMPLETED
        assert resumed.result == {"processed": True}
        assert services.call_counts() == {"reserve": 1, "payment": 1, "update": 1, "notify": 1}
        scheduled = [
            e.sequence_number for e in await store.read(instance_id)
            if e.event_type == EventType.ACTIVITY_SCHEDULED
        ]
        assert scheduled == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_lease_is_renewed_while_activity_runs(self, history_log):
        services = Services()
        started = asyncio.Event()
        release = asyncio.Event()
        charge = services.payments.process

        async def slow_payment(request):
            started.set()
            await release.wait()
            return await charge(request)

        services.payments.process = AsyncMock(side_effect=slow_payment)
        executor = make_executor(history_log, services, lease_ttl=0.3)
        instance_id = await seed_instance(history_log, executor)

        task = asyncio.create_task(executor.run(instance_id))
        await asyncio.wait_for(started.wait(), timeout=5)
        await asyncio.sleep(0.6)
        taken = await history_log.acquire_lease(instance_id, Lease("other-process", ttl=60))
        release.set()
        instance = await asyncio.wait_for(task, timeout=5)

        assert not taken
        assert instance.result == {"processed": True}


# ============================================================================
# CONTEXT
# ============================================================================

class TestOrchestrationContext:

    @pytest.mark.asyncio
    async def test_is_replaying_tracks_recorded_steps(self, history_log, services):
        observed = []

        async def recording_workflow(context):
            observed.append(context.is_replaying)
            outcome = await context.call_activity("ReserveInventory", None)
            observed.append(context.is_replaying)
            assert outcome.value.success
            return None

        registry = services.registry()
        executor = ReplayExecutor(history_log, registry, recording_workflow, activity_retry=RetryPolicy(0, 0.0, jitter=False))
        instance_id = await seed_instance(history_log, executor)
        await history_log.append(
            instance_id, HistoryEvent.activity_scheduled(instance_id, 1, "ReserveInventory", None)
        )
        await history_log.append(
            instance_id, HistoryEvent.activity_completed(instance_id, 1, {"success": True})
        )

        await executor.run(instance_id)

        assert observed == [True, False]
        assert services.call_counts()["reserve"] == 0

    def test_outcome_types(self):
        assert ActivitySuccess(1).succeeded is True
        failure = ActivityFailure("PaymentDeclined", "no funds")
        assert failure.succeeded is False
        assert failure.error_kind == "PaymentDeclined"
