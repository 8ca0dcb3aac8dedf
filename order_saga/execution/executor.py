"""Deterministic replay executor."""

import asyncio
import os
import socket
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import structlog
from pydantic import BaseModel

from order_saga.activities.interface import ActivityDefinition, ActivityRegistry
from order_saga.errors import (
    ActivityError,
    DuplicateEventError,
    InstanceNotFound,
    LeaseLost,
    NonDeterministicError,
    StorageUnavailable,
)
from order_saga.execution.context import (
    ActivityFailure,
    ActivityOutcome,
    ActivitySuccess,
    OrchestrationContext,
    ReplayCursor,
)
from order_saga.execution.determinism import DeterminismChecker, WorkflowFingerprint
from order_saga.execution.retry import RetryPolicy
from order_saga.models import OrderPayload, dump_record
from order_saga.storage.events import EventType, HistoryEvent, Lease, WorkflowInstance
from order_saga.storage.interface import HistoryLog


logger = structlog.get_logger(__name__)


WorkflowFunc = Callable[[OrchestrationContext], Awaitable[Any]]

FAULT_KIND = "ActivityFault"


def _to_payload(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return dump_record(value)
    return value


class ReplayExecutor:
    """Runs a workflow function against an instance's history.

    Each activity call is answered from history when an outcome is recorded
    for its sequence number, otherwise the activity is invoked and its
    outcome committed to the log before workflow code sees it. Only one run
    per instance is active at a time: runs in this process serialize on an
    asyncio lock, and runs in other processes are fenced off by the ownership
    lease every append renews.
    """

    def __init__(
        self,
        history_log: HistoryLog,
        activities: ActivityRegistry,
        workflow: WorkflowFunc,
        workflow_name: Optional[str] = None,
        activity_retry: Optional[RetryPolicy] = None,
        storage_retry: Optional[RetryPolicy] = None,
        activity_timeout: Optional[float] = None,
        determinism_checker: Optional[DeterminismChecker] = None,
        lease_ttl: float = 60.0,
        owner: Optional[str] = None
    ):
        self.history_log = history_log
        self.activities = activities
        self.workflow = workflow
        self.workflow_name = workflow_name or workflow.__name__
        self.activity_retry = activity_retry or RetryPolicy()
        self.storage_retry = storage_retry or RetryPolicy(max_retries=5, initial_delay=0.1)
        self.activity_timeout = activity_timeout
        self.determinism_checker = determinism_checker or DeterminismChecker()
        self.fingerprint: WorkflowFingerprint = self.determinism_checker.register_workflow(
            self.workflow_name, workflow
        )
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.lease = Lease(owner=self.owner, ttl=lease_ttl)

        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock_users: Dict[str, int] = defaultdict(int)

    @property
    def workflow_version(self) -> str:
        return self.fingerprint.version

    @asynccontextmanager
    async def _instance_lock(self, instance_id: str) -> AsyncIterator[None]:
        self._lock_users[instance_id] += 1
        try:
            async with self._locks[instance_id]:
                yield
        finally:
            self._lock_users[instance_id] -= 1
            if not self._lock_users[instance_id]:
                del self._lock_users[instance_id]
                self._locks.pop(instance_id, None)

    async def run(self, instance_id: str) -> WorkflowInstance:
        """Replay and advance ``instance_id`` until its workflow returns.

        The run holds the instance's ownership lease throughout; when another
        process holds a live lease the current snapshot is returned untouched.
        Raises ``StorageUnavailable`` when the log stays unavailable past the
        storage retry budget; the instance is then left Running so a later
        run resumes it.
        """
        async with self._instance_lock(instance_id):
            instance = await self.history_log.get_instance(instance_id)
            if instance is None:
                raise InstanceNotFound(instance_id)
            if instance.status.is_terminal:
                return instance

            log = logger.bind(instance_id=instance_id, workflow=self.workflow_name, owner=self.owner)
            if not await self.history_log.acquire_lease(instance_id, self.lease):
                log.info("instance_leased_elsewhere", leased_by=instance.owner)
                return await self.history_log.get_instance(instance_id)

            heartbeat = asyncio.create_task(self._keep_lease(instance_id, log))
            try:
                await self._advance(instance_id, instance, log)
            except (LeaseLost, DuplicateEventError) as e:
                # Another owner wrote to this history; leave the instance to it
                log.warning("instance_run_abandoned", error=str(e), error_type=type(e).__name__)
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
                await self._release_lease(instance_id, log)

            return await self.history_log.get_instance(instance_id)

    async def _advance(self, instance_id: str, instance: WorkflowInstance, log) -> None:
        history = await self.history_log.read(instance_id)
        cursor = ReplayCursor(history)
        log.info(
            "instance_picked_up",
            history_events=len(history),
            recorded_steps=cursor.resolved_steps
        )

        try:
            self.determinism_checker.check_version(
                instance_id, cursor.workflow_version, self.workflow_version
            )
            context = OrchestrationContext(
                instance_id,
                OrderPayload.model_validate(instance.input),
                cursor,
                self._schedule
            )
            result = await self.workflow(context)
            cursor.ensure_consumed(instance_id)
        except StorageUnavailable:
            log.error("instance_suspended_storage_unavailable")
            raise
        except (LeaseLost, DuplicateEventError):
            raise
        except NonDeterministicError as e:
            log.error("instance_non_deterministic", error=str(e))
            await self._append(
                HistoryEvent.instance_failed(instance_id, str(e), type(e).__name__)
            )
        except Exception as e:
            log.error("instance_failed", error=str(e), error_type=type(e).__name__)
            await self._append(
                HistoryEvent.instance_failed(instance_id, str(e), type(e).__name__)
            )
        else:
            await self._append(
                HistoryEvent.instance_completed(instance_id, _to_payload(result))
            )
            log.info("instance_completed", result=_to_payload(result))

    async def _keep_lease(self, instance_id: str, log) -> None:
        """Renew the lease while activities run between appends."""
        while True:
            await asyncio.sleep(self.lease.ttl / 3)
            try:
                if not await self.history_log.acquire_lease(instance_id, self.lease):
                    log.warning("instance_lease_lost")
                    return
            except StorageUnavailable as e:
                log.warning("instance_lease_renewal_failed", error=str(e))

    async def _release_lease(self, instance_id: str, log) -> None:
        try:
            await self.history_log.release_lease(instance_id, self.owner)
        except StorageUnavailable as e:
            # The lease then lapses after its ttl
            log.warning("instance_lease_release_failed", error=str(e))

    async def _schedule(
        self,
        context: OrchestrationContext,
        sequence_number: int,
        name: str,
        request: Any
    ) -> ActivityOutcome:
        definition = self.activities.get(name)
        request_payload = _to_payload(request)
        log = logger.bind(
            instance_id=context.instance_id,
            activity=name,
            sequence_number=sequence_number
        )

        recorded = context.cursor.recorded(sequence_number)
        if recorded is not None:
            scheduled, outcome = recorded
            self.determinism_checker.check_replayed_call(scheduled, name, request_payload)
            if outcome is not None:
                log.debug("activity_replayed", event_type=outcome.event_type.value)
                return self._outcome_from_event(definition, outcome)
            # Scheduled before a crash but never resolved: invoke again
            log.info("activity_resumed")
        else:
            await self._append(
                HistoryEvent.activity_scheduled(
                    context.instance_id, sequence_number, name, request_payload
                )
            )

        outcome = await self._invoke(definition, request, log)
        if outcome.succeeded:
            event = HistoryEvent.activity_completed(
                context.instance_id, sequence_number, _to_payload(outcome.value)
            )
        else:
            event = HistoryEvent.activity_failed(
                context.instance_id, sequence_number, outcome.error_kind, outcome.message
            )

        committed = await self._append(event)
        return self._outcome_from_event(definition, committed)

    def _outcome_from_event(
        self,
        definition: ActivityDefinition,
        event: HistoryEvent
    ) -> ActivityOutcome:
        if event.event_type == EventType.ACTIVITY_COMPLETED:
            return ActivitySuccess(definition.decode_result(event.data.get("result")))
        return ActivityFailure(
            error_kind=event.data.get("error_kind", FAULT_KIND),
            message=event.data.get("message", "")
        )

    async def _invoke(self, definition: ActivityDefinition, request: Any, log) -> ActivityOutcome:
        """Call the activity, retrying faults with backoff."""
        attempt = 0
        while True:
            try:
                if self.activity_timeout is not None:
                    value = await asyncio.wait_for(definition.func(request), self.activity_timeout)
                else:
                    value = await definition.func(request)
                log.info("activity_completed", attempts=attempt + 1)
                return ActivitySuccess(value)
            except ActivityError as e:
                log.info("activity_failed", error_kind=e.error_kind, error=str(e))
                return ActivityFailure(error_kind=e.error_kind, message=str(e))
            except Exception as e:
                if attempt >= self.activity_retry.max_retries:
                    log.error(
                        "activity_retries_exhausted",
                        attempts=attempt + 1,
                        error=str(e),
                        error_type=type(e).__name__
                    )
                    return ActivityFailure(error_kind=FAULT_KIND, message=str(e) or type(e).__name__)

                log.warning(
                    "activity_fault_retrying",
                    attempt=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__
                )
                await self.activity_retry.wait(attempt)
                attempt += 1

    async def _append(self, event: HistoryEvent) -> HistoryEvent:
        """Append with backoff on ``StorageUnavailable``."""
        attempt = 0
        while True:
            try:
                return await self.history_log.append(event.instance_id, event, lease=self.lease)
            except StorageUnavailable as e:
                if attempt >= self.storage_retry.max_retries:
                    raise
                logger.warning(
                    "history_append_retrying",
                    instance_id=event.instance_id,
                    event_type=event.event_type.value,
                    attempt=attempt + 1,
                    error=str(e)
                )
                await self.storage_retry.wait(attempt)
                attempt += 1
            except DuplicateEventError:
                # A failed attempt may have committed before reporting the error
                if attempt == 0:
                    raise
                existing = await self._find_committed(event)
                if existing is None:
                    raise
                return existing

    async def _find_committed(self, event: HistoryEvent) -> Optional[HistoryEvent]:
        for committed in await self.history_log.read(event.instance_id):
            if (committed.event_type == event.event_type
                    and committed.sequence_number == event.sequence_number
                    and committed.data == event.data):
                return committed
        return None
