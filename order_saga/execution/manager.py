"""Orchestration instance manager."""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog

from order_saga.errors import InstanceNotFound, StorageUnavailable
from order_saga.execution.executor import ReplayExecutor
from order_saga.models import OrderPayload, dump_record
from order_saga.storage.events import HistoryEvent, InstanceStatus, WorkflowInstance
from order_saga.storage.interface import HistoryLog


logger = structlog.get_logger(__name__)


class InstanceManager:
    """Creates instances, dispatches them to the executor and answers queries."""

    def __init__(
        self,
        history_log: HistoryLog,
        executor: ReplayExecutor,
        concurrency: int = 10
    ):
        self.history_log = history_log
        self.executor = executor
        self.concurrency = concurrency
        self._slots = asyncio.Semaphore(concurrency)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False

    async def start(self) -> None:
        """Open the history log and resume instances left Running."""
        await self.history_log.initialize()
        self._running = True
        resumed = await self.resume_pending()
        logger.info("instance_manager_started", resumed=resumed)

    async def stop(self) -> None:
        """Cancel in-flight runs; their instances resume on next start."""
        self._running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.history_log.close()
        logger.info("instance_manager_stopped")

    async def create_instance(self, order: OrderPayload) -> str:
        """Persist a new instance and schedule it; does not wait for it."""
        instance_id = uuid.uuid4().hex
        event = HistoryEvent.instance_created(
            instance_id, dump_record(order), self.executor.workflow_version
        )
        await self.history_log.append(instance_id, event)

        logger.info(
            "instance_created",
            instance_id=instance_id,
            workflow=self.executor.workflow_name,
            item=order.name
        )

        self.dispatch(instance_id)
        return instance_id

    def dispatch(self, instance_id: str) -> bool:
        """Start an executor run for ``instance_id`` unless one is in flight."""
        if not self._running:
            logger.warning("dispatch_skipped_not_running", instance_id=instance_id)
            return False
        if instance_id in self._tasks:
            return False

        task = asyncio.create_task(self._run(instance_id))
        self._tasks[instance_id] = task
        task.add_done_callback(lambda t: self._forget(instance_id, t))
        return True

    def _forget(self, instance_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(instance_id) is task:
            del self._tasks[instance_id]

    async def _run(self, instance_id: str) -> Optional[WorkflowInstance]:
        async with self._slots:
            try:
                return await self.executor.run(instance_id)
            except StorageUnavailable as e:
                logger.error("instance_run_suspended", instance_id=instance_id, error=str(e))
            except Exception as e:
                logger.error(
                    "instance_run_error",
                    instance_id=instance_id,
                    error=str(e),
                    error_type=type(e).__name__
                )
            return None

    async def resume_pending(self, batch_size: int = 100) -> int:
        """Dispatch every Running instance no other process holds a live lease on."""
        resumed = 0
        offset = 0
        while True:
            batch = await self.history_log.list_instances(
                status=InstanceStatus.RUNNING, limit=batch_size, offset=offset
            )
            now = datetime.now(timezone.utc)
            for instance in batch:
                if not instance.can_be_leased_by(self.executor.owner, now):
                    logger.debug(
                        "instance_resume_skipped",
                        instance_id=instance.instance_id,
                        leased_by=instance.owner
                    )
                    continue
                if self.dispatch(instance.instance_id):
                    resumed += 1
            if len(batch) < batch_size:
                return resumed
            offset += batch_size

    async def get_status(self, instance_id: str) -> WorkflowInstance:
        instance = await self.history_log.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def get_history(self, instance_id: str) -> List[HistoryEvent]:
        history = await self.history_log.read(instance_id)
        if not history:
            raise InstanceNotFound(instance_id)
        return history

    async def list_instances(
        self,
        status: Optional[InstanceStatus] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[WorkflowInstance]:
        return await self.history_log.list_instances(status=status, limit=limit, offset=offset)

    async def wait_for_completion(
        self,
        instance_id: str,
        timeout: Optional[float] = None,
        poll_interval: float = 0.05
    ) -> WorkflowInstance:
        """Poll until the instance is terminal; ``asyncio.TimeoutError`` on timeout."""
        async def _poll() -> WorkflowInstance:
            while True:
                task = self._tasks.get(instance_id)
                if task is not None:
                    await asyncio.wait({task})
                instance = await self.get_status(instance_id)
                if instance.status.is_terminal:
                    return instance
                await asyncio.sleep(poll_interval)

        return await asyncio.wait_for(_poll(), timeout)

    @property
    def active_instances(self) -> List[str]:
        return list(self._tasks)
