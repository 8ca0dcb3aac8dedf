"""Worker runner: resumes Running instances found in the history log."""

import asyncio
import uuid
from typing import Optional

import structlog

from order_saga.execution.manager import InstanceManager


logger = structlog.get_logger(__name__)


class WorkerRunner:
    """Polls the status index and dispatches every Running instance.

    Instances left Running by a crashed process are picked up here and
    fast-forwarded through their recorded history by the executor.
    """

    def __init__(
        self,
        manager: InstanceManager,
        worker_id: Optional[str] = None,
        poll_interval: float = 5.0
    ):
        self.manager = manager
        self.worker_id = worker_id or str(uuid.uuid4())
        self.poll_interval = poll_interval
        self._running = False
        self._stopped = asyncio.Event()

    async def run(self) -> None:
        """Run the worker until ``stop`` is called."""
        self._running = True
        self._stopped.clear()
        await self.manager.start()

        heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        try:
            while self._running:
                dispatched = await self.poll_once()
                if dispatched:
                    logger.info("instances_dispatched", worker_id=self.worker_id, count=dispatched)
                try:
                    await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            heartbeat_task.cancel()
            await self.manager.stop()

    async def poll_once(self) -> int:
        """Dispatch Running instances not already in flight."""
        try:
            return await self.manager.resume_pending()
        except Exception as e:
            logger.error(
                "worker_poll_failed",
                worker_id=self.worker_id,
                error=str(e),
                error_type=type(e).__name__
            )
            return 0

    async def stop(self) -> None:
        """Stop the worker."""
        logger.info("worker_stopping", worker_id=self.worker_id)
        self._running = False
        self._stopped.set()

    async def _heartbeat_loop(self) -> None:
        """Send periodic heartbeats."""
        while self._running:
            logger.debug(
                "worker_heartbeat",
                worker_id=self.worker_id,
                active_instances=len(self.manager.active_instances)
            )
            await asyncio.sleep(30)
