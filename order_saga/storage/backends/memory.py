"""In-process history log, used by tests and ``storage_backend=memory``."""

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from order_saga.storage.events import (
    EventType,
    HistoryEvent,
    InstanceStatus,
    Lease,
    WorkflowInstance,
)
from order_saga.storage.interface import HistoryLog, check_lease, validate_append


class InMemoryHistoryLog(HistoryLog):
    """Keeps histories in dictionaries; nothing survives the process."""

    def __init__(self):
        self._events: Dict[str, List[HistoryEvent]] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def append(
        self,
        instance_id: str,
        event: HistoryEvent,
        lease: Optional[Lease] = None
    ) -> HistoryEvent:
        async with self._locks[instance_id]:
            history = self._events.get(instance_id, [])
            validate_append(instance_id, history, event)

            now = datetime.now(timezone.utc)
            if lease is not None and event.event_type != EventType.INSTANCE_CREATED:
                check_lease(self._instances[instance_id], lease, now)

            committed = event.committed(len(history), now)

            if event.event_type == EventType.INSTANCE_CREATED:
                instance = WorkflowInstance(
                    instance_id=instance_id,
                    status=InstanceStatus.RUNNING,
                    input=event.data["input"],
                    created_at=now,
                    updated_at=now,
                )
            else:
                instance = self._instances[instance_id].apply(committed)
                if lease is not None and not instance.status.is_terminal:
                    instance = instance.leased(lease.owner, lease.expires_at(now))

            self._instances[instance_id] = instance
            self._events[instance_id] = history + [committed]
            return committed

    async def acquire_lease(self, instance_id: str, lease: Lease) -> bool:
        async with self._locks[instance_id]:
            instance = self._instances.get(instance_id)
            now = datetime.now(timezone.utc)
            if instance is None or not instance.can_be_leased_by(lease.owner, now):
                return False
            self._instances[instance_id] = instance.leased(lease.owner, lease.expires_at(now))
            return True

    async def release_lease(self, instance_id: str, owner: str) -> None:
        async with self._locks[instance_id]:
            instance = self._instances.get(instance_id)
            if instance is not None and instance.owner == owner:
                self._instances[instance_id] = instance.leased(None, None)

    async def read(self, instance_id: str) -> List[HistoryEvent]:
        return list(self._events.get(instance_id, []))

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return self._instances.get(instance_id)

    async def list_instances(
        self,
        status: Optional[InstanceStatus] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[WorkflowInstance]:
        instances = sorted(self._instances.values(), key=lambda i: i.created_at)
        if status is not None:
            instances = [i for i in instances if i.status == status]
        return instances[offset:offset + limit]

    async def delete_instance(self, instance_id: str) -> None:
        async with self._locks[instance_id]:
            self._events.pop(instance_id, None)
            self._instances.pop(instance_id, None)
        self._locks.pop(instance_id, None)
