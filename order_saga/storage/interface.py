"""History log interface."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from order_saga.errors import DuplicateEventError, InstanceNotFound, LeaseLost
from order_saga.storage.events import (
    ACTIVITY_OUTCOME_EVENTS,
    EventType,
    HistoryEvent,
    InstanceStatus,
    Lease,
    WorkflowInstance,
)


class HistoryLog(ABC):
    """Append-only, per-instance ordered store of history events.

    ``append`` must be durable before it returns and must never hand out the
    same ``event_index`` twice for one instance. Backends raise
    ``StorageUnavailable`` when they cannot commit.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the storage backend."""
        pass

    @abstractmethod
    async def append(
        self,
        instance_id: str,
        event: HistoryEvent,
        lease: Optional[Lease] = None
    ) -> HistoryEvent:
        """Commit ``event`` and return it with its index and timestamp.

        With ``lease``, the commit also renews that lease and raises
        ``LeaseLost`` when another owner holds a live one.
        """
        pass

    @abstractmethod
    async def acquire_lease(self, instance_id: str, lease: Lease) -> bool:
        """Take or renew ownership of a Running instance.

        Succeeds when the instance is unowned, already owned by
        ``lease.owner``, or its current lease has expired.
        """
        pass

    @abstractmethod
    async def release_lease(self, instance_id: str, owner: str) -> None:
        """Drop the lease of ``owner``; a lease held by anyone else is kept."""
        pass

    @abstractmethod
    async def read(self, instance_id: str) -> List[HistoryEvent]:
        """Load the ordered history of an instance."""
        pass

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Load the status index entry of an instance."""
        pass

    @abstractmethod
    async def list_instances(
        self,
        status: Optional[InstanceStatus] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[WorkflowInstance]:
        """List instances, oldest first, optionally filtered by status."""
        pass

    @abstractmethod
    async def delete_instance(self, instance_id: str) -> None:
        """Delete the history and index entry of an instance."""
        pass


def validate_append(
    instance_id: str,
    history: Iterable[HistoryEvent],
    event: HistoryEvent
) -> None:
    """Check ``event`` against the committed ``history`` of its instance.

    Shared by the backends so every store enforces the same ordering rules.
    """
    if event.instance_id != instance_id:
        raise ValueError(
            f"Event for {event.instance_id} appended to instance {instance_id}"
        )

    history = list(history)
    if event.event_type == EventType.INSTANCE_CREATED:
        if history:
            raise DuplicateEventError(f"Instance {instance_id} already exists")
        return

    if not history:
        raise InstanceNotFound(instance_id)

    if history[-1].event_type in (EventType.INSTANCE_COMPLETED, EventType.INSTANCE_FAILED):
        raise DuplicateEventError(f"Instance {instance_id} is already finished")

    scheduled = {
        e.sequence_number for e in history
        if e.event_type == EventType.ACTIVITY_SCHEDULED
    }
    resolved = {
        e.sequence_number for e in history
        if e.event_type in ACTIVITY_OUTCOME_EVENTS
    }

    if event.event_type == EventType.ACTIVITY_SCHEDULED:
        expected = max(scheduled, default=0) + 1
        if event.sequence_number != expected:
            raise DuplicateEventError(
                f"Instance {instance_id} expected sequence {expected}, "
                f"got {event.sequence_number}"
            )
    elif event.event_type in ACTIVITY_OUTCOME_EVENTS:
        if event.sequence_number not in scheduled:
            raise DuplicateEventError(
                f"Sequence {event.sequence_number} of {instance_id} was never scheduled"
            )
        if event.sequence_number in resolved:
            raise DuplicateEventError(
                f"Sequence {event.sequence_number} of {instance_id} already has an outcome"
            )


def check_lease(instance: WorkflowInstance, lease: Lease, now: datetime) -> None:
    """Raise ``LeaseLost`` unless ``lease.owner`` may write to ``instance`` at ``now``."""
    if not instance.can_be_leased_by(lease.owner, now):
        raise LeaseLost(
            f"Instance {instance.instance_id} is leased by {instance.owner} "
            f"until {instance.lease_expires_at}"
        )
