"""History event and instance snapshot definitions."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional


class EventType(Enum):
    """History event types."""
    INSTANCE_CREATED = "instance_created"
    ACTIVITY_SCHEDULED = "activity_scheduled"
    ACTIVITY_COMPLETED = "activity_completed"
    ACTIVITY_FAILED = "activity_failed"
    INSTANCE_COMPLETED = "instance_completed"
    INSTANCE_FAILED = "instance_failed"


ACTIVITY_OUTCOME_EVENTS = frozenset({
    EventType.ACTIVITY_COMPLETED,
    EventType.ACTIVITY_FAILED,
})


class InstanceStatus(Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceStatus.RUNNING


STATUS_TRANSITIONS = {
    EventType.INSTANCE_CREATED: InstanceStatus.RUNNING,
    EventType.INSTANCE_COMPLETED: InstanceStatus.COMPLETED,
    EventType.INSTANCE_FAILED: InstanceStatus.FAILED,
}


@dataclass(frozen=True)
class HistoryEvent:
    """One committed entry of an instance's history.

    ``event_index`` and ``timestamp`` are assigned by the history log on
    append; callers build events with the defaults.
    """
    instance_id: str
    event_type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    sequence_number: Optional[int] = None
    event_index: int = 0
    timestamp: Optional[datetime] = None

    @classmethod
    def instance_created(
        cls,
        instance_id: str,
        order: Dict[str, Any],
        workflow_version: Optional[str] = None
    ) -> "HistoryEvent":
        return cls(
            instance_id,
            EventType.INSTANCE_CREATED,
            {"input": order, "workflow_version": workflow_version}
        )

    @classmethod
    def activity_scheduled(
        cls,
        instance_id: str,
        sequence_number: int,
        activity_name: str,
        request: Optional[Dict[str, Any]]
    ) -> "HistoryEvent":
        return cls(
            instance_id,
            EventType.ACTIVITY_SCHEDULED,
            {"activity_name": activity_name, "request": request},
            sequence_number=sequence_number
        )

    @classmethod
    def activity_completed(
        cls,
        instance_id: str,
        sequence_number: int,
        result: Any
    ) -> "HistoryEvent":
        return cls(
            instance_id,
            EventType.ACTIVITY_COMPLETED,
            {"result": result},
            sequence_number=sequence_number
        )

    @classmethod
    def activity_failed(
        cls,
        instance_id: str,
        sequence_number: int,
        error_kind: str,
        message: str
    ) -> "HistoryEvent":
        return cls(
            instance_id,
            EventType.ACTIVITY_FAILED,
            {"error_kind": error_kind, "message": message},
            sequence_number=sequence_number
        )

    @classmethod
    def instance_completed(cls, instance_id: str, result: Dict[str, Any]) -> "HistoryEvent":
        return cls(instance_id, EventType.INSTANCE_COMPLETED, {"result": result})

    @classmethod
    def instance_failed(cls, instance_id: str, error: str, error_type: str) -> "HistoryEvent":
        return cls(
            instance_id,
            EventType.INSTANCE_FAILED,
            {"error": error, "error_type": error_type}
        )

    def committed(self, event_index: int, timestamp: datetime) -> "HistoryEvent":
        return replace(self, event_index=event_index, timestamp=timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "event_type": self.event_type.value,
            "event_index": self.event_index,
            "sequence_number": self.sequence_number,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "data": self.data,
        }


@dataclass(frozen=True)
class Lease:
    """Ownership claim a process holds on a Running instance while it executes it."""
    owner: str
    ttl: float

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.ttl)


@dataclass(frozen=True)
class WorkflowInstance:
    """Status index entry for one instance."""
    instance_id: str
    status: InstanceStatus
    input: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    def apply(self, event: HistoryEvent) -> "WorkflowInstance":
        """Return the snapshot after ``event`` is committed."""
        status = STATUS_TRANSITIONS.get(event.event_type, self.status)
        snapshot = replace(
            self,
            status=status,
            result=event.data.get("result") if event.event_type == EventType.INSTANCE_COMPLETED else self.result,
            error=event.data.get("error") if event.event_type == EventType.INSTANCE_FAILED else self.error,
            updated_at=event.timestamp,
        )
        if status.is_terminal:
            return snapshot.leased(None, None)
        return snapshot

    def leased(self, owner: Optional[str], expires_at: Optional[datetime]) -> "WorkflowInstance":
        return replace(self, owner=owner, lease_expires_at=expires_at)

    def lease_is_live(self, now: datetime) -> bool:
        return (
            self.owner is not None
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )

    def can_be_leased_by(self, owner: str, now: datetime) -> bool:
        """Running, and either unowned, already ours, or with an expired lease."""
        if self.status.is_terminal:
            return False
        return self.owner == owner or not self.lease_is_live(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "status": self.status.value,
            "input": self.input,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
