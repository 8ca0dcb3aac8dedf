"""Pydantic models for the REST gateway."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from order_saga.errors import ValidationError
from order_saga.models import OrderPayload
from order_saga.storage.events import HistoryEvent, WorkflowInstance


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class OrderAccepted(_CamelModel):
    """202 response to an order submission."""
    instance_id: str = Field(alias="instanceId")
    status_query_get_uri: str = Field(alias="statusQueryGetUri")
    history_query_get_uri: str = Field(alias="historyQueryGetUri")


class OrderStatus(_CamelModel):
    instance_id: str = Field(alias="instanceId")
    status: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> "OrderStatus":
        return cls(
            instance_id=instance.instance_id,
            status=instance.status.value,
            result=instance.result,
            error=instance.error,
            created_at=instance.created_at,
            updated_at=instance.updated_at
        )


class HistoryEntry(_CamelModel):
    event_index: int = Field(alias="eventIndex")
    event_type: str = Field(alias="eventType")
    sequence_number: Optional[int] = Field(default=None, alias="sequenceNumber")
    timestamp: Optional[datetime] = None
    data: Dict[str, Any]

    @classmethod
    def from_event(cls, event: HistoryEvent) -> "HistoryEntry":
        return cls(
            event_index=event.event_index,
            event_type=event.event_type.value,
            sequence_number=event.sequence_number,
            timestamp=event.timestamp,
            data=event.data
        )


class OrderHistory(_CamelModel):
    instance_id: str = Field(alias="instanceId")
    events: List[HistoryEntry]


def parse_order(body: Any) -> OrderPayload:
    """Convert a decoded request body into an order, or raise ``ValidationError``."""
    if not isinstance(body, dict):
        raise ValidationError("Order payload must be a JSON object")
    try:
        return OrderPayload.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e
