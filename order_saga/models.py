"""Value records passed between the gateway, the saga and its activities."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Record(BaseModel):
    """Immutable record; accepts both snake_case and camelCase keys."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class OrderPayload(_Record):
    """Input of one order fulfillment instance."""
    name: str
    quantity: int = Field(gt=0, strict=True)
    total_cost: Decimal = Field(alias="totalCost", gt=0)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("name must not be empty")
        return value


class InventoryRequest(_Record):
    request_id: str = Field(alias="requestId")
    name: str
    quantity: int


class PaymentRequest(_Record):
    request_id: str = Field(alias="requestId")
    name: str
    quantity: int
    total_cost: Decimal = Field(alias="totalCost")


class Notification(_Record):
    message: str


class InventoryResult(_Record):
    success: bool


class OrderResult(_Record):
    processed: bool


def dump_record(record: Optional[BaseModel]) -> Optional[dict]:
    """Serialize a record into the JSON-safe form stored in history."""
    if record is None:
        return None
    return record.model_dump(mode="json")
