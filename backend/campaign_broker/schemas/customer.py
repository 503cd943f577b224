"""Customer representations: import rows from the bus and preview output."""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class CustomerImportRow(BaseModel):
    """One ``customer.bulk.create`` row; camelCase and snake_case keys are accepted."""

    model_config = ConfigDict(
        extra="ignore", str_strip_whitespace=True, coerce_numbers_to_str=True
    )

    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    phone: Optional[str] = Field(None, max_length=60)
    location: Optional[str] = Field(None, max_length=255)
    total_spend: float = Field(0, validation_alias=AliasChoices("totalSpend", "total_spend"))
    order_count: int = Field(0, ge=0, validation_alias=AliasChoices("orderCount", "order_count"))
    last_order_date: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("lastOrderDate", "last_order_date")
    )
    is_active: bool = Field(True, validation_alias=AliasChoices("isActive", "is_active"))
    tags: Optional[List[str]] = None

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("last_order_date")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class CustomerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    phone: Optional[str] = None
    location: Optional[str] = None
    total_spend: float = Field(0, serialization_alias="totalSpend")
    order_count: int = Field(0, serialization_alias="orderCount")
    last_order_date: Optional[datetime] = Field(None, serialization_alias="lastOrderDate")
    is_active: bool = Field(True, serialization_alias="isActive")
    tags: Optional[List[str]] = None
