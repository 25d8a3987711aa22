"""Typed attribute and line-item schemas, one pair per business flow.

Header models are validated as a whole by the schema validator. Item models are
validated one record at a time by the action processor so a malformed line
only fails itself.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FlowModel(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


class InventoryItem(FlowModel):
    product_id: str = Field(min_length=1)
    quantity: float
    unit_cost: float | None = Field(default=None, ge=0)
    reason: str | None = None
    notes: str | None = None
    product_name: str | None = None


class InventoryAttributes(FlowModel):
    location_id: str = Field(min_length=1)
    items: list[Any] = Field(min_length=1)
    event_date: datetime | None = None
    event_type: Literal[
        "inventory_adjustment",
        "inventory_count",
        "inventory_damage",
        "inventory_expiry",
    ] | None = None
    status: str | None = None
    external_id: str | None = None
    event_id: str | None = None
    notes: str | None = None


class PurchaseItem(FlowModel):
    product_id: str = Field(min_length=1)
    quantity: float = Field(gt=0)
    unit_cost: float | None = Field(default=None, ge=0)
    product_name: str | None = None


class PurchaseAttributes(FlowModel):
    external_id: str = Field(min_length=1)
    supplier_code: str | None = None
    supplier_name: str | None = None
    location_id: str | None = None
    total_value: float | None = Field(default=None, ge=0)
    issue_date: datetime | None = None
    items: list[Any] = Field(default_factory=list)


class SaleItem(FlowModel):
    product_id: str = Field(min_length=1)
    quantity: float = Field(gt=0)
    unit_price: float | None = Field(default=None, ge=0)
    product_name: str | None = None


class SaleAttributes(FlowModel):
    external_id: str = Field(min_length=1)
    location_id: str = Field(min_length=1)
    customer_id: str | None = None
    customer_name: str | None = None
    total_amount: float | None = Field(default=None, ge=0)
    sale_date: datetime | None = None
    items: list[Any] = Field(default_factory=list)


class TransferItem(FlowModel):
    product_id: str = Field(min_length=1)
    quantity: float = Field(gt=0)


class TransferAttributes(FlowModel):
    external_id: str = Field(min_length=1)
    origin_location_id: str = Field(min_length=1)
    destination_location_id: str = Field(min_length=1)
    items: list[Any] = Field(default_factory=list)

    @model_validator(mode="after")
    def _distinct_locations(self) -> "TransferAttributes":
        if self.origin_location_id == self.destination_location_id:
            raise ValueError("origin_location_id and destination_location_id must differ")
        return self


class ReturnItem(FlowModel):
    product_id: str = Field(min_length=1)
    quantity: float = Field(gt=0)
    reason: str | None = None


class ReturnAttributes(FlowModel):
    external_id: str = Field(min_length=1)
    location_id: str = Field(min_length=1)
    customer_id: str | None = None
    destination_location_id: str | None = None
    reason: str | None = None
    items: list[Any] = Field(default_factory=list)
