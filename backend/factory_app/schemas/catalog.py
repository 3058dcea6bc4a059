"""Catalog schemas."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class UnitResponse(BaseModel):
    id: int
    name: str
    abbreviation: str

    model_config = {"from_attributes": True}


class InventoryItemResponse(BaseModel):
    id: int
    name: str
    sku: Optional[str] = None
    unit_id: Optional[int] = None
    unit: Optional[UnitResponse] = None
    unit_cost: Optional[float] = None

    model_config = {"from_attributes": True}
