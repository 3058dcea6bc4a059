"""Requisition request schemas.

Field rules that the workflow must enforce regardless of the entry point
(non-empty title, at least one line, positive quantities) are checked in
the service layer, so these models only describe shape and types.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class RequisitionItemCreate(BaseModel):
    """A line item submitted with a new requisition."""

    inventory_id: Optional[int] = None
    item_name: Optional[str] = None
    description: Optional[str] = None
    quantity_requested: Optional[Decimal] = None
    unit_id: Optional[int] = None
    estimated_unit_cost: Optional[Decimal] = Decimal("0")
    notes: Optional[str] = None


class RequisitionCreate(BaseModel):
    """Create a requisition together with its line items."""

    title: Optional[str] = None
    description: Optional[str] = None
    department: Optional[str] = None
    priority: Optional[str] = "medium"
    required_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[RequisitionItemCreate] = Field(default_factory=list)


class RequisitionUpdate(BaseModel):
    """Descriptive fields only. Status changes go through the workflow endpoints."""

    title: Optional[str] = None
    description: Optional[str] = None
    department: Optional[str] = None
    priority: Optional[str] = None
    required_date: Optional[date] = None
    notes: Optional[str] = None
    status: Optional[str] = None


class ApprovalAction(BaseModel):
    """Approve or reject a requisition."""

    action: Optional[str] = None  # approve or reject, required
    comments: Optional[str] = None


class FulfillmentLine(BaseModel):
    item_id: int
    quantity: Decimal


class FulfillRequest(BaseModel):
    """Record delivered quantities. An empty list fulfills every line in full."""

    lines: Optional[List[FulfillmentLine]] = None
    items: Optional[List[FulfillmentLine]] = None  # Alias for lines

    @model_validator(mode="after")
    def normalize_lines(self):
        """Accept both 'lines' and 'items' as the fulfillment field."""
        if not self.lines and self.items:
            self.lines = self.items
        if not self.lines:
            self.lines = []
        return self


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RequisitionCreated(BaseModel):
    id: int
    requisition_number: str
    message: str = "Requisition created successfully"


class DashboardStats(BaseModel):
    total: int
    pending: int
    approved: int
    rejected: int
    my_requisitions: int
