"""SQLAlchemy models."""

from factory_app.models.user import User
from factory_app.models.catalog import InventoryItem, Unit
from factory_app.models.activity import ActivityLog
from factory_app.models.requisition import (
    ApprovalDecision,
    ItemStatus,
    Requisition,
    RequisitionApproval,
    RequisitionItem,
    RequisitionPriority,
    RequisitionStatus,
)

__all__ = [
    "User",
    "InventoryItem",
    "Unit",
    "ActivityLog",
    "ApprovalDecision",
    "ItemStatus",
    "Requisition",
    "RequisitionApproval",
    "RequisitionItem",
    "RequisitionPriority",
    "RequisitionStatus",
]
