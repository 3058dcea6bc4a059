"""Requisition models: header, line items and approval history."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import (
    Date, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, Numeric, String, Text, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from factory_app.db.base import Base, TimestampMixin


class RequisitionStatus(str, Enum):
    """Status of a requisition."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class RequisitionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ItemStatus(str, Enum):
    """Status of a single requisition line."""

    PENDING = "pending"
    APPROVED = "approved"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


# Every edge of the requisition state machine. Statuses absent as keys are terminal.
TRANSITIONS: Dict[RequisitionStatus, FrozenSet[RequisitionStatus]] = {
    RequisitionStatus.DRAFT: frozenset({
        RequisitionStatus.SUBMITTED,
        RequisitionStatus.CANCELLED,
    }),
    RequisitionStatus.SUBMITTED: frozenset({
        RequisitionStatus.PENDING_APPROVAL,
        RequisitionStatus.APPROVED,
        RequisitionStatus.REJECTED,
        RequisitionStatus.CANCELLED,
    }),
    RequisitionStatus.PENDING_APPROVAL: frozenset({
        RequisitionStatus.APPROVED,
        RequisitionStatus.REJECTED,
        RequisitionStatus.CANCELLED,
    }),
    RequisitionStatus.APPROVED: frozenset({
        RequisitionStatus.FULFILLED,
    }),
}


def allowed_sources(target: RequisitionStatus) -> FrozenSet[RequisitionStatus]:
    """Statuses from which ``target`` can be reached in one step."""
    return frozenset(src for src, targets in TRANSITIONS.items() if target in targets)


class Requisition(Base, TimestampMixin):
    """A request for goods routed through the approval workflow."""

    __tablename__ = "requisitions"

    id: Mapped[int] = mapped_column(primary_key=True)
    requisition_number: Mapped[str] = mapped_column(
        String(30), unique=True, nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    priority: Mapped[RequisitionPriority] = mapped_column(
        SQLEnum(RequisitionPriority), default=RequisitionPriority.MEDIUM, nullable=False
    )
    required_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[RequisitionStatus] = mapped_column(
        SQLEnum(RequisitionStatus), default=RequisitionStatus.DRAFT, nullable=False
    )
    total_estimated_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    requested_by: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    approved_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    approved_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    fulfilled_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    items: Mapped[List["RequisitionItem"]] = relationship(
        "RequisitionItem",
        back_populates="requisition",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: [RequisitionItem.created_at, RequisitionItem.id],
    )
    approvals: Mapped[List["RequisitionApproval"]] = relationship(
        "RequisitionApproval",
        back_populates="requisition",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: [
            RequisitionApproval.approval_level,
            RequisitionApproval.created_at,
            RequisitionApproval.id,
        ],
    )

    __table_args__ = (
        Index("ix_requisitions_status_created", "status", "created_at"),
    )


class RequisitionItem(Base):
    """One requested product and quantity within a requisition."""

    __tablename__ = "requisition_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    requisition_id: Mapped[int] = mapped_column(
        ForeignKey("requisitions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    inventory_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("inventory_items.id", ondelete="SET NULL"), nullable=True
    )
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quantity_requested: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("units.id", ondelete="SET NULL"), nullable=True
    )
    estimated_unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )
    total_estimated_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )
    status: Mapped[ItemStatus] = mapped_column(
        SQLEnum(ItemStatus), default=ItemStatus.PENDING, nullable=False
    )
    quantity_approved: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 3), nullable=True)
    quantity_fulfilled: Mapped[Decimal] = mapped_column(
        Numeric(12, 3), default=Decimal("0"), nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    requisition: Mapped["Requisition"] = relationship("Requisition", back_populates="items")


class RequisitionApproval(Base):
    """Immutable record of one approve/reject decision."""

    __tablename__ = "requisition_approvals"

    id: Mapped[int] = mapped_column(primary_key=True)
    requisition_id: Mapped[int] = mapped_column(
        ForeignKey("requisitions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    approver_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    approval_level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[ApprovalDecision] = mapped_column(SQLEnum(ApprovalDecision), nullable=False)
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    requisition: Mapped["Requisition"] = relationship("Requisition", back_populates="approvals")
