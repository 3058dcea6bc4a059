"""Requisition workflow service.

Owns requisitions, their line items and approval history, and the state
machine that moves them from ``draft`` to a terminal status.

Every status change is a compare-and-swap ``UPDATE ... WHERE status IN
(...)``: the in-memory status is only used to fail fast with a helpful
message, the conditional update is what decides. Multi-row mutations
(create with items, approve with items, fulfillment) commit exactly once,
and any failure rolls the whole unit back.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterator, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from factory_app.core.config import settings
from factory_app.core.exceptions import (
    Conflict, Forbidden, NotFound, PersistenceError, ValidationError, WorkflowError,
)
from factory_app.core.rbac import Capability, TokenData
from factory_app.models.catalog import InventoryItem, Unit
from factory_app.models.requisition import (
    ApprovalDecision,
    ItemStatus,
    Requisition,
    RequisitionApproval,
    RequisitionItem,
    RequisitionPriority,
    RequisitionStatus,
    allowed_sources,
)
from factory_app.models.user import User
from factory_app.schemas.requisition import (
    FulfillmentLine,
    RequisitionCreate,
    RequisitionItemCreate,
    RequisitionUpdate,
)
from factory_app.services.activity_service import record_activity

logger = logging.getLogger(__name__)

E = TypeVar("E", RequisitionStatus, RequisitionPriority)

CENTS = Decimal("0.01")
PENDING_STATUSES = (RequisitionStatus.SUBMITTED, RequisitionStatus.PENDING_APPROVAL)
DESCRIPTIVE_FIELDS = ("title", "description", "department", "priority", "required_date", "notes")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _as_float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_enum(enum_cls: Type[E], value: Optional[str], field: str) -> Optional[E]:
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field} '{value}'. Allowed: {allowed}")


def _validate_items(items: Sequence[RequisitionItemCreate]) -> List[str]:
    """Return one message per invalid line; an empty list means all lines are valid."""
    errors = []
    for index, item in enumerate(items, start=1):
        if not (item.item_name or "").strip():
            errors.append(f"Item {index}: item_name is required")
        if item.quantity_requested is None or item.quantity_requested <= 0:
            errors.append(f"Item {index}: quantity_requested must be greater than 0")
        if item.estimated_unit_cost is not None and item.estimated_unit_cost < 0:
            errors.append(f"Item {index}: estimated_unit_cost cannot be negative")
    return errors


def _line_total(quantity: Decimal, unit_cost: Optional[Decimal]) -> Decimal:
    return _money(quantity * (unit_cost or Decimal("0")))


@contextmanager
def _atomic(db: Session, operation: str) -> Iterator[None]:
    """Commit once on success, roll everything back on any failure."""
    try:
        yield
        db.commit()
    except WorkflowError:
        db.rollback()
        raise
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Database error during requisition %s", operation)
        raise PersistenceError(f"Failed to {operation} requisition")


def _compare_and_swap(
    db: Session,
    requisition_id: int,
    target: RequisitionStatus,
    sources: Optional[Sequence[RequisitionStatus]] = None,
    **values: Any,
) -> bool:
    """Move a requisition to ``target`` only if its stored status is still in ``sources``."""
    sources = tuple(sources if sources is not None else allowed_sources(target))
    result = db.execute(
        update(Requisition)
        .where(Requisition.id == requisition_id, Requisition.status.in_(sources))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _requisition_fields(requisition: Requisition) -> Dict[str, Any]:
    return {
        "id": requisition.id,
        "requisition_number": requisition.requisition_number,
        "title": requisition.title,
        "description": requisition.description,
        "department": requisition.department,
        "priority": requisition.priority.value if requisition.priority else None,
        "required_date": _iso(requisition.required_date),
        "notes": requisition.notes,
        "status": requisition.status.value,
        "total_estimated_cost": _as_float(requisition.total_estimated_cost),
        "rejection_reason": requisition.rejection_reason,
        "requested_by": requisition.requested_by,
        "approved_by": requisition.approved_by,
        "approved_date": _iso(requisition.approved_date),
        "fulfilled_date": _iso(requisition.fulfilled_date),
        "created_at": _iso(requisition.created_at),
        "updated_at": _iso(requisition.updated_at),
    }


def _item_to_dict(item: RequisitionItem, inventory_name=None, inventory_sku=None,
                  unit_name=None, unit_abbr=None) -> Dict[str, Any]:
    return {
        "id": item.id,
        "requisition_id": item.requisition_id,
        "inventory_id": item.inventory_id,
        "inventory_name": inventory_name,
        "inventory_sku": inventory_sku,
        "item_name": item.item_name,
        "description": item.description,
        "quantity_requested": _as_float(item.quantity_requested),
        "unit_id": item.unit_id,
        "unit_name": unit_name,
        "unit_abbr": unit_abbr,
        "estimated_unit_cost": _as_float(item.estimated_unit_cost),
        "total_estimated_cost": _as_float(item.total_estimated_cost),
        "status": item.status.value,
        "quantity_approved": _as_float(item.quantity_approved),
        "quantity_fulfilled": _as_float(item.quantity_fulfilled),
        "notes": item.notes,
        "created_at": _iso(item.created_at),
    }


class RequisitionService:
    """Service for the requisition approval workflow."""

    # ------------------------------------------------------------------
    # Lookups and rules
    # ------------------------------------------------------------------
    @staticmethod
    def _load(db: Session, requisition_id: int) -> Requisition:
        requisition = db.get(Requisition, requisition_id)
        if requisition is None:
            raise NotFound("Requisition not found")
        return requisition

    @staticmethod
    def can_view(actor: TokenData, requisition: Requisition) -> bool:
        return actor.can(Capability.VIEW_ALL) or requisition.requested_by == actor.id

    @staticmethod
    def can_edit(actor: TokenData, requisition: Requisition) -> bool:
        own_draft = (
            requisition.requested_by == actor.id
            and requisition.status == RequisitionStatus.DRAFT
        )
        return own_draft or actor.can(Capability.EDIT_ANY)

    @staticmethod
    def can_delete(actor: TokenData, requisition: Requisition) -> bool:
        own_draft = (
            requisition.requested_by == actor.id
            and requisition.status == RequisitionStatus.DRAFT
        )
        return own_draft or actor.can(Capability.DELETE_ANY)

    @staticmethod
    def generate_requisition_number(db: Session, today: Optional[date] = None) -> str:
        """Next number of the day: ``REQ-YYYYMMDD-NNNN``.

        The suffix is zero-padded to four digits and keeps growing past 9999,
        so the highest suffix is the longest number, then the largest string.
        """
        today = today or date.today()
        prefix = f"REQ-{today.strftime('%Y%m%d')}-"
        last = db.execute(
            select(Requisition.requisition_number)
            .where(Requisition.requisition_number.like(f"{prefix}%"))
            .order_by(
                func.length(Requisition.requisition_number).desc(),
                Requisition.requisition_number.desc(),
            )
            .limit(1)
        ).scalar()
        sequence = 1
        if last:
            try:
                sequence = int(last[len(prefix):]) + 1
            except ValueError:
                logger.warning("Unparseable requisition number %s, restarting sequence", last)
        return f"{prefix}{sequence:04d}"

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------
    @staticmethod
    def create_requisition(
        db: Session,
        data: RequisitionCreate,
        actor: TokenData,
        ip_address: str = "",
    ) -> Dict[str, Any]:
        """Create a draft requisition with its line items in one transaction.

        Raises:
            ValidationError: missing title, no items or an invalid line.
            PersistenceError: the requisition could not be stored.
        """
        if not (data.title or "").strip() or not data.items:
            raise ValidationError("Title and items are required")
        errors = _validate_items(data.items)
        if errors:
            raise ValidationError("Invalid requisition items", details=errors)
        priority = _parse_enum(RequisitionPriority, data.priority, "priority") or RequisitionPriority.MEDIUM

        line_totals = [_line_total(i.quantity_requested, i.estimated_unit_cost) for i in data.items]
        total = _money(sum(line_totals, Decimal("0")))

        max_attempts = settings.requisition_number_max_attempts
        for attempt in range(1, max_attempts + 1):
            number = RequisitionService.generate_requisition_number(db)
            requisition = Requisition(
                requisition_number=number,
                title=data.title.strip(),
                description=data.description,
                department=data.department,
                priority=priority,
                required_date=data.required_date,
                notes=data.notes,
                status=RequisitionStatus.DRAFT,
                total_estimated_cost=total,
                requested_by=actor.id,
            )
            requisition.items = [
                RequisitionItem(
                    inventory_id=item.inventory_id,
                    item_name=item.item_name.strip(),
                    description=item.description,
                    quantity_requested=item.quantity_requested,
                    unit_id=item.unit_id,
                    estimated_unit_cost=item.estimated_unit_cost or Decimal("0"),
                    total_estimated_cost=line_total,
                    status=ItemStatus.PENDING,
                    quantity_fulfilled=Decimal("0"),
                    notes=item.notes,
                )
                for item, line_total in zip(data.items, line_totals)
            ]
            db.add(requisition)
            try:
                db.commit()
                break
            except IntegrityError:
                db.rollback()
                taken = db.execute(
                    select(Requisition.id).where(Requisition.requisition_number == number)
                ).first()
                if taken is None or attempt == max_attempts:
                    logger.exception("Requisition creation failed (number %s)", number)
                    raise PersistenceError("Requisition creation failed")
                logger.warning(
                    "Requisition number %s already taken, retrying (%s/%s)",
                    number, attempt, max_attempts,
                )
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Database error during requisition create")
                raise PersistenceError("Requisition creation failed")

        logger.info(
            "Requisition created: %s by user=%s, items=%s, total=%s",
            number, actor.id, len(data.items), total,
        )
        record_activity(
            db, actor.id, "create", f"Created requisition: {number}",
            f"{len(data.items)} items, Total: ${total}", ip_address,
        )
        return {
            "message": "Requisition created successfully",
            "id": requisition.id,
            "requisition_number": number,
        }

    # ------------------------------------------------------------------
    # read
    # ------------------------------------------------------------------
    @staticmethod
    def list_requisitions(
        db: Session,
        actor: TokenData,
        status: Optional[str] = None,
        department: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """List requisitions newest first with per-row item aggregates."""
        status_filter = _parse_enum(RequisitionStatus, status, "status")
        priority_filter = _parse_enum(RequisitionPriority, priority, "priority")

        requester = aliased(User)
        approver = aliased(User)
        query = (
            db.query(
                Requisition,
                requester.username,
                requester.email,
                approver.username,
                func.count(RequisitionItem.id),
                func.coalesce(func.sum(RequisitionItem.quantity_requested), 0),
                func.coalesce(func.sum(RequisitionItem.quantity_approved), 0),
                func.coalesce(func.sum(RequisitionItem.quantity_fulfilled), 0),
            )
            .outerjoin(requester, Requisition.requested_by == requester.id)
            .outerjoin(approver, Requisition.approved_by == approver.id)
            .outerjoin(RequisitionItem, RequisitionItem.requisition_id == Requisition.id)
        )
        if status_filter:
            query = query.filter(Requisition.status == status_filter)
        if department:
            query = query.filter(Requisition.department == department)
        if priority_filter:
            query = query.filter(Requisition.priority == priority_filter)
        if not actor.can(Capability.VIEW_ALL):
            query = query.filter(Requisition.requested_by == actor.id)

        rows = (
            query.group_by(Requisition.id, requester.username, requester.email, approver.username)
            .order_by(Requisition.created_at.desc(), Requisition.id.desc())
            .all()
        )

        result = []
        for req, req_name, req_email, appr_name, count, qty_req, qty_appr, qty_ful in rows:
            row = _requisition_fields(req)
            row.update({
                "requested_by_name": req_name,
                "requested_by_email": req_email,
                "approved_by_name": appr_name,
                "item_count": count,
                "total_quantity_requested": float(qty_req or 0),
                "total_quantity_approved": float(qty_appr or 0),
                "total_quantity_fulfilled": float(qty_ful or 0),
            })
            result.append(row)
        return result

    @staticmethod
    def get_requisition(db: Session, requisition_id: int, actor: TokenData) -> Dict[str, Any]:
        """Requisition with items (creation order) and approval history.

        Raises:
            NotFound: unknown id.
            Forbidden: the caller may not see this requisition.
        """
        requisition = RequisitionService._load(db, requisition_id)
        if not RequisitionService.can_view(actor, requisition):
            raise Forbidden("Access denied")

        requester = db.get(User, requisition.requested_by)
        approver = db.get(User, requisition.approved_by) if requisition.approved_by else None

        item_rows = (
            db.query(
                RequisitionItem,
                InventoryItem.name,
                InventoryItem.sku,
                Unit.name,
                Unit.abbreviation,
            )
            .outerjoin(InventoryItem, RequisitionItem.inventory_id == InventoryItem.id)
            .outerjoin(Unit, RequisitionItem.unit_id == Unit.id)
            .filter(RequisitionItem.requisition_id == requisition.id)
            .order_by(RequisitionItem.created_at, RequisitionItem.id)
            .all()
        )
        approval_rows = (
            db.query(RequisitionApproval, User.username)
            .outerjoin(User, RequisitionApproval.approver_id == User.id)
            .filter(RequisitionApproval.requisition_id == requisition.id)
            .order_by(
                RequisitionApproval.approval_level,
                RequisitionApproval.created_at,
                RequisitionApproval.id,
            )
            .all()
        )

        data = _requisition_fields(requisition)
        data.update({
            "requested_by_name": requester.username if requester else None,
            "requested_by_email": requester.email if requester else None,
            "approved_by_name": approver.username if approver else None,
            "items": [_item_to_dict(*row) for row in item_rows],
            "approvals": [
                {
                    "id": approval.id,
                    "approver_id": approval.approver_id,
                    "approver_name": approver_name,
                    "approval_level": approval.approval_level,
                    "status": approval.status.value,
                    "comments": approval.comments,
                    "created_at": _iso(approval.created_at),
                }
                for approval, approver_name in approval_rows
            ],
        })
        return data

    @staticmethod
    def dashboard_stats(db: Session, actor: TokenData) -> Dict[str, int]:
        def count(*conditions) -> int:
            return db.execute(
                select(func.count(Requisition.id)).where(*conditions)
            ).scalar() or 0

        return {
            "total": count(),
            "pending": count(Requisition.status.in_(PENDING_STATUSES)),
            "approved": count(Requisition.status == RequisitionStatus.APPROVED),
            "rejected": count(Requisition.status == RequisitionStatus.REJECTED),
            "my_requisitions": count(Requisition.requested_by == actor.id),
        }

    # ------------------------------------------------------------------
    # update / delete
    # ------------------------------------------------------------------
    @staticmethod
    def update_requisition(
        db: Session,
        requisition_id: int,
        data: RequisitionUpdate,
        actor: TokenData,
        ip_address: str = "",
    ) -> Dict[str, Any]:
        """Update descriptive fields. Status is never changed here."""
        requisition = RequisitionService._load(db, requisition_id)
        if not RequisitionService.can_edit(actor, requisition):
            raise Forbidden("Cannot update this requisition")

        fields = data.model_dump(exclude_unset=True)
        requested_status = fields.pop("status", None)
        if requested_status is not None and requested_status != requisition.status.value:
            raise ValidationError(
                "Status cannot be changed by an update; use the submit, approve, "
                "fulfill or cancel endpoints"
            )
        if "title" in fields:
            if not (fields["title"] or "").strip():
                raise ValidationError("Title is required")
            fields["title"] = fields["title"].strip()
        if "priority" in fields:
            fields["priority"] = _parse_enum(RequisitionPriority, fields["priority"], "priority")
            if fields["priority"] is None:
                del fields["priority"]

        values = {name: fields[name] for name in DESCRIPTIVE_FIELDS if name in fields}
        conditions = [Requisition.id == requisition.id]
        if not actor.can(Capability.EDIT_ANY):
            # The owner's right to edit lapses the moment the draft is submitted
            conditions.append(Requisition.status == RequisitionStatus.DRAFT)

        number = requisition.requisition_number
        with _atomic(db, "update"):
            if values:
                result = db.execute(
                    update(Requisition)
                    .where(*conditions)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise Forbidden("Cannot update this requisition")
        db.expire(requisition)

        record_activity(
            db, actor.id, "update", f"Updated requisition: {number}",
            f"Fields: {', '.join(sorted(values)) or 'none'}", ip_address,
        )
        return RequisitionService.get_requisition(db, requisition_id, actor)

    @staticmethod
    def delete_requisition(
        db: Session,
        requisition_id: int,
        actor: TokenData,
        ip_address: str = "",
    ) -> Dict[str, Any]:
        """Delete a requisition together with its items and approval history."""
        requisition = RequisitionService._load(db, requisition_id)
        if not RequisitionService.can_delete(actor, requisition):
            raise Forbidden("Cannot delete this requisition")

        number = requisition.requisition_number
        conditions = [Requisition.id == requisition_id]
        if not actor.can(Capability.DELETE_ANY):
            conditions.append(Requisition.status == RequisitionStatus.DRAFT)

        with _atomic(db, "delete"):
            db.execute(
                delete(RequisitionItem)
                .where(RequisitionItem.requisition_id == requisition_id)
                .execution_options(synchronize_session=False)
            )
            db.execute(
                delete(RequisitionApproval)
                .where(RequisitionApproval.requisition_id == requisition_id)
                .execution_options(synchronize_session=False)
            )
            result = db.execute(
                delete(Requisition)
                .where(*conditions)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise Forbidden("Cannot delete this requisition")
        if requisition in db:
            db.expunge(requisition)

        logger.info("Requisition deleted: %s by user=%s", number, actor.id)
        record_activity(db, actor.id, "delete", f"Deleted requisition: {number}", None, ip_address)
        return {"message": "Requisition deleted successfully"}

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    @staticmethod
    def _transition_result(requisition: Requisition, message: str) -> Dict[str, Any]:
        return {
            "message": message,
            "id": requisition.id,
            "requisition_number": requisition.requisition_number,
            "status": requisition.status.value,
        }

    @staticmethod
    def submit_requisition(
        db: Session,
        requisition_id: int,
        actor: TokenData,
        ip_address: str = "",
    ) -> Dict[str, Any]:
        """draft -> submitted, by the requester only."""
        requisition = RequisitionService._load(db, requisition_id)
        if requisition.requested_by != actor.id:
            raise Forbidden("Only the requester can submit this requisition")
        if requisition.status != RequisitionStatus.DRAFT:
            raise Conflict("Only draft requisitions can be submitted")
        if not requisition.items:
            raise ValidationError("A requisition needs at least one item before it can be submitted")
        invalid = [
            item.item_name or f"#{item.id}"
            for item in requisition.items
            if not (item.item_name or "").strip() or item.quantity_requested <= 0
        ]
        if invalid:
            raise ValidationError("Some items are invalid", details=invalid)

        with _atomic(db, "submit"):
            if not _compare_and_swap(
                db, requisition.id, RequisitionStatus.SUBMITTED, (RequisitionStatus.DRAFT,)
            ):
                raise Conflict("Only draft requisitions can be submitted")
        db.refresh(requisition)

        logger.info("Requisition submitted: %s by user=%s", requisition.requisition_number, actor.id)
        record_activity(
            db, actor.id, "update", f"Submitted requisition: {requisition.requisition_number}",
            "Status changed to submitted", ip_address,
        )
        return RequisitionService._transition_result(requisition, "Requisition submitted successfully")

    @staticmethod
    def review_requisition(
        db: Session,
        requisition_id: int,
        actor: TokenData,
        ip_address: str = "",
    ) -> Dict[str, Any]:
        """submitted -> pending_approval, taken up by an approver."""
        if not actor.can(Capability.APPROVE):
            raise Forbidden("Only managers and admins can review requisitions")
        requisition = RequisitionService._load(db, requisition_id)
        if requisition.status != RequisitionStatus.SUBMITTED:
            raise Conflict("Only submitted requisitions can be taken into review")

        with _atomic(db, "review"):
            if not _compare_and_swap(db, requisition.id, RequisitionStatus.PENDING_APPROVAL):
                raise Conflict("Only submitted requisitions can be taken into review")
        db.refresh(requisition)

        record_activity(
            db, actor.id, "update", f"Reviewing requisition: {requisition.requisition_number}",
            "Status changed to pending_approval", ip_address,
        )
        return RequisitionService._transition_result(requisition, "Requisition is pending approval")

    @staticmethod
    def decide_requisition(
        db: Session,
        requisition_id: int,
        actor: TokenData,
        action: Optional[str],
        comments: Optional[str] = None,
        ip_address: str = "",
    ) -> Dict[str, Any]:
        """Approve or reject a submitted or pending requisition.

        Approval also approves every line in full. Both outcomes append an
        approval record. Exactly one of several concurrent decisions wins;
        the others raise Conflict.
        """
        if action not in ("approve", "reject"):
            raise ValidationError("Action must be 'approve' or 'reject'")
        if not actor.can(Capability.APPROVE):
            raise Forbidden("Only managers and admins can approve requisitions")
        requisition = RequisitionService._load(db, requisition_id)
        if requisition.status not in PENDING_STATUSES:
            raise Conflict("Requisition is not in a state that can be approved/rejected")

        approve = action == "approve"
        target = RequisitionStatus.APPROVED if approve else RequisitionStatus.REJECTED

        with _atomic(db, action):
            swapped = _compare_and_swap(
                db,
                requisition.id,
                target,
                PENDING_STATUSES,
                approved_by=actor.id,
                approved_date=datetime.now(timezone.utc) if approve else None,
                rejection_reason=None if approve else comments,
            )
            if not swapped:
                raise Conflict("Requisition is not in a state that can be approved/rejected")
            if approve:
                db.execute(
                    update(RequisitionItem)
                    .where(RequisitionItem.requisition_id == requisition.id)
                    .values(
                        status=ItemStatus.APPROVED,
                        quantity_approved=RequisitionItem.quantity_requested,
                    )
                    .execution_options(synchronize_session=False)
                )
            db.add(RequisitionApproval(
                requisition_id=requisition.id,
                approver_id=actor.id,
                approval_level=1,
                status=ApprovalDecision.APPROVED if approve else ApprovalDecision.REJECTED,
                comments=comments,
            ))
        db.refresh(requisition)

        verb = "Approved" if approve else "Rejected"
        logger.info("Requisition %s: %s by user=%s", target.value, requisition.requisition_number, actor.id)
        record_activity(
            db, actor.id, "update", f"{verb} requisition: {requisition.requisition_number}",
            comments, ip_address,
        )
        return RequisitionService._transition_result(requisition, f"Requisition {action}d successfully")

    @staticmethod
    def fulfill_requisition(
        db: Session,
        requisition_id: int,
        actor: TokenData,
        lines: Optional[Sequence[FulfillmentLine]] = None,
        ip_address: str = "",
    ) -> Dict[str, Any]:
        """Record delivered quantities against an approved requisition.

        With no lines every item is fulfilled in full. Quantities accumulate
        and may never exceed the approved quantity. Once every line is
        fulfilled the requisition moves to ``fulfilled``.
        """
        if not actor.can(Capability.FULFILL):
            raise Forbidden("Only managers and admins can fulfill requisitions")
        requisition = RequisitionService._load(db, requisition_id)
        if requisition.status != RequisitionStatus.APPROVED:
            raise Conflict("Only approved requisitions can be fulfilled")

        requested: Dict[int, Decimal] = {}
        for line in lines or []:
            if line.item_id in requested:
                raise ValidationError(f"Item {line.item_id} listed more than once")
            try:
                if line.quantity <= 0:
                    raise ValidationError(f"Item {line.item_id}: quantity must be greater than 0")
            except InvalidOperation:
                raise ValidationError(f"Item {line.item_id}: invalid quantity")
            requested[line.item_id] = line.quantity

        with _atomic(db, "fulfill"):
            # Row lock on the header: concurrent fulfillments of one requisition serialize here
            locked = db.execute(
                update(Requisition)
                .where(Requisition.id == requisition.id,
                       Requisition.status == RequisitionStatus.APPROVED)
                .values(updated_at=func.now())
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not locked:
                raise Conflict("Only approved requisitions can be fulfilled")

            items = (
                db.query(RequisitionItem)
                .filter(RequisitionItem.requisition_id == requisition.id)
                .populate_existing()
                .all()
            )
            by_id = {item.id: item for item in items}
            unknown = sorted(set(requested) - set(by_id))
            if unknown:
                raise ValidationError(f"Items not on this requisition: {unknown}")

            for item in items:
                approved_qty = (
                    item.quantity_approved
                    if item.quantity_approved is not None
                    else item.quantity_requested
                )
                remaining = approved_qty - item.quantity_fulfilled
                quantity = requested.get(item.id) if requested else remaining
                if quantity is None or quantity == 0:
                    continue
                if quantity > remaining:
                    raise ValidationError(
                        f"Item {item.id}: fulfilling {quantity} exceeds remaining approved quantity {remaining}"
                    )
                item.quantity_fulfilled = item.quantity_fulfilled + quantity
                item.status = (
                    ItemStatus.FULFILLED
                    if item.quantity_fulfilled >= approved_qty
                    else ItemStatus.PARTIALLY_FULFILLED
                )

            completed = all(item.status == ItemStatus.FULFILLED for item in items)
            db.flush()
            if completed:
                if not _compare_and_swap(
                    db, requisition.id, RequisitionStatus.FULFILLED,
                    fulfilled_date=datetime.now(timezone.utc),
                ):
                    raise Conflict("Only approved requisitions can be fulfilled")
        db.refresh(requisition)

        logger.info(
            "Requisition fulfillment recorded: %s by user=%s, complete=%s",
            requisition.requisition_number, actor.id, completed,
        )
        record_activity(
            db, actor.id, "update", f"Fulfilled requisition: {requisition.requisition_number}",
            "Fully fulfilled" if completed else "Partially fulfilled", ip_address,
        )
        message = "Requisition fulfilled" if completed else "Partial fulfillment recorded"
        return RequisitionService._transition_result(requisition, message)

    @staticmethod
    def cancel_requisition(
        db: Session,
        requisition_id: int,
        actor: TokenData,
        reason: Optional[str] = None,
        ip_address: str = "",
    ) -> Dict[str, Any]:
        """Withdraw a requisition that has not been decided yet."""
        requisition = RequisitionService._load(db, requisition_id)
        if requisition.requested_by != actor.id and not actor.can(Capability.EDIT_ANY):
            raise Forbidden("Cannot cancel this requisition")
        sources = allowed_sources(RequisitionStatus.CANCELLED)
        if requisition.status not in sources:
            raise Conflict(f"A {requisition.status.value} requisition cannot be cancelled")

        values: Dict[str, Any] = {}
        if reason:
            note = f"Cancelled: {reason}"
            values["notes"] = f"{requisition.notes}\n{note}" if requisition.notes else note

        with _atomic(db, "cancel"):
            if not _compare_and_swap(db, requisition.id, RequisitionStatus.CANCELLED, sources, **values):
                raise Conflict("Requisition can no longer be cancelled")
        db.refresh(requisition)

        logger.info("Requisition cancelled: %s by user=%s", requisition.requisition_number, actor.id)
        record_activity(
            db, actor.id, "update", f"Cancelled requisition: {requisition.requisition_number}",
            reason, ip_address,
        )
        return RequisitionService._transition_result(requisition, "Requisition cancelled")
