"""Read-only catalog lookups used to pre-fill requisition lines."""

from typing import List, Optional

from fastapi import APIRouter, Query, Request
from sqlalchemy.orm import joinedload

from factory_app.core.rate_limit import limiter
from factory_app.core.rbac import CurrentUser
from factory_app.db.session import DbSession
from factory_app.models.catalog import InventoryItem, Unit
from factory_app.schemas.catalog import InventoryItemResponse, UnitResponse

router = APIRouter()


@router.get("/items", response_model=List[InventoryItemResponse])
@limiter.limit("60/minute")
def list_inventory_items(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    search: Optional[str] = Query(None, max_length=100),
):
    """List active inventory items with their unit."""
    query = (
        db.query(InventoryItem)
        .options(joinedload(InventoryItem.unit))
        .filter(InventoryItem.is_active.is_(True))
    )
    if search:
        pattern = f"%{search}%"
        query = query.filter(InventoryItem.name.ilike(pattern) | InventoryItem.sku.ilike(pattern))
    return query.order_by(InventoryItem.name).all()


@router.get("/units", response_model=List[UnitResponse])
@limiter.limit("60/minute")
def list_units(request: Request, db: DbSession, current_user: CurrentUser):
    """List units of measure."""
    return db.query(Unit).order_by(Unit.name).all()
