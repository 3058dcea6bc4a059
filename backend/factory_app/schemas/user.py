"""User schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr

from factory_app.core.rbac import UserRole


class UserResponse(BaseModel):
    """User response schema."""

    id: int
    username: str
    email: EmailStr
    role: UserRole
    department: Optional[str] = None
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}
