"""User activity logging service.

``record_activity`` is fire-and-forget: it runs after the parent operation
has committed, in the same session, and never raises. A failed write is
rolled back and logged so that the caller's result stands.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from factory_app.models.activity import ActivityLog

logger = logging.getLogger("activity")


def record_activity(
    db: Session,
    user_id: Optional[int],
    action: str,
    summary: str,
    detail: Optional[str] = None,
    ip_address: str = "",
) -> None:
    """Write an activity log entry.

    Args:
        db: Session whose previous unit of work has already been committed.
        user_id: ID of the user performing the action.
        action: The action performed (create, update, delete...).
        summary: One-line human readable description.
        detail: Optional longer description.
        ip_address: Client IP address.
    """
    try:
        db.add(ActivityLog(
            user_id=user_id,
            action=action,
            summary=summary[:255],
            detail=detail,
            ip_address=(ip_address or "")[:50],
        ))
        db.commit()
    except Exception:
        # Never let activity logging break the request
        logger.exception("Failed to write activity log entry: %s", summary)
        db.rollback()
