# Services module

from factory_app.services.activity_service import record_activity
from factory_app.services.requisition_service import RequisitionService

__all__ = [
    "record_activity",
    "RequisitionService",
]
