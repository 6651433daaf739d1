from .database import PortalDB, async_database_url
from .models import (
    AnnouncementRow,
    ApprovalRow,
    RequestRow,
    RequestTypeRow,
    SystemEventRow,
    UserRow,
    WorkflowRow,
)

__all__ = [
    "AnnouncementRow",
    "ApprovalRow",
    "PortalDB",
    "RequestRow",
    "RequestTypeRow",
    "SystemEventRow",
    "UserRow",
    "WorkflowRow",
    "async_database_url",
]
