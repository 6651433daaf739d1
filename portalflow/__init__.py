"""Portalflow: request approval workflows for an internal business portal."""

from .config import NotificationConfig, PortalflowConfig, load_config
from .engine import WorkflowEngine
from .errors import (
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PortalflowError,
)
from .models import (
    Announcement,
    ApprovalRecord,
    ApprovalStatus,
    Request,
    RequestStatus,
    RequestType,
    User,
    WorkflowInstance,
    WorkflowStatus,
)
from .notifications import LoggingNotifier, Notification, Notifier
from .persistence import get_repository
from .registry import RequestTypeRegistry
from .service import PortalService

__version__ = "0.1.0"
__all__ = [
    "Announcement",
    "ApprovalRecord",
    "ApprovalStatus",
    "AuthorizationError",
    "ConfigurationError",
    "ConflictError",
    "InvalidStateError",
    "LoggingNotifier",
    "NotFoundError",
    "Notification",
    "NotificationConfig",
    "Notifier",
    "PortalService",
    "PortalflowConfig",
    "PortalflowError",
    "Request",
    "RequestStatus",
    "RequestType",
    "RequestTypeRegistry",
    "User",
    "WorkflowEngine",
    "WorkflowInstance",
    "WorkflowStatus",
    "get_repository",
    "load_config",
]
