"""Domain models for requests, request types and their approval workflows."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored by every backend."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Department(str, Enum):
    IT = "it"
    HR = "hr"
    FINANCE = "finance"
    LEGAL = "legal"
    MARKETING = "marketing"
    OPERATIONS = "operations"
    OTHER = "other"


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class RequestStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REQUIRES_ACTION = "requires_action"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    TERMINATED = "terminated"


class ApprovalStatus(str, Enum):
    WAITING = "waiting"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class PortalModel(BaseModel):
    """Base model: enums hold plain string values, datetimes are naive UTC."""

    model_config = ConfigDict(
        use_enum_values=True, validate_assignment=True, validate_default=True
    )

    @field_validator("*")
    @classmethod
    def normalize_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return as_naive_utc(value)
        return value


class ApproverStep(PortalModel):
    """One entry of a request type's ordered approver configuration."""

    approver_id: int
    name: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None


class User(PortalModel):
    id: Optional[int] = None
    username: str
    email: str
    full_name: str
    department: Optional[Department] = None
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RequestType(PortalModel):
    """Form definition plus the approver sequence for one request category.

    ``approver_config`` is kept as raw entries so that a malformed
    configuration written by an admin tool is reported when a workflow is
    started rather than when the type is read.
    """

    id: Optional[int] = None
    name: str
    description: Optional[str] = None
    department: Department
    created_by: int
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    form_fields: list[dict[str, Any]] = Field(default_factory=list)
    approver_config: list[Any] = Field(default_factory=list)


class Request(PortalModel):
    id: Optional[int] = None
    request_type_id: int
    title: str
    description: Optional[str] = None
    status: RequestStatus = RequestStatus.DRAFT
    priority: Priority = Priority.NORMAL
    created_by: int
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    due_date: Optional[datetime] = None
    data: dict[str, Any] = Field(default_factory=dict)


class WorkflowInstance(PortalModel):
    """Live execution state of one request's approval process."""

    id: Optional[int] = None
    request_id: int
    current_step: int = Field(default=1, ge=1)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    status: WorkflowStatus = WorkflowStatus.ACTIVE


class ApprovalRecord(PortalModel):
    """Who must approve one step of a request, and what they decided."""

    id: Optional[int] = None
    request_id: int
    approver_id: int
    step_order: int = Field(ge=1)
    step_name: Optional[str] = None
    step_description: Optional[str] = None
    step_due_date: Optional[datetime] = None
    status: ApprovalStatus = ApprovalStatus.WAITING
    comments: Optional[str] = None
    action_date: Optional[datetime] = None
    notified_at: Optional[datetime] = None


class SystemEvent(PortalModel):
    """Entry of the portal's append-only event log."""

    id: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)
    level: str = "INFO"
    message: str
    user_id: Optional[int] = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def info(
        cls, message: str, user_id: Optional[int] = None, **details: Any
    ) -> "SystemEvent":
        return cls(level="INFO", message=message, user_id=user_id, details=details)


class Announcement(PortalModel):
    """Portal-wide notice; hidden once inactive or past ``expires_at``."""

    id: Optional[int] = None
    title: str
    content: str
    image_url: Optional[str] = None
    author_id: int
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    target_audience: Optional[list[str]] = None

    def is_visible(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or self.expires_at >= now)
