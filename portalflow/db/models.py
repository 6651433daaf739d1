from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..models import utcnow

# naive UTC timestamps; plain DateTime, not sqlmodel's tz-aware default


def _timestamp() -> Any:
    return Field(default_factory=utcnow, sa_type=DateTime)


def _optional_timestamp() -> Any:
    return Field(default=None, sa_type=DateTime)


class UserRow(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(unique=True)
    email: str = Field(unique=True)
    full_name: str
    department: Optional[str] = None
    role: str = Field(default="user")
    status: str = Field(default="active")
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()


class RequestTypeRow(SQLModel, table=True):
    """Form definition and approver configuration of a request category."""

    __tablename__ = "request_types"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True)
    description: Optional[str] = None
    department: str
    created_by: int = Field(foreign_key="users.id")
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()
    form_fields: list = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    approver_config: list = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )


class RequestRow(SQLModel, table=True):
    __tablename__ = "requests"

    id: Optional[int] = Field(default=None, primary_key=True)
    request_type_id: int = Field(foreign_key="request_types.id")
    title: str
    description: Optional[str] = None
    status: str = Field(default="draft")
    priority: str = Field(default="normal")
    created_by: int = Field(foreign_key="users.id")
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()
    due_date: Optional[datetime] = _optional_timestamp()
    data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))


class WorkflowRow(SQLModel, table=True):
    """One approval workflow per request."""

    __tablename__ = "workflows"

    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(foreign_key="requests.id", unique=True)
    current_step: int = Field(default=1)
    started_at: datetime = _timestamp()
    completed_at: Optional[datetime] = _optional_timestamp()
    due_date: Optional[datetime] = _optional_timestamp()
    status: str = Field(default="active")


class ApprovalRow(SQLModel, table=True):
    """Approval step of a request; at most one row per step."""

    __tablename__ = "approvals"
    __table_args__ = (UniqueConstraint("request_id", "step_order"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: int = Field(foreign_key="requests.id", index=True)
    approver_id: int = Field(foreign_key="users.id", index=True)
    step_order: int
    step_name: Optional[str] = None
    step_description: Optional[str] = None
    step_due_date: Optional[datetime] = _optional_timestamp()
    status: str = Field(default="waiting")
    comments: Optional[str] = None
    action_date: Optional[datetime] = _optional_timestamp()
    notified_at: Optional[datetime] = _optional_timestamp()


class AnnouncementRow(SQLModel, table=True):
    __tablename__ = "announcements"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    content: str
    image_url: Optional[str] = None
    author_id: int = Field(foreign_key="users.id")
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()
    expires_at: Optional[datetime] = _optional_timestamp()
    is_active: bool = Field(default=True)
    target_audience: Optional[list] = Field(default=None, sa_column=Column(JSON))


class SystemEventRow(SQLModel, table=True):
    __tablename__ = "system_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = _timestamp()
    level: str
    message: str
    user_id: Optional[int] = None
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
