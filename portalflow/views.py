"""Read models returned by the portal service queries."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from .models import (
    Announcement,
    ApprovalRecord,
    ApprovalStatus,
    Request,
    WorkflowInstance,
)

ON_TRACK = "On Track"
DELAYED = "Delayed"
WAITING_FOR_INPUT = "Waiting for Input"
COMPLETED = "Completed"

NEW_ANNOUNCEMENT_WINDOW = timedelta(days=7)


class RequestView(BaseModel):
    request: Request
    type_name: str


class AnnouncementView(BaseModel):
    announcement: Announcement
    author_name: str
    is_new: bool = False


class ApprovalView(BaseModel):
    """Approval enriched with what an approver needs to decide."""

    approval: ApprovalRecord
    request_title: str
    request_type: str
    requester_name: str
    priority: str
    submitted_at: datetime


class StepSummary(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    is_completed: bool


class NextAction(BaseModel):
    text: str
    action_text: str = "Complete"
    is_urgent: bool = False


class WorkflowSummary(BaseModel):
    """Dashboard card for one of the user's running workflows."""

    id: int
    request_id: int
    title: str
    description: Optional[str] = None
    started_at: datetime
    due_date: Optional[datetime] = None
    status: str
    steps: list[StepSummary] = Field(default_factory=list)
    next_action: Optional[NextAction] = None


class WorkflowOverview(BaseModel):
    """Admin listing row."""

    workflow: WorkflowInstance
    request_title: str
    request_type: str
    step_count: int
    completed_steps: int


def display_status(
    workflow: WorkflowInstance, approvals: list[ApprovalRecord], now: datetime
) -> str:
    """Summarise progress the way the dashboard shows it."""

    if approvals and all(a.status == ApprovalStatus.APPROVED for a in approvals):
        return COMPLETED
    if workflow.due_date is not None and workflow.due_date < now:
        return DELAYED
    current = next(
        (a for a in approvals if a.step_order == workflow.current_step), None
    )
    if current is not None and current.status == ApprovalStatus.PENDING_APPROVAL:
        return WAITING_FOR_INPUT
    return ON_TRACK


def summarize_workflow(
    workflow: WorkflowInstance,
    request: Optional[Request],
    approvals: list[ApprovalRecord],
    now: datetime,
) -> WorkflowSummary:
    current = next(
        (a for a in approvals if a.step_order == workflow.current_step), None
    )
    next_action = None
    if current is not None and current.status != ApprovalStatus.APPROVED:
        next_action = NextAction(
            text=f"Next action: {current.step_name or f'Approval Step {current.step_order}'}",
            is_urgent=workflow.due_date is not None and workflow.due_date < now,
        )
    return WorkflowSummary(
        id=workflow.id,
        request_id=workflow.request_id,
        title=request.title if request else "Unknown Request",
        description=request.description if request else None,
        started_at=workflow.started_at,
        due_date=workflow.due_date,
        status=display_status(workflow, approvals, now),
        steps=[
            StepSummary(
                id=a.id,
                name=a.step_name or f"Approval Step {a.step_order}",
                description=a.step_description,
                due_date=a.step_due_date,
                is_completed=a.status == ApprovalStatus.APPROVED,
            )
            for a in approvals
        ],
        next_action=next_action,
    )


def announcement_view(
    announcement: Announcement, author_name: str, now: datetime
) -> AnnouncementView:
    """Announcements younger than a week are flagged as new."""
    return AnnouncementView(
        announcement=announcement,
        author_name=author_name,
        is_new=announcement.created_at > now - NEW_ANNOUNCEMENT_WINDOW,
    )
