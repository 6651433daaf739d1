"""Notifications sent to approvers and requesters after workflow changes."""

from __future__ import annotations

import abc
import logging
from typing import Optional

from pydantic import BaseModel

from .config import NotificationConfig
from .models import ApprovalRecord, Request, User

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    """Message addressed to one portal user."""

    kind: str
    recipient_id: int
    recipient_email: Optional[str] = None
    sender: str
    subject: str
    body: str
    related_entity_type: str
    related_entity_id: int


class Notifier(metaclass=abc.ABCMeta):
    """Delivery channel for notifications (e-mail, chat, ...)."""

    @abc.abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver ``notification``."""
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes notifications to the log instead of delivering them."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            f"[{notification.kind}] to={notification.recipient_email or notification.recipient_id} "
            f"subject={notification.subject!r}"
        )


def format_status(status: str) -> str:
    """``pending_approval`` -> ``Pending Approval``."""
    return " ".join(part.capitalize() for part in str(status).split("_"))


class NotificationBuilder:
    """Renders notification subjects and bodies."""

    def __init__(self, config: NotificationConfig) -> None:
        self._config = config

    @property
    def _sender(self) -> str:
        return f"{self._config.sender_name} <{self._config.sender}>"

    def approval_request(
        self,
        approval: ApprovalRecord,
        request: Request,
        request_type_name: str,
        approver: Optional[User],
        requester: Optional[User],
    ) -> Notification:
        base_url = self._config.base_url.rstrip("/")
        greeting = approver.full_name if approver else f"user {approval.approver_id}"
        requester_name = requester.full_name if requester else f"user {request.created_by}"
        lines = [
            f"Hello {greeting},",
            "",
            f"{requester_name} submitted a {request_type_name} request that needs your approval.",
            f"Title: {request.title}",
            f"Submitted: {request.created_at:%Y-%m-%d}",
            f"Step: {approval.step_name or approval.step_order}",
        ]
        if request.description:
            lines.append(f"Description: {request.description}")
        lines += ["", f"Review it at {base_url}/approvals/{approval.id}"]
        return Notification(
            kind="approval_request",
            recipient_id=approval.approver_id,
            recipient_email=approver.email if approver else None,
            sender=self._sender,
            subject=f"Request Requires Your Approval: {request.title}",
            body="\n".join(lines),
            related_entity_type="approval",
            related_entity_id=approval.id,
        )

    def status_update(
        self,
        request: Request,
        request_type_name: str,
        requester: Optional[User],
        comments: Optional[str] = None,
        approval: Optional[ApprovalRecord] = None,
    ) -> Notification:
        base_url = self._config.base_url.rstrip("/")
        greeting = requester.full_name if requester else f"user {request.created_by}"
        lines = [
            f"Hello {greeting},",
            "",
            f"Your {request_type_name} request \"{request.title}\" is now {format_status(request.status)}.",
        ]
        if approval is not None:
            lines.append(
                f"Step {approval.step_order} ({approval.step_name or 'unnamed'}) "
                f"was {format_status(approval.status).lower()}."
            )
        if comments:
            lines.append(f"Comments: {comments}")
        lines += ["", f"Details: {base_url}/requests/{request.id}"]
        return Notification(
            kind="request_status_update",
            recipient_id=request.created_by,
            recipient_email=requester.email if requester else None,
            sender=self._sender,
            subject=f"Request Status Update: {request.title}",
            body="\n".join(lines),
            related_entity_type="request",
            related_entity_id=request.id,
        )
