"""Application service used by the portal's request handlers and the CLI."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .config import NotificationConfig, PortalflowConfig, load_config
from .engine import WorkflowEngine
from .errors import NotFoundError, PortalflowError
from .models import (
    Announcement,
    ApprovalRecord,
    ApprovalStatus,
    Priority,
    Request,
    RequestStatus,
    RequestType,
    SystemEvent,
    User,
    WorkflowInstance,
    WorkflowStatus,
    utcnow,
)
from .notifications import LoggingNotifier, Notification, NotificationBuilder, Notifier
from .persistence import PortalRepository, PortalSession, get_repository
from .registry import RequestTypeRegistry
from .views import (
    AnnouncementView,
    ApprovalView,
    RequestView,
    WorkflowOverview,
    WorkflowSummary,
    announcement_view,
    summarize_workflow,
)

logger = logging.getLogger(__name__)


class PortalService:
    """Wires the repository, request type registry, engine and notifier.

    All collaborators are passed in; :meth:`from_config` builds the default
    set for an application start-up routine.
    """

    def __init__(
        self,
        repository: PortalRepository,
        engine: Optional[WorkflowEngine] = None,
        notifier: Optional[Notifier] = None,
        notification_config: Optional[NotificationConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.engine = engine or WorkflowEngine(repository, clock=clock)
        self.request_types = RequestTypeRegistry(repository)
        self._notifier = notifier
        self._builder = NotificationBuilder(notification_config or NotificationConfig())
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: Optional[PortalflowConfig] = None,
        database_url: Optional[str] = None,
    ) -> "PortalService":
        config = config or load_config()
        repository = get_repository(database_url, config=config)
        notifier = LoggingNotifier() if config.notifications.enabled else None
        return cls(
            repository,
            notifier=notifier,
            notification_config=config.notifications,
        )

    async def close(self) -> None:
        await self.repository.close()

    # ------------------------------------------------------------------
    # Users
    async def create_user(
        self,
        username: str,
        email: str,
        full_name: str,
        department: Optional[str] = None,
        role: str = "user",
    ) -> User:
        user = User(
            username=username,
            email=email,
            full_name=full_name,
            department=department,
            role=role,
        )
        async with self.repository.session() as session:
            stored = await session.add_user(user)
            await session.add_event(
                SystemEvent.info(f"User created: {username}", user_id=stored.id)
            )
        return stored

    async def get_user(self, user_id: int) -> User:
        async with self.repository.session() as session:
            user = await session.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    async def list_users(self) -> list[User]:
        async with self.repository.session() as session:
            return await session.list_users()

    # ------------------------------------------------------------------
    # Request types
    async def register_request_type(
        self,
        name: str,
        department: str,
        approver_config: list[Any],
        created_by: int,
        description: Optional[str] = None,
        form_fields: Optional[list[dict[str, Any]]] = None,
    ) -> RequestType:
        return await self.request_types.register(
            name,
            department,
            approver_config,
            created_by,
            description=description,
            form_fields=form_fields,
        )

    async def update_request_type(
        self, request_type_id: int, updated_by: Optional[int] = None, **changes: Any
    ) -> RequestType:
        return await self.request_types.update(
            request_type_id, updated_by=updated_by, **changes
        )

    async def get_request_type(self, request_type_id: int) -> RequestType:
        return await self.request_types.get(request_type_id)

    async def list_request_types(self) -> list[RequestType]:
        return await self.request_types.list_types()

    # ------------------------------------------------------------------
    # Requests
    async def submit_request(
        self,
        request_type_id: int,
        title: str,
        created_by: int,
        description: Optional[str] = None,
        priority: str = Priority.NORMAL,
        data: Optional[dict[str, Any]] = None,
        due_date: Optional[datetime] = None,
    ) -> Request:
        """Persist a new request and start its approval workflow.

        When the workflow cannot start (e.g. the request type has no
        approvers) the error propagates and the request stays a draft.
        """

        async with self.repository.session() as session:
            if await session.get_request_type(request_type_id) is None:
                raise NotFoundError("Request type", request_type_id)
            request = await session.add_request(
                Request(
                    request_type_id=request_type_id,
                    title=title,
                    description=description,
                    priority=priority,
                    created_by=created_by,
                    due_date=due_date,
                    data=data or {},
                    status=RequestStatus.DRAFT,
                )
            )
            await session.add_event(
                SystemEvent.info(
                    f"Request created: {title}",
                    user_id=created_by,
                    request_id=request.id,
                )
            )

        try:
            await self.engine.start_workflow(request.id)
        except PortalflowError as exc:
            logger.warning(f"Request {request.id} left as draft: {exc}")
            raise

        await self._notify_active_step(request.id)
        return await self.get_request(request.id)

    async def get_request(self, request_id: int) -> Request:
        async with self.repository.session() as session:
            request = await session.get_request(request_id)
        if request is None:
            raise NotFoundError("Request", request_id)
        return request

    async def delete_request(self, request_id: int) -> None:
        """Delete a request along with its workflow and approvals."""

        async with self.repository.session() as session:
            request = await session.get_request(request_id)
            if request is None:
                raise NotFoundError("Request", request_id)
            await session.delete_request(request_id)
            await session.add_event(
                SystemEvent.info(
                    f"Request deleted: {request.title}", request_id=request_id
                )
            )

    # ------------------------------------------------------------------
    # Announcements
    async def publish_announcement(
        self,
        title: str,
        content: str,
        author_id: int,
        image_url: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        target_audience: Optional[list[str]] = None,
    ) -> Announcement:
        async with self.repository.session() as session:
            if await session.get_user(author_id) is None:
                raise NotFoundError("User", author_id)
            stored = await session.add_announcement(
                Announcement(
                    title=title,
                    content=content,
                    author_id=author_id,
                    image_url=image_url,
                    expires_at=expires_at,
                    target_audience=target_audience,
                )
            )
            await session.add_event(
                SystemEvent.info(
                    f"Announcement published: {title}",
                    user_id=author_id,
                    announcement_id=stored.id,
                )
            )
        logger.info(f"Announcement {stored.id} published by user {author_id}")
        return stored

    async def active_announcements(self, limit: int = 5) -> list[AnnouncementView]:
        """Newest active announcements that have not expired."""

        now = self._clock()
        async with self.repository.session() as session:
            announcements = await session.list_announcements(visible_at=now)
            return await self._announcement_views(session, announcements[:limit], now)

    async def all_announcements(self) -> list[AnnouncementView]:
        now = self._clock()
        async with self.repository.session() as session:
            announcements = await session.list_announcements()
            return await self._announcement_views(session, announcements, now)

    # ------------------------------------------------------------------
    # Approval actions
    async def approve(
        self, approval_id: int, user_id: int, comments: Optional[str] = None
    ) -> ApprovalRecord:
        """Approve a step, tell the requester, then alert the next approver."""

        approval = await self.engine.approve_step(approval_id, user_id, comments)
        request = await self.get_request(approval.request_id)
        await self._notify_requester(request, comments, approval)
        if request.status != RequestStatus.COMPLETED:
            await self._notify_active_step(request.id)
        return approval

    async def reject(
        self, approval_id: int, user_id: int, comments: Optional[str] = None
    ) -> ApprovalRecord:
        approval = await self.engine.reject_step(approval_id, user_id, comments)
        await self._notify_requester(
            await self.get_request(approval.request_id), comments, approval
        )
        return approval

    async def advance(self, workflow_id: int) -> WorkflowInstance:
        workflow = await self.engine.advance_workflow(workflow_id)
        if workflow.status == WorkflowStatus.ACTIVE:
            await self._notify_active_step(workflow.request_id)
        return workflow

    # ------------------------------------------------------------------
    # Queries
    async def user_requests(self, user_id: int) -> list[RequestView]:
        async with self.repository.session() as session:
            requests = await session.list_requests(created_by=user_id)
            return [
                RequestView(request=r, type_name=await self._type_name(session, r))
                for r in requests
            ]

    async def recent_requests(self, user_id: int, limit: int = 5) -> list[RequestView]:
        return (await self.user_requests(user_id))[:limit]

    async def pending_approvals(self, user_id: int) -> list[ApprovalView]:
        """Approvals waiting on ``user_id``, most recently notified first."""

        async with self.repository.session() as session:
            approvals = await session.list_approvals(
                approver_id=user_id, status=ApprovalStatus.PENDING_APPROVAL
            )
            views = await self._approval_views(session, approvals)
        return sorted(
            views,
            key=lambda v: v.approval.notified_at or datetime.min,
            reverse=True,
        )

    async def user_approvals(self, user_id: int) -> list[ApprovalView]:
        """Every approval assigned to ``user_id`` whatever its state."""

        async with self.repository.session() as session:
            approvals = await session.list_approvals(approver_id=user_id)
            views = await self._approval_views(session, approvals)
        return sorted(
            views,
            key=lambda v: v.approval.notified_at or datetime.min,
            reverse=True,
        )

    async def active_workflows(self, user_id: int) -> list[WorkflowSummary]:
        """Running workflows of requests created by ``user_id``, soonest due first."""

        now = self._clock()
        summaries: list[WorkflowSummary] = []
        async with self.repository.session() as session:
            workflows = await session.list_workflows(status=WorkflowStatus.ACTIVE)
            for workflow in workflows:
                request = await session.get_request(workflow.request_id)
                if request is None or request.created_by != user_id:
                    continue
                approvals = await session.list_approvals(request_id=request.id)
                summaries.append(summarize_workflow(workflow, request, approvals, now))
        summaries.sort(key=lambda s: (s.due_date is None, s.due_date or now))
        return summaries

    async def all_workflows(self) -> list[WorkflowOverview]:
        overviews: list[WorkflowOverview] = []
        async with self.repository.session() as session:
            for workflow in await session.list_workflows():
                request = await session.get_request(workflow.request_id)
                approvals = await session.list_approvals(request_id=workflow.request_id)
                overviews.append(
                    WorkflowOverview(
                        workflow=workflow,
                        request_title=request.title if request else "Unknown",
                        request_type=(
                            await self._type_name(session, request)
                            if request
                            else "Unknown"
                        ),
                        step_count=len(approvals),
                        completed_steps=sum(
                            1 for a in approvals if a.status == ApprovalStatus.APPROVED
                        ),
                    )
                )
        return overviews

    async def get_workflow(self, workflow_id: int) -> WorkflowInstance:
        async with self.repository.session() as session:
            workflow = await session.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    async def workflow_for_request(self, request_id: int) -> WorkflowInstance:
        async with self.repository.session() as session:
            workflow = await session.get_workflow_for_request(request_id)
        if workflow is None:
            raise NotFoundError("Workflow for request", request_id)
        return workflow

    async def workflow_steps(self, workflow_id: int) -> list[ApprovalRecord]:
        workflow = await self.get_workflow(workflow_id)
        async with self.repository.session() as session:
            return await session.list_approvals(request_id=workflow.request_id)

    async def system_events(self, limit: Optional[int] = None) -> list[SystemEvent]:
        async with self.repository.session() as session:
            return await session.list_events(limit=limit)

    # ------------------------------------------------------------------
    # Internals
    @staticmethod
    async def _announcement_views(
        session: PortalSession, announcements: list[Announcement], now: datetime
    ) -> list[AnnouncementView]:
        views: list[AnnouncementView] = []
        for announcement in announcements:
            author = await session.get_user(announcement.author_id)
            views.append(
                announcement_view(
                    announcement, author.full_name if author else "Unknown", now
                )
            )
        return views

    @staticmethod
    async def _type_name(session: PortalSession, request: Request) -> str:
        request_type = await session.get_request_type(request.request_type_id)
        return request_type.name if request_type else "Unknown"

    async def _approval_views(
        self, session: PortalSession, approvals: list[ApprovalRecord]
    ) -> list[ApprovalView]:
        views: list[ApprovalView] = []
        for approval in approvals:
            request = await session.get_request(approval.request_id)
            if request is None:
                continue
            requester = await session.get_user(request.created_by)
            views.append(
                ApprovalView(
                    approval=approval,
                    request_title=request.title,
                    request_type=await self._type_name(session, request),
                    requester_name=requester.full_name if requester else "Unknown",
                    priority=request.priority,
                    submitted_at=request.created_at,
                )
            )
        return views

    async def _notify_active_step(self, request_id: int) -> None:
        if self._notifier is None:
            return
        async with self.repository.session() as session:
            pending = await session.list_approvals(
                request_id=request_id, status=ApprovalStatus.PENDING_APPROVAL
            )
            if not pending:
                return
            approval = pending[0]
            request = await session.get_request(request_id)
            notification = self._builder.approval_request(
                approval,
                request,
                await self._type_name(session, request),
                approver=await session.get_user(approval.approver_id),
                requester=await session.get_user(request.created_by),
            )
        await self._deliver(notification)

    async def _notify_requester(
        self,
        request: Request,
        comments: Optional[str],
        approval: Optional[ApprovalRecord] = None,
    ) -> None:
        if self._notifier is None:
            return
        async with self.repository.session() as session:
            notification = self._builder.status_update(
                request,
                await self._type_name(session, request),
                requester=await session.get_user(request.created_by),
                comments=comments,
                approval=approval,
            )
        await self._deliver(notification)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self._notifier.send(notification)
        except Exception as exc:
            logger.warning(
                f"Failed to send {notification.kind} notification to user "
                f"{notification.recipient_id}: {exc}"
            )
