"""Repository abstraction for portal state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Optional, Protocol

from ..models import (
    Announcement,
    ApprovalRecord,
    Request,
    RequestType,
    SystemEvent,
    User,
    WorkflowInstance,
)


class PortalSession(Protocol):
    """Unit of work over the portal's stores.

    Every write made through a session becomes visible to other sessions
    only when the session exits without an exception; an exception discards
    all of them. Objects returned by a session are detached copies: changes
    are persisted only through the matching ``save_*`` call.
    """

    async def lock_request(self, request_id: int) -> None:
        """Serialize later writes touching ``request_id`` until commit."""

    # Users
    async def get_user(self, user_id: int) -> User | None: ...

    async def get_user_by_username(self, username: str) -> User | None: ...

    async def list_users(self) -> list[User]: ...

    async def add_user(self, user: User) -> User: ...

    # Request types
    async def get_request_type(self, request_type_id: int) -> RequestType | None: ...

    async def get_request_type_by_name(self, name: str) -> RequestType | None: ...

    async def list_request_types(self) -> list[RequestType]: ...

    async def add_request_type(self, request_type: RequestType) -> RequestType: ...

    async def save_request_type(self, request_type: RequestType) -> None: ...

    # Requests
    async def get_request(self, request_id: int) -> Request | None: ...

    async def list_requests(self, created_by: Optional[int] = None) -> list[Request]:
        """Return requests, most recently updated first."""

    async def add_request(self, request: Request) -> Request: ...

    async def save_request(self, request: Request) -> None: ...

    async def delete_request(self, request_id: int) -> None:
        """Delete the request together with its workflow and approvals."""

    # Workflows
    async def get_workflow(self, workflow_id: int) -> WorkflowInstance | None: ...

    async def get_workflow_for_request(
        self, request_id: int
    ) -> WorkflowInstance | None: ...

    async def list_workflows(
        self, status: Optional[str] = None
    ) -> list[WorkflowInstance]:
        """Return workflows, most recently started first."""

    async def add_workflow(self, workflow: WorkflowInstance) -> WorkflowInstance: ...

    async def save_workflow(self, workflow: WorkflowInstance) -> None: ...

    # Approvals
    async def get_approval(self, approval_id: int) -> ApprovalRecord | None: ...

    async def list_approvals(
        self,
        request_id: Optional[int] = None,
        approver_id: Optional[int] = None,
        status: Optional[str] = None,
        step_order: Optional[int] = None,
    ) -> list[ApprovalRecord]:
        """Return matching approvals ordered by request then step."""

    async def add_approval(self, approval: ApprovalRecord) -> ApprovalRecord: ...

    async def save_approval(self, approval: ApprovalRecord) -> None: ...

    # Event log
    async def add_event(self, event: SystemEvent) -> SystemEvent: ...

    async def list_events(self, limit: Optional[int] = None) -> list[SystemEvent]:
        """Return events, newest first."""

    # Announcements
    async def add_announcement(self, announcement: Announcement) -> Announcement: ...

    async def list_announcements(
        self, visible_at: Optional[datetime] = None
    ) -> list[Announcement]:
        """Return announcements, newest first.

        With ``visible_at``, only active ones not expired at that time.
        """


class PortalRepository(Protocol):
    """Protocol for portal persistence backends."""

    def session(self) -> AsyncContextManager[PortalSession]:
        """Open a unit of work that commits on clean exit."""

    async def close(self) -> None:
        """Release backend resources."""
