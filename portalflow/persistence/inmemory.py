"""In-memory implementation of the portal repository."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, Optional, TypeVar

from ..errors import ConflictError
from ..models import (
    Announcement,
    ApprovalRecord,
    PortalModel,
    Request,
    RequestType,
    SystemEvent,
    User,
    WorkflowInstance,
)
from .repository import PortalRepository, PortalSession

ModelT = TypeVar("ModelT", bound=PortalModel)


def _copy(model: ModelT) -> ModelT:
    return model.model_copy(deep=True)


@dataclass
class _State:
    users: Dict[int, User] = field(default_factory=dict)
    request_types: Dict[int, RequestType] = field(default_factory=dict)
    requests: Dict[int, Request] = field(default_factory=dict)
    workflows: Dict[int, WorkflowInstance] = field(default_factory=dict)
    approvals: Dict[int, ApprovalRecord] = field(default_factory=dict)
    events: Dict[int, SystemEvent] = field(default_factory=dict)
    announcements: Dict[int, Announcement] = field(default_factory=dict)
    last_id: int = 0

    def clone(self) -> "_State":
        return _State(
            users={k: _copy(v) for k, v in self.users.items()},
            request_types={k: _copy(v) for k, v in self.request_types.items()},
            requests={k: _copy(v) for k, v in self.requests.items()},
            workflows={k: _copy(v) for k, v in self.workflows.items()},
            approvals={k: _copy(v) for k, v in self.approvals.items()},
            events={k: _copy(v) for k, v in self.events.items()},
            announcements={k: _copy(v) for k, v in self.announcements.items()},
            last_id=self.last_id,
        )

    def next_id(self) -> int:
        self.last_id += 1
        return self.last_id


class InMemorySession(PortalSession):
    """Session working on a private copy of the repository state."""

    def __init__(self, state: _State) -> None:
        self._state = state

    async def lock_request(self, request_id: int) -> None:
        # the repository already runs one session at a time
        return None

    # ------------------------------------------------------------------
    async def get_user(self, user_id: int) -> User | None:
        user = self._state.users.get(user_id)
        return _copy(user) if user else None

    async def get_user_by_username(self, username: str) -> User | None:
        for user in self._state.users.values():
            if user.username == username:
                return _copy(user)
        return None

    async def list_users(self) -> list[User]:
        users = sorted(self._state.users.values(), key=lambda u: u.full_name)
        return [_copy(u) for u in users]

    async def add_user(self, user: User) -> User:
        for existing in self._state.users.values():
            if existing.username == user.username or existing.email == user.email:
                raise ConflictError(f"User already exists: {user.username}")
        stored = user.model_copy(update={"id": self._state.next_id()}, deep=True)
        self._state.users[stored.id] = stored
        return _copy(stored)

    # ------------------------------------------------------------------
    async def get_request_type(self, request_type_id: int) -> RequestType | None:
        request_type = self._state.request_types.get(request_type_id)
        return _copy(request_type) if request_type else None

    async def get_request_type_by_name(self, name: str) -> RequestType | None:
        for request_type in self._state.request_types.values():
            if request_type.name == name:
                return _copy(request_type)
        return None

    async def list_request_types(self) -> list[RequestType]:
        types = sorted(self._state.request_types.values(), key=lambda t: t.name)
        return [_copy(t) for t in types]

    async def add_request_type(self, request_type: RequestType) -> RequestType:
        if await self.get_request_type_by_name(request_type.name) is not None:
            raise ConflictError(f"Request type already exists: {request_type.name}")
        stored = request_type.model_copy(
            update={"id": self._state.next_id()}, deep=True
        )
        self._state.request_types[stored.id] = stored
        return _copy(stored)

    async def save_request_type(self, request_type: RequestType) -> None:
        self._state.request_types[request_type.id] = _copy(request_type)

    # ------------------------------------------------------------------
    async def get_request(self, request_id: int) -> Request | None:
        request = self._state.requests.get(request_id)
        return _copy(request) if request else None

    async def list_requests(self, created_by: Optional[int] = None) -> list[Request]:
        requests = [
            r
            for r in self._state.requests.values()
            if created_by is None or r.created_by == created_by
        ]
        requests.sort(key=lambda r: (r.updated_at, r.id), reverse=True)
        return [_copy(r) for r in requests]

    async def add_request(self, request: Request) -> Request:
        stored = request.model_copy(update={"id": self._state.next_id()}, deep=True)
        self._state.requests[stored.id] = stored
        return _copy(stored)

    async def save_request(self, request: Request) -> None:
        self._state.requests[request.id] = _copy(request)

    async def delete_request(self, request_id: int) -> None:
        self._state.requests.pop(request_id, None)
        for workflow_id in [
            w.id for w in self._state.workflows.values() if w.request_id == request_id
        ]:
            del self._state.workflows[workflow_id]
        for approval_id in [
            a.id for a in self._state.approvals.values() if a.request_id == request_id
        ]:
            del self._state.approvals[approval_id]

    # ------------------------------------------------------------------
    async def get_workflow(self, workflow_id: int) -> WorkflowInstance | None:
        workflow = self._state.workflows.get(workflow_id)
        return _copy(workflow) if workflow else None

    async def get_workflow_for_request(
        self, request_id: int
    ) -> WorkflowInstance | None:
        for workflow in self._state.workflows.values():
            if workflow.request_id == request_id:
                return _copy(workflow)
        return None

    async def list_workflows(
        self, status: Optional[str] = None
    ) -> list[WorkflowInstance]:
        workflows = [
            w
            for w in self._state.workflows.values()
            if status is None or w.status == status
        ]
        workflows.sort(key=lambda w: (w.started_at, w.id), reverse=True)
        return [_copy(w) for w in workflows]

    async def add_workflow(self, workflow: WorkflowInstance) -> WorkflowInstance:
        if await self.get_workflow_for_request(workflow.request_id) is not None:
            raise ConflictError(
                f"Workflow already exists for request {workflow.request_id}"
            )
        stored = workflow.model_copy(update={"id": self._state.next_id()}, deep=True)
        self._state.workflows[stored.id] = stored
        return _copy(stored)

    async def save_workflow(self, workflow: WorkflowInstance) -> None:
        self._state.workflows[workflow.id] = _copy(workflow)

    # ------------------------------------------------------------------
    async def get_approval(self, approval_id: int) -> ApprovalRecord | None:
        approval = self._state.approvals.get(approval_id)
        return _copy(approval) if approval else None

    async def list_approvals(
        self,
        request_id: Optional[int] = None,
        approver_id: Optional[int] = None,
        status: Optional[str] = None,
        step_order: Optional[int] = None,
    ) -> list[ApprovalRecord]:
        approvals = [
            a
            for a in self._state.approvals.values()
            if (request_id is None or a.request_id == request_id)
            and (approver_id is None or a.approver_id == approver_id)
            and (status is None or a.status == status)
            and (step_order is None or a.step_order == step_order)
        ]
        approvals.sort(key=lambda a: (a.request_id, a.step_order))
        return [_copy(a) for a in approvals]

    async def add_approval(self, approval: ApprovalRecord) -> ApprovalRecord:
        if await self.list_approvals(
            request_id=approval.request_id, step_order=approval.step_order
        ):
            raise ConflictError(
                f"Step {approval.step_order} already exists for request {approval.request_id}"
            )
        stored = approval.model_copy(update={"id": self._state.next_id()}, deep=True)
        self._state.approvals[stored.id] = stored
        return _copy(stored)

    async def save_approval(self, approval: ApprovalRecord) -> None:
        self._state.approvals[approval.id] = _copy(approval)

    # ------------------------------------------------------------------
    async def add_event(self, event: SystemEvent) -> SystemEvent:
        stored = event.model_copy(update={"id": self._state.next_id()}, deep=True)
        self._state.events[stored.id] = stored
        return _copy(stored)

    async def list_events(self, limit: Optional[int] = None) -> list[SystemEvent]:
        events = sorted(self._state.events.values(), key=lambda e: e.id, reverse=True)
        if limit is not None:
            events = events[:limit]
        return [_copy(e) for e in events]

    # ------------------------------------------------------------------
    async def add_announcement(self, announcement: Announcement) -> Announcement:
        stored = announcement.model_copy(
            update={"id": self._state.next_id()}, deep=True
        )
        self._state.announcements[stored.id] = stored
        return _copy(stored)

    async def list_announcements(
        self, visible_at: Optional[datetime] = None
    ) -> list[Announcement]:
        announcements = [
            a
            for a in self._state.announcements.values()
            if visible_at is None or a.is_visible(visible_at)
        ]
        announcements.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return [_copy(a) for a in announcements]


class InMemoryPortalRepository(PortalRepository):
    """Store portal state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Sessions run one at a time; each
    works on a copy of the state that replaces it on commit.
    """

    def __init__(self) -> None:
        self._state = _State()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[InMemorySession]:
        async with self._lock:
            working = self._state.clone()
            yield InMemorySession(working)
            self._state = working

    async def close(self) -> None:
        return None
