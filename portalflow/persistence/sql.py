"""SQL implementation of the portal repository (SQLite or PostgreSQL)."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Optional, Type, TypeVar

from sqlalchemy import delete, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel, select

from ..db import (
    AnnouncementRow,
    ApprovalRow,
    PortalDB,
    RequestRow,
    RequestTypeRow,
    SystemEventRow,
    UserRow,
    WorkflowRow,
)
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

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=PortalModel)
RowT = TypeVar("RowT", bound=SQLModel)


def _to_model(model_cls: Type[ModelT], row: SQLModel | None) -> ModelT | None:
    if row is None:
        return None
    return model_cls.model_validate(row.model_dump())


def _values(model: PortalModel) -> dict[str, Any]:
    return model.model_dump(exclude={"id"})


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class SQLPortalSession(PortalSession):
    """Session bound to one database transaction."""

    def __init__(self, session: AsyncSession, supports_row_locks: bool) -> None:
        self._session = session
        self._supports_row_locks = supports_row_locks

    # ------------------------------------------------------------------
    # Helper methods
    async def _insert(self, row: RowT, what: str) -> RowT:
        self._session.add(row)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise ConflictError(f"Cannot store {what}: {exc.orig}") from exc
        return row

    async def _update(self, row_cls: Type[SQLModel], model: PortalModel) -> None:
        row = await self._session.get(row_cls, model.id)
        if row is None:
            raise LookupError(f"{row_cls.__tablename__} row {model.id} is missing")
        for key, value in _values(model).items():
            setattr(row, key, value)
        await self._session.flush()

    async def _all(self, statement) -> list:
        result = await self._session.execute(statement)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    async def lock_request(self, request_id: int) -> None:
        if not self._supports_row_locks:
            return
        await self._session.execute(
            select(RequestRow.id).where(RequestRow.id == request_id).with_for_update()
        )

    # ------------------------------------------------------------------
    # Users
    async def get_user(self, user_id: int) -> User | None:
        return _to_model(User, await self._session.get(UserRow, user_id))

    async def get_user_by_username(self, username: str) -> User | None:
        rows = await self._all(select(UserRow).where(UserRow.username == username))
        return _to_model(User, rows[0]) if rows else None

    async def list_users(self) -> list[User]:
        rows = await self._all(select(UserRow).order_by(UserRow.full_name))
        return [_to_model(User, r) for r in rows]

    async def add_user(self, user: User) -> User:
        row = await self._insert(UserRow(**_values(user)), f"user {user.username}")
        return _to_model(User, row)

    # ------------------------------------------------------------------
    # Request types
    async def get_request_type(self, request_type_id: int) -> RequestType | None:
        row = await self._session.get(RequestTypeRow, request_type_id)
        return _to_model(RequestType, row)

    async def get_request_type_by_name(self, name: str) -> RequestType | None:
        rows = await self._all(select(RequestTypeRow).where(RequestTypeRow.name == name))
        return _to_model(RequestType, rows[0]) if rows else None

    async def list_request_types(self) -> list[RequestType]:
        rows = await self._all(select(RequestTypeRow).order_by(RequestTypeRow.name))
        return [_to_model(RequestType, r) for r in rows]

    async def add_request_type(self, request_type: RequestType) -> RequestType:
        row = await self._insert(
            RequestTypeRow(**_values(request_type)),
            f"request type {request_type.name}",
        )
        return _to_model(RequestType, row)

    async def save_request_type(self, request_type: RequestType) -> None:
        await self._update(RequestTypeRow, request_type)

    # ------------------------------------------------------------------
    # Requests
    async def get_request(self, request_id: int) -> Request | None:
        return _to_model(Request, await self._session.get(RequestRow, request_id))

    async def list_requests(self, created_by: Optional[int] = None) -> list[Request]:
        statement = select(RequestRow)
        if created_by is not None:
            statement = statement.where(RequestRow.created_by == created_by)
        statement = statement.order_by(RequestRow.updated_at.desc(), RequestRow.id.desc())
        return [_to_model(Request, r) for r in await self._all(statement)]

    async def add_request(self, request: Request) -> Request:
        row = await self._insert(RequestRow(**_values(request)), "request")
        return _to_model(Request, row)

    async def save_request(self, request: Request) -> None:
        await self._update(RequestRow, request)

    async def delete_request(self, request_id: int) -> None:
        await self._session.execute(
            delete(ApprovalRow).where(ApprovalRow.request_id == request_id)
        )
        await self._session.execute(
            delete(WorkflowRow).where(WorkflowRow.request_id == request_id)
        )
        await self._session.execute(delete(RequestRow).where(RequestRow.id == request_id))

    # ------------------------------------------------------------------
    # Workflows
    async def get_workflow(self, workflow_id: int) -> WorkflowInstance | None:
        row = await self._session.get(WorkflowRow, workflow_id)
        return _to_model(WorkflowInstance, row)

    async def get_workflow_for_request(
        self, request_id: int
    ) -> WorkflowInstance | None:
        rows = await self._all(
            select(WorkflowRow).where(WorkflowRow.request_id == request_id)
        )
        return _to_model(WorkflowInstance, rows[0]) if rows else None

    async def list_workflows(
        self, status: Optional[str] = None
    ) -> list[WorkflowInstance]:
        statement = select(WorkflowRow)
        if status is not None:
            statement = statement.where(WorkflowRow.status == _plain(status))
        statement = statement.order_by(WorkflowRow.started_at.desc(), WorkflowRow.id.desc())
        return [_to_model(WorkflowInstance, r) for r in await self._all(statement)]

    async def add_workflow(self, workflow: WorkflowInstance) -> WorkflowInstance:
        row = await self._insert(
            WorkflowRow(**_values(workflow)),
            f"workflow for request {workflow.request_id}",
        )
        return _to_model(WorkflowInstance, row)

    async def save_workflow(self, workflow: WorkflowInstance) -> None:
        await self._update(WorkflowRow, workflow)

    # ------------------------------------------------------------------
    # Approvals
    async def get_approval(self, approval_id: int) -> ApprovalRecord | None:
        row = await self._session.get(ApprovalRow, approval_id)
        return _to_model(ApprovalRecord, row)

    async def list_approvals(
        self,
        request_id: Optional[int] = None,
        approver_id: Optional[int] = None,
        status: Optional[str] = None,
        step_order: Optional[int] = None,
    ) -> list[ApprovalRecord]:
        statement = select(ApprovalRow)
        if request_id is not None:
            statement = statement.where(ApprovalRow.request_id == request_id)
        if approver_id is not None:
            statement = statement.where(ApprovalRow.approver_id == approver_id)
        if status is not None:
            statement = statement.where(ApprovalRow.status == _plain(status))
        if step_order is not None:
            statement = statement.where(ApprovalRow.step_order == step_order)
        statement = statement.order_by(ApprovalRow.request_id, ApprovalRow.step_order)
        return [_to_model(ApprovalRecord, r) for r in await self._all(statement)]

    async def add_approval(self, approval: ApprovalRecord) -> ApprovalRecord:
        row = await self._insert(
            ApprovalRow(**_values(approval)),
            f"step {approval.step_order} of request {approval.request_id}",
        )
        return _to_model(ApprovalRecord, row)

    async def save_approval(self, approval: ApprovalRecord) -> None:
        await self._update(ApprovalRow, approval)

    # ------------------------------------------------------------------
    # Event log
    async def add_event(self, event: SystemEvent) -> SystemEvent:
        row = SystemEventRow(**_values(event))
        self._session.add(row)
        await self._session.flush()
        return _to_model(SystemEvent, row)

    async def list_events(self, limit: Optional[int] = None) -> list[SystemEvent]:
        statement = select(SystemEventRow).order_by(SystemEventRow.id.desc())
        if limit is not None:
            statement = statement.limit(limit)
        return [_to_model(SystemEvent, r) for r in await self._all(statement)]

    # ------------------------------------------------------------------
    # Announcements
    async def add_announcement(self, announcement: Announcement) -> Announcement:
        row = await self._insert(
            AnnouncementRow(**_values(announcement)),
            f"announcement {announcement.title}",
        )
        return _to_model(Announcement, row)

    async def list_announcements(
        self, visible_at: Optional[datetime] = None
    ) -> list[Announcement]:
        statement = select(AnnouncementRow)
        if visible_at is not None:
            statement = statement.where(
                AnnouncementRow.is_active.is_(True),
                or_(
                    AnnouncementRow.expires_at.is_(None),
                    AnnouncementRow.expires_at >= visible_at,
                ),
            )
        statement = statement.order_by(
            AnnouncementRow.created_at.desc(), AnnouncementRow.id.desc()
        )
        return [_to_model(Announcement, r) for r in await self._all(statement)]


class SQLPortalRepository(PortalRepository):
    """Persist portal state through SQLModel on SQLite or PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        self.db = PortalDB(database_url)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def _ensure_schema(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if not self._initialized:
                await self.db.init_db()
                self._initialized = True
                logger.debug(f"Schema ready on {self.db.engine.url!r}")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[SQLPortalSession]:
        await self._ensure_schema()
        async with self.db.session() as session:
            async with session.begin():
                yield SQLPortalSession(session, supports_row_locks=not self.db.is_sqlite)

    async def close(self) -> None:
        await self.db.dispose()
