"""Approval workflow engine for portal requests."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, Optional

from .errors import AuthorizationError, ConflictError, InvalidStateError, NotFoundError
from .models import (
    ApprovalRecord,
    ApprovalStatus,
    Request,
    RequestStatus,
    SystemEvent,
    WorkflowInstance,
    WorkflowStatus,
    utcnow,
)
from .persistence import PortalRepository, PortalSession
from .registry import parse_approver_config

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Creates, advances and terminates request approval workflows.

    Each operation runs as one repository unit of work, so a failed
    precondition or a storage error leaves every record as it was.
    Operations touching the same request are serialized in-process; the SQL
    backend also row-locks the request for the duration of the transaction.

    Steps are a snapshot of the request type's approver configuration taken
    when the workflow starts. Editing the request type afterwards does not
    change the steps of workflows already running.
    """

    def __init__(
        self,
        repository: PortalRepository,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._locks: Dict[int, asyncio.Lock] = {}
        self._waiters: Dict[int, int] = {}

    @asynccontextmanager
    async def _serialized(self, request_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(request_id, asyncio.Lock())
        self._waiters[request_id] = self._waiters.get(request_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[request_id] -= 1
            if not self._waiters[request_id]:
                del self._waiters[request_id]
                del self._locks[request_id]

    # ------------------------------------------------------------------
    # Operations
    async def start_workflow(self, request_id: int) -> WorkflowInstance:
        """Create the workflow and one approval per configured approver.

        Step 1 becomes ``pending_approval``; later steps wait. The request
        moves to ``pending_approval``.

        Raises:
            NotFoundError: If the request or its request type is missing.
            ConfigurationError: If the approver configuration is empty or
                malformed.
            ConflictError: If the request already has a workflow.
        """

        async with self._serialized(request_id):
            async with self._repository.session() as session:
                await session.lock_request(request_id)
                request = await self._require_request(session, request_id)
                if await session.get_workflow_for_request(request_id) is not None:
                    raise ConflictError(
                        f"Workflow already exists for request {request_id}"
                    )
                request_type = await session.get_request_type(request.request_type_id)
                if request_type is None:
                    raise NotFoundError("Request type", request.request_type_id)
                steps = parse_approver_config(request_type.approver_config)

                now = self._clock()
                workflow = await session.add_workflow(
                    WorkflowInstance(
                        request_id=request_id,
                        current_step=1,
                        started_at=now,
                        due_date=request.due_date,
                        status=WorkflowStatus.ACTIVE,
                    )
                )
                for order, step in enumerate(steps, start=1):
                    first = order == 1
                    await session.add_approval(
                        ApprovalRecord(
                            request_id=request_id,
                            approver_id=step.approver_id,
                            step_order=order,
                            step_name=step.name or f"Approval Step {order}",
                            step_description=step.description,
                            step_due_date=step.due_date,
                            status=(
                                ApprovalStatus.PENDING_APPROVAL
                                if first
                                else ApprovalStatus.WAITING
                            ),
                            notified_at=now if first else None,
                        )
                    )
                await self._set_request_status(
                    session, request, RequestStatus.PENDING_APPROVAL, now
                )
                await session.add_event(
                    SystemEvent.info(
                        f"Workflow started for request {request_id}",
                        user_id=request.created_by,
                        workflow_id=workflow.id,
                        steps=len(steps),
                    )
                )
        logger.info(
            f"Workflow {workflow.id} started for request {request_id} with {len(steps)} step(s)"
        )
        return workflow

    async def approve_step(
        self, approval_id: int, acting_user_id: int, comments: Optional[str] = None
    ) -> ApprovalRecord:
        """Approve a pending step and advance once no step is pending.

        Raises:
            NotFoundError: If the approval does not exist.
            AuthorizationError: If ``acting_user_id`` is not the approver.
            InvalidStateError: If the approval is not ``pending_approval``.
        """

        request_id = await self._request_id_for_approval(approval_id)
        async with self._serialized(request_id):
            async with self._repository.session() as session:
                await session.lock_request(request_id)
                approval = await self._require_actionable(
                    session, approval_id, acting_user_id
                )
                now = self._clock()
                approval.status = ApprovalStatus.APPROVED
                approval.action_date = now
                approval.comments = comments
                await session.save_approval(approval)

                remaining = await session.list_approvals(
                    request_id=request_id, status=ApprovalStatus.PENDING_APPROVAL
                )
                if not remaining:
                    request = await self._require_request(session, request_id)
                    await self._set_request_status(
                        session, request, RequestStatus.APPROVED, now
                    )
                    workflow = await session.get_workflow_for_request(request_id)
                    if workflow is not None:
                        await self._advance(session, workflow, request)
                await session.add_event(
                    SystemEvent.info(
                        f"Step {approval.step_order} approved for request {request_id}",
                        user_id=acting_user_id,
                        approval_id=approval_id,
                    )
                )
        logger.info(
            f"Approval {approval_id} (step {approval.step_order}) approved by user {acting_user_id}"
        )
        return approval

    async def reject_step(
        self, approval_id: int, acting_user_id: int, comments: Optional[str] = None
    ) -> ApprovalRecord:
        """Reject a pending step, terminating the whole workflow.

        A single rejection ends the workflow whatever the number of steps
        left. Raises the same errors as :meth:`approve_step`.
        """

        request_id = await self._request_id_for_approval(approval_id)
        async with self._serialized(request_id):
            async with self._repository.session() as session:
                await session.lock_request(request_id)
                approval = await self._require_actionable(
                    session, approval_id, acting_user_id
                )
                now = self._clock()
                approval.status = ApprovalStatus.REJECTED
                approval.action_date = now
                approval.comments = comments
                await session.save_approval(approval)

                request = await self._require_request(session, request_id)
                await self._set_request_status(
                    session, request, RequestStatus.REJECTED, now
                )
                workflow = await session.get_workflow_for_request(request_id)
                if workflow is not None:
                    workflow.status = WorkflowStatus.TERMINATED
                    await session.save_workflow(workflow)
                await session.add_event(
                    SystemEvent.info(
                        f"Request rejected: {request.title}",
                        user_id=acting_user_id,
                        approval_id=approval_id,
                        step=approval.step_order,
                    )
                )
        logger.info(
            f"Approval {approval_id} (step {approval.step_order}) rejected by user "
            f"{acting_user_id}; workflow for request {request_id} terminated"
        )
        return approval

    async def advance_workflow(self, workflow_id: int) -> WorkflowInstance:
        """Move an active workflow past its approved current step.

        Returns the workflow unchanged when it is no longer active.

        Raises:
            NotFoundError: If the workflow does not exist.
            InvalidStateError: If the current step is not approved yet.
        """

        async with self._repository.session() as session:
            workflow = await session.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)

        async with self._serialized(workflow.request_id):
            async with self._repository.session() as session:
                await session.lock_request(workflow.request_id)
                workflow = await session.get_workflow(workflow_id)
                if workflow is None:
                    raise NotFoundError("Workflow", workflow_id)
                if workflow.status != WorkflowStatus.ACTIVE:
                    return workflow
                request = await self._require_request(session, workflow.request_id)
                return await self._advance(session, workflow, request)

    # ------------------------------------------------------------------
    # Internals
    async def _advance(
        self, session: PortalSession, workflow: WorkflowInstance, request: Request
    ) -> WorkflowInstance:
        if workflow.status != WorkflowStatus.ACTIVE:
            return workflow

        current = await session.list_approvals(
            request_id=workflow.request_id, step_order=workflow.current_step
        )
        if not current or current[0].status != ApprovalStatus.APPROVED:
            raise InvalidStateError(
                f"Workflow {workflow.id}: current step not completed"
            )

        now = self._clock()
        next_step = workflow.current_step + 1
        upcoming = await session.list_approvals(
            request_id=workflow.request_id, step_order=next_step
        )
        if not upcoming:
            workflow.status = WorkflowStatus.COMPLETED
            workflow.completed_at = now
            await session.save_workflow(workflow)
            await self._set_request_status(
                session, request, RequestStatus.COMPLETED, now
            )
            await session.add_event(
                SystemEvent.info(
                    f"Workflow completed for request {workflow.request_id}",
                    workflow_id=workflow.id,
                )
            )
            logger.info(f"Workflow {workflow.id} completed")
            return workflow

        workflow.current_step = next_step
        await session.save_workflow(workflow)
        activated = upcoming[0]
        activated.status = ApprovalStatus.PENDING_APPROVAL
        activated.notified_at = now
        await session.save_approval(activated)
        # the request was marked approved by the step that just cleared
        await self._set_request_status(
            session, request, RequestStatus.PENDING_APPROVAL, now
        )
        await session.add_event(
            SystemEvent.info(
                f"Workflow advanced to step {next_step} for request {workflow.request_id}",
                workflow_id=workflow.id,
                approval_id=activated.id,
            )
        )
        logger.info(f"Workflow {workflow.id} advanced to step {next_step}")
        return workflow

    async def _request_id_for_approval(self, approval_id: int) -> int:
        async with self._repository.session() as session:
            approval = await session.get_approval(approval_id)
        if approval is None:
            raise NotFoundError("Approval", approval_id)
        return approval.request_id

    async def _require_actionable(
        self, session: PortalSession, approval_id: int, acting_user_id: int
    ) -> ApprovalRecord:
        approval = await session.get_approval(approval_id)
        if approval is None:
            raise NotFoundError("Approval", approval_id)
        if approval.approver_id != acting_user_id:
            raise AuthorizationError(
                f"User {acting_user_id} is not the approver of approval {approval_id}"
            )
        if approval.status != ApprovalStatus.PENDING_APPROVAL:
            raise InvalidStateError(
                f"Approval {approval_id} is {approval.status}, not pending_approval"
            )
        return approval

    @staticmethod
    async def _require_request(session: PortalSession, request_id: int) -> Request:
        request = await session.get_request(request_id)
        if request is None:
            raise NotFoundError("Request", request_id)
        return request

    @staticmethod
    async def _set_request_status(
        session: PortalSession, request: Request, status: RequestStatus, now: datetime
    ) -> None:
        request.status = status
        request.updated_at = now
        await session.save_request(request)
