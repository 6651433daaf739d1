import asyncio
from datetime import datetime

import pytest

from portalflow.engine import WorkflowEngine
from portalflow.errors import (
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
)
from portalflow.models import Request, RequestType
from portalflow.persistence.inmemory import InMemorySession


async def _draft(repository, request_type_id, created_by, title="Summer trip"):
    async with repository.session() as session:
        return await session.add_request(
            Request(request_type_id=request_type_id, title=title, created_by=created_by)
        )


async def _approvals(repository, request_id):
    async with repository.session() as session:
        return await session.list_approvals(request_id=request_id)


async def _request(repository, request_id):
    async with repository.session() as session:
        return await session.get_request(request_id)


async def _workflow(repository, request_id):
    async with repository.session() as session:
        return await session.get_workflow_for_request(request_id)


@pytest.mark.asyncio
async def test_start_workflow_creates_one_approval_per_approver(repository, seed_portal):
    portal = await seed_portal(approver_count=3)
    fixed = datetime(2025, 3, 1, 9, 30)
    engine = WorkflowEngine(repository, clock=lambda: fixed)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)

    workflow = await engine.start_workflow(draft.id)

    assert workflow.status == "active"
    assert workflow.current_step == 1
    assert workflow.started_at == fixed
    approvals = await _approvals(repository, draft.id)
    assert [a.step_order for a in approvals] == [1, 2, 3]
    assert [a.approver_id for a in approvals] == [a.id for a in portal.approvers]
    assert [a.status for a in approvals] == ["pending_approval", "waiting", "waiting"]
    assert [a.step_name for a in approvals] == ["Review 1", "Review 2", "Review 3"]
    assert approvals[0].notified_at == fixed
    assert approvals[1].notified_at is None
    assert (await _request(repository, draft.id)).status == "pending_approval"


@pytest.mark.asyncio
async def test_unnamed_steps_get_default_names(repository):
    async with repository.session() as session:
        request_type = await session.add_request_type(
            RequestType(
                name="Expense",
                department="finance",
                created_by=1,
                approver_config=[{"approver_id": 7}, {"approver_id": 8}],
            )
        )
    draft = await _draft(repository, request_type.id, created_by=2)

    await WorkflowEngine(repository).start_workflow(draft.id)

    approvals = await _approvals(repository, draft.id)
    assert [a.step_name for a in approvals] == ["Approval Step 1", "Approval Step 2"]


@pytest.mark.asyncio
async def test_two_step_vacation_request_completes(repository, seed_portal):
    portal = await seed_portal(approver_count=2)
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    await engine.start_workflow(draft.id)
    first, second = await _approvals(repository, draft.id)

    await engine.approve_step(first.id, portal.approvers[0].id, comments="Enjoy")

    first, second = await _approvals(repository, draft.id)
    assert first.status == "approved"
    assert first.comments == "Enjoy"
    assert first.action_date is not None
    assert second.status == "pending_approval"
    assert second.notified_at is not None
    workflow = await _workflow(repository, draft.id)
    assert workflow.current_step == 2
    assert workflow.status == "active"
    assert (await _request(repository, draft.id)).status == "pending_approval"

    await engine.approve_step(second.id, portal.approvers[1].id)

    workflow = await _workflow(repository, draft.id)
    assert workflow.status == "completed"
    assert workflow.completed_at is not None
    assert workflow.current_step == 2
    assert (await _request(repository, draft.id)).status == "completed"
    assert all(a.status == "approved" for a in await _approvals(repository, draft.id))


@pytest.mark.asyncio
async def test_single_approver_request_completes_on_first_approval(
    repository, seed_portal
):
    portal = await seed_portal(approver_count=1, type_name="IT Equipment", department="it")
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id, "Laptop")
    await engine.start_workflow(draft.id)
    (approval,) = await _approvals(repository, draft.id)

    await engine.approve_step(approval.id, portal.approvers[0].id)

    assert (await _workflow(repository, draft.id)).status == "completed"
    assert (await _request(repository, draft.id)).status == "completed"


@pytest.mark.asyncio
@pytest.mark.parametrize("reject_at", [1, 2, 3])
async def test_rejection_at_any_step_terminates_workflow(
    repository, seed_portal, reject_at
):
    portal = await seed_portal(approver_count=3)
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    await engine.start_workflow(draft.id)
    approvals = await _approvals(repository, draft.id)

    for step in range(1, reject_at):
        await engine.approve_step(approvals[step - 1].id, portal.approvers[step - 1].id)
    await engine.reject_step(
        approvals[reject_at - 1].id, portal.approvers[reject_at - 1].id, comments="No"
    )

    workflow = await _workflow(repository, draft.id)
    assert workflow.status == "terminated"
    assert workflow.current_step == reject_at
    assert (await _request(repository, draft.id)).status == "rejected"
    statuses = [a.status for a in await _approvals(repository, draft.id)]
    assert statuses[reject_at - 1] == "rejected"
    assert statuses[:reject_at - 1] == ["approved"] * (reject_at - 1)
    assert statuses[reject_at:] == ["waiting"] * (3 - reject_at)


@pytest.mark.asyncio
async def test_at_most_one_step_pending_throughout(repository, seed_portal):
    portal = await seed_portal(approver_count=4)
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    await engine.start_workflow(draft.id)

    for index, approver in enumerate(portal.approvers):
        approvals = await _approvals(repository, draft.id)
        pending = [a for a in approvals if a.status == "pending_approval"]
        assert len(pending) == 1
        assert pending[0].step_order == index + 1
        await engine.approve_step(pending[0].id, approver.id)

    approvals = await _approvals(repository, draft.id)
    assert not [a for a in approvals if a.status == "pending_approval"]


@pytest.mark.asyncio
async def test_only_assigned_approver_may_act(repository, seed_portal):
    portal = await seed_portal()
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    await engine.start_workflow(draft.id)
    first, _ = await _approvals(repository, draft.id)

    with pytest.raises(AuthorizationError):
        await engine.approve_step(first.id, portal.approvers[1].id)
    with pytest.raises(AuthorizationError):
        await engine.reject_step(first.id, portal.requester.id)

    first, _ = await _approvals(repository, draft.id)
    assert first.status == "pending_approval"


@pytest.mark.asyncio
async def test_acting_on_non_pending_approval_is_invalid(repository, seed_portal):
    portal = await seed_portal()
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    await engine.start_workflow(draft.id)
    first, second = await _approvals(repository, draft.id)

    with pytest.raises(InvalidStateError):
        await engine.approve_step(second.id, portal.approvers[1].id)

    await engine.approve_step(first.id, portal.approvers[0].id)
    with pytest.raises(InvalidStateError):
        await engine.approve_step(first.id, portal.approvers[0].id)
    with pytest.raises(InvalidStateError):
        await engine.reject_step(first.id, portal.approvers[0].id)


@pytest.mark.asyncio
async def test_unknown_records_raise_not_found(repository):
    engine = WorkflowEngine(repository)

    with pytest.raises(NotFoundError):
        await engine.start_workflow(404)
    with pytest.raises(NotFoundError):
        await engine.approve_step(404, 1)
    with pytest.raises(NotFoundError):
        await engine.reject_step(404, 1)
    with pytest.raises(NotFoundError):
        await engine.advance_workflow(404)


@pytest.mark.asyncio
async def test_second_start_is_rejected(repository, seed_portal):
    portal = await seed_portal()
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    await engine.start_workflow(draft.id)

    with pytest.raises(ConflictError):
        await engine.start_workflow(draft.id)

    assert len(await _approvals(repository, draft.id)) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "approver_config",
    [[], [{"name": "missing id"}], [{"approver_id": "seven"}], ["7"]],
)
async def test_bad_approver_config_leaves_request_untouched(repository, approver_config):
    async with repository.session() as session:
        request_type = await session.add_request_type(
            RequestType(
                name="Broken",
                department="other",
                created_by=1,
                approver_config=approver_config,
            )
        )
    draft = await _draft(repository, request_type.id, created_by=2)

    with pytest.raises(ConfigurationError):
        await WorkflowEngine(repository).start_workflow(draft.id)

    assert await _workflow(repository, draft.id) is None
    assert await _approvals(repository, draft.id) == []
    assert (await _request(repository, draft.id)).status == "draft"


@pytest.mark.asyncio
async def test_advance_requires_current_step_approved(repository, seed_portal):
    portal = await seed_portal()
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    workflow = await engine.start_workflow(draft.id)

    with pytest.raises(InvalidStateError, match="current step not completed"):
        await engine.advance_workflow(workflow.id)

    workflow = await _workflow(repository, draft.id)
    assert workflow.current_step == 1
    assert workflow.status == "active"
    assert [a.status for a in await _approvals(repository, draft.id)] == [
        "pending_approval",
        "waiting",
    ]


@pytest.mark.asyncio
async def test_advance_returns_finished_workflow_unchanged(repository, seed_portal):
    portal = await seed_portal()
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    workflow = await engine.start_workflow(draft.id)
    first, _ = await _approvals(repository, draft.id)
    await engine.reject_step(first.id, portal.approvers[0].id)

    result = await engine.advance_workflow(workflow.id)

    assert result.status == "terminated"
    assert result.current_step == 1


@pytest.mark.asyncio
async def test_running_workflow_keeps_its_approver_snapshot(
    repository, service, seed_portal
):
    portal = await seed_portal()
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    await engine.start_workflow(draft.id)

    await service.update_request_type(
        portal.request_type.id,
        approver_config=[{"approver_id": portal.admin.id}],
    )

    first, second = await _approvals(repository, draft.id)
    assert first.approver_id == portal.approvers[0].id
    assert second.approver_id == portal.approvers[1].id
    await engine.approve_step(first.id, portal.approvers[0].id)
    await engine.approve_step(second.id, portal.approvers[1].id)
    assert (await _workflow(repository, draft.id)).status == "completed"


@pytest.mark.asyncio
async def test_steps_snapshot_description_and_due_date(
    repository, service, seed_portal
):
    portal = await seed_portal()
    deadline = datetime(2025, 9, 1, 12, 0)
    request_type = await service.register_request_type(
        "Laptop",
        "it",
        [
            {
                "approver_id": portal.approvers[0].id,
                "name": "Budget",
                "description": "Confirm cost centre",
                "due_date": deadline,
            },
            {"approver_id": portal.approvers[1].id},
        ],
        portal.admin.id,
    )
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, request_type.id, portal.requester.id)
    await engine.start_workflow(draft.id)

    await service.update_request_type(
        request_type.id,
        approver_config=[
            {
                "approver_id": portal.approvers[0].id,
                "description": "Changed later",
            }
        ],
    )

    first, second = await _approvals(repository, draft.id)
    assert first.step_description == "Confirm cost centre"
    assert first.step_due_date == deadline
    assert second.step_description is None
    assert second.step_due_date is None
    (summary,) = await service.active_workflows(portal.requester.id)
    assert summary.steps[0].description == "Confirm cost centre"
    assert summary.steps[0].due_date == deadline


@pytest.mark.asyncio
async def test_failed_write_rolls_back_the_whole_step(
    repository, seed_portal, monkeypatch
):
    portal = await seed_portal()
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    await engine.start_workflow(draft.id)
    first, _ = await _approvals(repository, draft.id)

    async def broken_save(self, workflow):
        raise RuntimeError("disk full")

    monkeypatch.setattr(InMemorySession, "save_workflow", broken_save)
    with pytest.raises(RuntimeError):
        await engine.approve_step(first.id, portal.approvers[0].id)

    first, second = await _approvals(repository, draft.id)
    assert first.status == "pending_approval"
    assert first.action_date is None
    assert second.status == "waiting"
    assert (await _request(repository, draft.id)).status == "pending_approval"
    assert (await _workflow(repository, draft.id)).current_step == 1


@pytest.mark.asyncio
async def test_concurrent_approvals_of_same_step_apply_once(repository, seed_portal):
    portal = await seed_portal()
    engine = WorkflowEngine(repository)
    draft = await _draft(repository, portal.request_type.id, portal.requester.id)
    await engine.start_workflow(draft.id)
    first, _ = await _approvals(repository, draft.id)
    approver_id = portal.approvers[0].id

    results = await asyncio.gather(
        engine.approve_step(first.id, approver_id),
        engine.approve_step(first.id, approver_id),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], InvalidStateError)
    assert (await _workflow(repository, draft.id)).current_step == 2
    assert engine._locks == {}
