"""Command line interface for administering portal requests and approvals."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer

from portalflow import PortalService, load_config
from portalflow.errors import PortalflowError
from portalflow.models import utcnow

T = TypeVar("T")

app = typer.Typer(help="CLI for portal request workflows")

# Command groups
request_type_app = typer.Typer(help="Commands for managing request types")
user_app = typer.Typer(help="Commands for managing portal users")
request_app = typer.Typer(help="Commands for submitting and inspecting requests")
approval_app = typer.Typer(help="Commands for acting on approvals")
workflow_app = typer.Typer(help="Commands for inspecting workflows")
announcement_app = typer.Typer(help="Commands for portal announcements")

app.add_typer(request_type_app, name="request-type")
app.add_typer(user_app, name="user")
app.add_typer(request_app, name="request")
app.add_typer(approval_app, name="approval")
app.add_typer(workflow_app, name="workflow")
app.add_typer(announcement_app, name="announcement")


@app.callback()
def main(
    ctx: typer.Context,
    database_url: Optional[str] = typer.Option(
        None, "--database-url", help="Database URL (sqlite:///... or postgresql://...)"
    ),
    config: Optional[Path] = typer.Option(None, "--config", help="YAML config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
) -> None:
    """Portalflow CLI entry point."""
    settings = load_config(str(config) if config else None)
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config": settings, "database_url": database_url}


def _run(ctx: typer.Context, operation: Callable[[PortalService], Awaitable[T]]) -> T:
    """Run ``operation`` against a fresh service and report domain errors."""

    async def runner() -> T:
        service = PortalService.from_config(
            ctx.obj["config"], database_url=ctx.obj["database_url"]
        )
        try:
            return await operation(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except PortalflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_approver(value: str) -> dict[str, Any]:
    """``"7"`` or ``"7:Manager Review"`` -> approver config entry."""
    approver_id, _, name = value.partition(":")
    try:
        entry: dict[str, Any] = {"approver_id": int(approver_id)}
    except ValueError:
        raise typer.BadParameter(f"Approver must be ID or ID:NAME, got {value!r}")
    if name:
        entry["name"] = name
    return entry


def _parse_data(items: List[str]) -> dict[str, str]:
    data: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Form data must be KEY=VALUE, got {item!r}")
        data[key] = value
    return data


# ----------------------------------------------------------------------
# Request types
@request_type_app.command("add")
def request_type_add(
    ctx: typer.Context,
    name: str,
    department: str = typer.Option(..., help="Owning department (it, hr, finance, ...)"),
    approver: List[str] = typer.Option(
        ..., "--approver", help="Approver as ID or ID:STEP_NAME; repeat in order"
    ),
    created_by: int = typer.Option(..., "--created-by", help="Admin user id"),
    description: Optional[str] = None,
) -> None:
    """
    Register a request type and its ordered approvers.

    Example:
        portalflow request-type add "Vacation Request" --department hr \\
            --approver 2:Manager --approver 3:HR --created-by 1
    """
    approvers = [_parse_approver(value) for value in approver]
    request_type = _run(
        ctx,
        lambda service: service.register_request_type(
            name, department, approvers, created_by, description=description
        ),
    )
    typer.echo(
        f"Created request type {request_type.id}: {request_type.name} "
        f"({len(approvers)} step(s))"
    )


@request_type_app.command("list")
def request_type_list(ctx: typer.Context) -> None:
    """List request types with their approver sequence."""
    request_types = _run(ctx, lambda service: service.list_request_types())
    if not request_types:
        typer.echo("No request types found")
        return
    for rt in request_types:
        approvers = ",".join(str(step["approver_id"]) for step in rt.approver_config)
        typer.echo(f"{rt.id}\t{rt.name}\t{rt.department}\tapprovers={approvers}")


# ----------------------------------------------------------------------
# Users
@user_app.command("add")
def user_add(
    ctx: typer.Context,
    username: str,
    email: str = typer.Option(...),
    full_name: str = typer.Option(..., "--full-name"),
    department: Optional[str] = None,
    role: str = "user",
) -> None:
    """Create a portal user."""
    user = _run(
        ctx,
        lambda service: service.create_user(
            username, email, full_name, department=department, role=role
        ),
    )
    typer.echo(f"Created user {user.id}: {user.username}")


@user_app.command("list")
def user_list(ctx: typer.Context) -> None:
    """List portal users."""
    users = _run(ctx, lambda service: service.list_users())
    if not users:
        typer.echo("No users found")
        return
    for user in users:
        typer.echo(f"{user.id}\t{user.username}\t{user.full_name}\t{user.role}")


# ----------------------------------------------------------------------
# Requests
@request_app.command("submit")
def request_submit(
    ctx: typer.Context,
    request_type_id: int = typer.Option(..., "--type-id"),
    title: str = typer.Option(...),
    user_id: int = typer.Option(..., "--user", help="Requesting user id"),
    description: Optional[str] = None,
    priority: str = "normal",
    data: List[str] = typer.Option([], "--data", help="Form value as KEY=VALUE"),
) -> None:
    """
    Submit a request and start its approval workflow.

    Example:
        portalflow request submit --type-id 1 --title "Trip" --user 4 \\
            --data start=2025-07-01 --data days=5
    """
    form_data = _parse_data(data)
    request = _run(
        ctx,
        lambda service: service.submit_request(
            request_type_id,
            title,
            user_id,
            description=description,
            priority=priority,
            data=form_data,
        ),
    )
    typer.echo(f"Submitted request {request.id}: {request.status}")


@request_app.command("list")
def request_list(
    ctx: typer.Context, user_id: int = typer.Option(..., "--user")
) -> None:
    """List a user's requests, most recently updated first."""
    views = _run(ctx, lambda service: service.user_requests(user_id))
    if not views:
        typer.echo("No requests found")
        return
    for view in views:
        typer.echo(
            f"{view.request.id}\t{view.request.title}\t{view.type_name}\t{view.request.status}"
        )


@request_app.command("delete")
def request_delete(ctx: typer.Context, request_id: int) -> None:
    """Delete a request together with its workflow and approvals."""
    _run(ctx, lambda service: service.delete_request(request_id))
    typer.echo(f"Deleted request {request_id}")


# ----------------------------------------------------------------------
# Approvals
@approval_app.command("pending")
def approval_pending(
    ctx: typer.Context, user_id: int = typer.Option(..., "--user")
) -> None:
    """List approvals waiting on a user."""
    views = _run(ctx, lambda service: service.pending_approvals(user_id))
    if not views:
        typer.echo("No pending approvals")
        return
    for view in views:
        typer.echo(
            f"{view.approval.id}\t{view.request_title}\t{view.request_type}\t"
            f"{view.requester_name}\t{view.priority}"
        )


@approval_app.command("approve")
def approval_approve(
    ctx: typer.Context,
    approval_id: int,
    user_id: int = typer.Option(..., "--user", help="Acting approver id"),
    comments: Optional[str] = None,
) -> None:
    """Approve a pending step."""
    approval = _run(ctx, lambda service: service.approve(approval_id, user_id, comments))
    typer.echo(f"Approval {approval.id} (step {approval.step_order}): {approval.status}")


@approval_app.command("reject")
def approval_reject(
    ctx: typer.Context,
    approval_id: int,
    user_id: int = typer.Option(..., "--user", help="Acting approver id"),
    comments: Optional[str] = None,
) -> None:
    """Reject a pending step, terminating the workflow."""
    approval = _run(ctx, lambda service: service.reject(approval_id, user_id, comments))
    typer.echo(f"Approval {approval.id} (step {approval.step_order}): {approval.status}")


# ----------------------------------------------------------------------
# Workflows
@workflow_app.command("list")
def workflow_list(
    ctx: typer.Context,
    user_id: Optional[int] = typer.Option(
        None, "--user", help="Only active workflows of this requester"
    ),
) -> None:
    """
    List workflows with their progress.

    Without ``--user`` every workflow is listed; with it, the requester's
    active workflows are shown with their dashboard status.
    """
    if user_id is not None:
        summaries = _run(ctx, lambda service: service.active_workflows(user_id))
        if not summaries:
            typer.echo("No workflows found")
            return
        for summary in summaries:
            typer.echo(f"{summary.id}\t{summary.title}\t{summary.status}")
        return

    overviews = _run(ctx, lambda service: service.all_workflows())
    if not overviews:
        typer.echo("No workflows found")
        return
    for item in overviews:
        typer.echo(
            f"{item.workflow.id}\t{item.request_title}\t{item.workflow.status}\t"
            f"{item.completed_steps}/{item.step_count}"
        )


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: int) -> None:
    """Show a workflow and each of its approval steps."""

    async def load(service: PortalService):
        return (
            await service.get_workflow(workflow_id),
            await service.workflow_steps(workflow_id),
        )

    workflow, steps = _run(ctx, load)
    typer.echo(
        f"Workflow {workflow.id} (request {workflow.request_id}): {workflow.status}, "
        f"step {workflow.current_step}"
    )
    for step in steps:
        typer.echo(
            f"- {step.step_order}. {step.step_name}: {step.status} (approver {step.approver_id})"
            + (f" {step.comments!r}" if step.comments else "")
        )


@workflow_app.command("advance")
def workflow_advance(ctx: typer.Context, workflow_id: int) -> None:
    """Advance a workflow whose current step is approved."""
    workflow = _run(ctx, lambda service: service.advance(workflow_id))
    typer.echo(f"Workflow {workflow.id}: {workflow.status}, step {workflow.current_step}")


# ----------------------------------------------------------------------
# Announcements
@announcement_app.command("publish")
def announcement_publish(
    ctx: typer.Context,
    title: str,
    content: str = typer.Option(...),
    author_id: int = typer.Option(..., "--author", help="Publishing user id"),
    expires_in_days: Optional[int] = typer.Option(
        None, "--expires-in-days", help="Hide the announcement after N days"
    ),
    audience: List[str] = typer.Option(
        [], "--audience", help="Target department or role; repeat for several"
    ),
) -> None:
    """Publish an announcement on the portal."""
    expires_at = (
        utcnow() + timedelta(days=expires_in_days)
        if expires_in_days is not None
        else None
    )
    announcement = _run(
        ctx,
        lambda service: service.publish_announcement(
            title,
            content,
            author_id,
            expires_at=expires_at,
            target_audience=audience or None,
        ),
    )
    typer.echo(f"Published announcement {announcement.id}: {announcement.title}")


@announcement_app.command("list")
def announcement_list(
    ctx: typer.Context,
    show_all: bool = typer.Option(
        False, "--all", help="Include expired and inactive announcements"
    ),
) -> None:
    """List current announcements, newest first."""
    if show_all:
        views = _run(ctx, lambda service: service.all_announcements())
    else:
        views = _run(ctx, lambda service: service.active_announcements())
    if not views:
        typer.echo("No announcements found")
        return
    for view in views:
        marker = " [new]" if view.is_new else ""
        typer.echo(
            f"{view.announcement.id}\t{view.announcement.title}\t{view.author_name}{marker}"
        )


# ----------------------------------------------------------------------
@app.command("events")
def events(
    ctx: typer.Context, limit: int = typer.Option(20, help="Number of entries")
) -> None:
    """Show the most recent system events."""
    entries = _run(ctx, lambda service: service.system_events(limit=limit))
    if not entries:
        typer.echo("No events recorded")
        return
    for entry in entries:
        typer.echo(f"{entry.timestamp:%Y-%m-%d %H:%M:%S}\t{entry.level}\t{entry.message}")


if __name__ == "__main__":
    app()
