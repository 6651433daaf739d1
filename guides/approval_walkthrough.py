"""Walk a request through a two-step approval workflow."""

import asyncio

from portalflow import LoggingNotifier, PortalService, get_repository


async def main():
    """Submit an equipment request and approve both steps."""
    # In-memory unless PORTALFLOW_DATABASE_URL / DATABASE_URL is set
    service = PortalService(get_repository(), notifier=LoggingNotifier())

    admin = await service.create_user(
        "admin", "admin@company.com", "Ada Admin", department="it", role="admin"
    )
    manager = await service.create_user(
        "mara", "mara@company.com", "Mara Manager", department="it", role="manager"
    )
    employee = await service.create_user("rita", "rita@company.com", "Rita Requester")

    equipment = await service.register_request_type(
        "IT Equipment",
        "it",
        [
            {"approver_id": manager.id, "name": "Manager Review"},
            {"approver_id": admin.id, "name": "IT Approval"},
        ],
        created_by=admin.id,
        form_fields=[{"name": "item", "type": "text", "required": True}],
    )

    request = await service.submit_request(
        equipment.id, "New laptop", employee.id, data={"item": "14in laptop"}
    )
    print(f"Request {request.id} submitted: {request.status}")

    for approver in (manager, admin):
        (pending,) = await service.pending_approvals(approver.id)
        await service.approve(pending.approval.id, approver.id, comments="Looks good")
        print(f"{approver.full_name} approved step {pending.approval.step_order}")

    request = await service.get_request(request.id)
    print(f"Final status: {request.status}")

    for event in reversed(await service.system_events()):
        print(f"  {event.timestamp:%H:%M:%S} {event.message}")

    await service.close()


if __name__ == "__main__":
    asyncio.run(main())
