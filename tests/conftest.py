from types import SimpleNamespace

import pytest

from portalflow import PortalService
from portalflow.notifications import Notifier
from portalflow.persistence import InMemoryPortalRepository


class RecordingNotifier(Notifier):
    """Keeps every notification instead of delivering it."""

    def __init__(self):
        self.sent = []

    async def send(self, notification):
        self.sent.append(notification)


@pytest.fixture
def repository():
    return InMemoryPortalRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(repository, notifier):
    return PortalService(repository, notifier=notifier)


@pytest.fixture
def seed_portal(service):
    """Factory creating an admin, a requester, approvers and one request type."""

    async def seed(approver_count=2, type_name="Vacation Request", department="hr"):
        admin = await service.create_user(
            "admin", "admin@example.com", "Ada Admin", role="admin"
        )
        requester = await service.create_user(
            "rita", "rita@example.com", "Rita Requester", department="it"
        )
        approvers = [
            await service.create_user(
                f"approver{i}",
                f"approver{i}@example.com",
                f"Approver {i}",
                role="manager",
            )
            for i in range(1, approver_count + 1)
        ]
        request_type = await service.register_request_type(
            type_name,
            department,
            [
                {"approver_id": a.id, "name": f"Review {i}"}
                for i, a in enumerate(approvers, start=1)
            ],
            admin.id,
        )
        return SimpleNamespace(
            admin=admin,
            requester=requester,
            approvers=approvers,
            request_type=request_type,
        )

    return seed
