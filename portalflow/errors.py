"""Typed exceptions raised by the portal workflow layer."""

from __future__ import annotations


class PortalflowError(Exception):
    """Base class for all portalflow failures."""


class ConfigurationError(PortalflowError):
    """Approver configuration is empty or malformed."""


class AuthorizationError(PortalflowError):
    """Acting user is not allowed to act on the record."""


class InvalidStateError(PortalflowError):
    """Operation attempted on a record that is not in the required state."""


class NotFoundError(PortalflowError):
    """Referenced request, approval, workflow or type does not exist."""

    def __init__(self, kind: str, identifier: object) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ConflictError(PortalflowError):
    """Write would violate a uniqueness rule (e.g. second workflow per request)."""
