"""Request type registry: form definitions and approver sequences."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from .errors import ConfigurationError, ConflictError, NotFoundError
from .models import ApproverStep, RequestType, SystemEvent, utcnow
from .persistence import PortalRepository

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(
    {"name", "description", "department", "form_fields", "approver_config"}
)


def parse_approver_config(raw: Any) -> list[ApproverStep]:
    """Validate an approver configuration and return its ordered steps.

    The configuration must be a non-empty list whose entries each carry an
    integer ``approver_id``; ``name`` and ``description`` are optional.

    Raises:
        ConfigurationError: If the list is missing, empty or malformed.
    """

    if not isinstance(raw, list) or not raw:
        raise ConfigurationError("Approver configuration must be a non-empty list")

    steps: list[ApproverStep] = []
    for position, entry in enumerate(raw, start=1):
        if isinstance(entry, ApproverStep):
            steps.append(entry)
            continue
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Approver entry {position} is not a mapping")
        approver_id = entry.get("approver_id")
        # bool is an int subclass
        if isinstance(approver_id, bool) or not isinstance(approver_id, int):
            raise ConfigurationError(
                f"Approver entry {position} needs an integer approver_id"
            )
        try:
            steps.append(ApproverStep.model_validate(entry))
        except ValidationError as exc:
            raise ConfigurationError(
                f"Approver entry {position} is invalid: {exc}"
            ) from exc
    return steps


def _dump_steps(steps: Iterable[ApproverStep]) -> list[dict[str, Any]]:
    return [step.model_dump(mode="json", exclude_none=True) for step in steps]


class RequestTypeRegistry:
    """Admin-side store of request types."""

    def __init__(self, repository: PortalRepository) -> None:
        self._repository = repository

    async def register(
        self,
        name: str,
        department: str,
        approver_config: list[Any],
        created_by: int,
        description: Optional[str] = None,
        form_fields: Optional[list[dict[str, Any]]] = None,
    ) -> RequestType:
        """Create a request type after validating its approver configuration."""

        steps = parse_approver_config(approver_config)
        request_type = RequestType(
            name=name,
            department=department,
            description=description,
            created_by=created_by,
            form_fields=form_fields or [],
            approver_config=_dump_steps(steps),
        )
        async with self._repository.session() as session:
            if await session.get_request_type_by_name(name) is not None:
                raise ConflictError(f"Request type already exists: {name}")
            stored = await session.add_request_type(request_type)
            await session.add_event(
                SystemEvent.info(
                    f"Request type created: {name}",
                    user_id=created_by,
                    request_type_id=stored.id,
                )
            )
        logger.info(f"Registered request type {name!r} with {len(steps)} step(s)")
        return stored

    async def update(
        self, request_type_id: int, updated_by: Optional[int] = None, **changes: Any
    ) -> RequestType:
        """Edit a request type.

        Workflows that already started keep the approver snapshot taken at
        their start; only workflows started afterwards see the change.
        """

        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ConfigurationError(
                f"Request type fields cannot be edited: {', '.join(unknown)}"
            )
        if "approver_config" in changes:
            changes["approver_config"] = _dump_steps(
                parse_approver_config(changes["approver_config"])
            )
        async with self._repository.session() as session:
            request_type = await session.get_request_type(request_type_id)
            if request_type is None:
                raise NotFoundError("Request type", request_type_id)
            new_name = changes.get("name")
            if new_name and new_name != request_type.name:
                if await session.get_request_type_by_name(new_name) is not None:
                    raise ConflictError(f"Request type already exists: {new_name}")
            try:
                for key, value in changes.items():
                    setattr(request_type, key, value)
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid request type update: {exc}") from exc
            request_type.updated_at = utcnow()
            await session.save_request_type(request_type)
            await session.add_event(
                SystemEvent.info(
                    f"Request type updated: {request_type.name}",
                    user_id=updated_by,
                    request_type_id=request_type_id,
                    fields=sorted(changes),
                )
            )
        return request_type

    async def get(self, request_type_id: int) -> RequestType:
        async with self._repository.session() as session:
            request_type = await session.get_request_type(request_type_id)
        if request_type is None:
            raise NotFoundError("Request type", request_type_id)
        return request_type

    async def list_types(self) -> list[RequestType]:
        async with self._repository.session() as session:
            return await session.list_request_types()
