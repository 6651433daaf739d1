import pytest

from portalflow.errors import ConfigurationError, ConflictError, NotFoundError
from portalflow.models import ApproverStep
from portalflow.registry import RequestTypeRegistry, parse_approver_config


def test_parse_approver_config_keeps_order_and_names():
    steps = parse_approver_config(
        [
            {"approver_id": 4, "name": "Manager"},
            {"approver_id": 9, "description": "Budget owner"},
        ]
    )

    assert [s.approver_id for s in steps] == [4, 9]
    assert steps[0].name == "Manager"
    assert steps[1].name is None
    assert steps[1].description == "Budget owner"


def test_parse_approver_config_accepts_step_models():
    steps = parse_approver_config([ApproverStep(approver_id=3)])
    assert steps[0].approver_id == 3


@pytest.mark.parametrize(
    "raw",
    [
        None,
        [],
        {"approver_id": 1},
        [{"approver_id": True}],
        [{"approver_id": "1"}],
        [{"approver_id": 1}, "2"],
        [{"approver_id": 1, "name": ["not", "text"]}],
    ],
)
def test_parse_approver_config_rejects_malformed_input(raw):
    with pytest.raises(ConfigurationError):
        parse_approver_config(raw)


@pytest.mark.asyncio
async def test_register_and_list_request_types(repository):
    registry = RequestTypeRegistry(repository)

    laptop = await registry.register(
        "IT Equipment",
        "it",
        [{"approver_id": 2, "name": "IT Review"}],
        created_by=1,
        description="Hardware purchases",
        form_fields=[{"name": "model", "type": "text", "required": True}],
    )
    vacation = await registry.register("Vacation", "hr", [{"approver_id": 3}], 1)

    assert laptop.id is not None
    assert laptop.department == "it"
    assert laptop.approver_config == [{"approver_id": 2, "name": "IT Review"}]
    assert vacation.approver_config == [{"approver_id": 3}]
    assert [t.name for t in await registry.list_types()] == ["IT Equipment", "Vacation"]
    assert (await registry.get(laptop.id)).form_fields[0]["name"] == "model"


@pytest.mark.asyncio
async def test_register_rejects_duplicates_and_bad_config(repository):
    registry = RequestTypeRegistry(repository)
    await registry.register("Vacation", "hr", [{"approver_id": 3}], 1)

    with pytest.raises(ConflictError):
        await registry.register("Vacation", "hr", [{"approver_id": 4}], 1)
    with pytest.raises(ConfigurationError):
        await registry.register("Travel", "hr", [], 1)

    assert [t.name for t in await registry.list_types()] == ["Vacation"]


@pytest.mark.asyncio
async def test_update_request_type(repository):
    registry = RequestTypeRegistry(repository)
    created = await registry.register("Vacation", "hr", [{"approver_id": 3}], 1)
    await registry.register("Travel", "hr", [{"approver_id": 3}], 1)

    updated = await registry.update(
        created.id,
        updated_by=1,
        description="Paid leave",
        approver_config=[{"approver_id": 5}, {"approver_id": 6}],
    )

    assert updated.description == "Paid leave"
    assert updated.approver_config == [{"approver_id": 5}, {"approver_id": 6}]
    assert updated.updated_at >= created.updated_at
    assert (await registry.get(created.id)).description == "Paid leave"

    with pytest.raises(ConflictError):
        await registry.update(created.id, name="Travel")
    with pytest.raises(ConfigurationError):
        await registry.update(created.id, approver_config=[])
    with pytest.raises(NotFoundError):
        await registry.update(999, description="missing")
    with pytest.raises(NotFoundError):
        await registry.get(999)


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields_and_invalid_values(repository):
    registry = RequestTypeRegistry(repository)
    created = await registry.register("Vacation", "hr", [{"approver_id": 3}], 1)

    with pytest.raises(ConfigurationError, match="colour"):
        await registry.update(created.id, colour="red")
    with pytest.raises(ConfigurationError, match="id"):
        await registry.update(created.id, id=42)
    with pytest.raises(ConfigurationError):
        await registry.update(created.id, department="space")

    stored = await registry.get(created.id)
    assert stored.department == "hr"
    assert stored.id == created.id
