"""Tests for effective permission resolution."""
import pytest

from app.core.errors import NotFound
from app.features.permissions.capabilities import Action, Capability
from app.features.permissions.models import Group, Permission, Role
from app.features.permissions.resolver import GrantPath, PermissionResolver
from app.features.permissions.store import EntityStore, Relation


@pytest.fixture
def resolver(store):
    return PermissionResolver(store)


async def test_resolves_through_groups_and_roles(graph, resolver):
    permissions = await resolver.resolve(graph.alice.id)

    assert permissions == frozenset({
        Capability("Modules", Action.READ),
        Capability("Modules", Action.UPDATE),
    })
    assert {str(p) for p in permissions} == {"Modules:read", "Modules:update"}


async def test_user_without_groups_has_empty_set(graph, resolver):
    assert await resolver.resolve(graph.bob.id) == frozenset()


async def test_unknown_user_raises_not_found(graph, resolver):
    with pytest.raises(NotFound):
        await resolver.resolve("no-such-user")


async def test_role_reached_through_two_groups_counts_once(graph, gateway, resolver):
    reviewers = await gateway.create(Group, {"name": "Reviewers"})
    await gateway.assign(Relation.GROUP_ROLE, reviewers.id, graph.editor.id)
    await gateway.assign(Relation.USER_GROUP, graph.alice.id, reviewers.id)

    walk = await resolver._walk(graph.alice.id)
    assert walk.group_ids == [graph.editors.id, reviewers.id]
    assert list(walk.permissions_by_role) == [graph.editor.id]
    assert len(await resolver.resolve(graph.alice.id)) == 2


async def test_permission_through_two_roles_counts_once(graph, gateway, resolver):
    reader = await gateway.create(Role, {"name": "Reader"})
    await gateway.assign(Relation.ROLE_PERMISSION, reader.id, graph.permissions["Modules:read"].id)
    await gateway.assign(Relation.GROUP_ROLE, graph.editors.id, reader.id)

    permissions = await resolver.resolve(graph.alice.id)
    assert sorted(str(p) for p in permissions) == ["Modules:read", "Modules:update"]


async def test_no_action_hierarchy(graph, resolver):
    permissions = await resolver.resolve(graph.alice.id)

    assert Capability("Modules", Action.UPDATE) in permissions
    assert Capability("Modules", Action.DELETE) not in permissions
    assert Capability("Modules", Action.CREATE) not in permissions


async def test_identical_state_gives_equal_sets(graph, session_factory):
    async with session_factory() as first, session_factory() as second:
        a = await PermissionResolver(EntityStore(first)).resolve(graph.alice.id)
        b = await PermissionResolver(EntityStore(second)).resolve(graph.alice.id)
    assert a == b


async def test_explain_lists_grant_paths(graph, gateway, resolver):
    reader = await gateway.create(Role, {"name": "Reader"})
    await gateway.assign(Relation.ROLE_PERMISSION, reader.id, graph.permissions["Modules:read"].id)
    await gateway.assign(Relation.GROUP_ROLE, graph.editors.id, reader.id)

    paths = await resolver.explain(graph.alice.id, Capability("Modules", Action.READ))
    assert paths == [GrantPath("Editors", "ContentEditor"), GrantPath("Editors", "Reader")]

    assert await resolver.explain(graph.alice.id, Capability("Roles", Action.CREATE)) == []


async def test_moved_permission_changes_capability(graph, gateway, resolver):
    await gateway.update(Permission, graph.permissions["Modules:update"].id, {"module_id": graph.roles_module.id})

    permissions = await resolver.resolve(graph.alice.id)
    assert Capability("Roles", Action.UPDATE) in permissions
    assert Capability("Modules", Action.UPDATE) not in permissions
