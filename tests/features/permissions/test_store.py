"""Tests for the entity store."""
import asyncio

import pytest

from app.core.errors import Conflict, NotFound, Unavailable, ValidationError
from app.features.permissions.capabilities import Action, Capability
from app.features.permissions.models import Group, Module, Permission, Role
from app.features.permissions.store import Relation
from app.features.users.models import User


class TestCreate:
    async def test_create_and_get_module(self, store):
        module = await store.create(Module, {"name": "  Users ", "description": "Accounts"})

        fetched = await store.get(Module, module.id)
        assert fetched.name == "Users"
        assert fetched.description == "Accounts"
        assert fetched.permissions == []
        assert len(fetched.id) == 26

    async def test_blank_optional_field_is_stored_as_null(self, store):
        role = await store.create(Role, {"name": "Viewer", "description": "   "})
        assert role.description is None

    async def test_duplicate_name_is_rejected_with_field_detail(self, store):
        await store.create(Group, {"name": "Editors"})

        with pytest.raises(ValidationError) as exc_info:
            await store.create(Group, {"name": "Editors"})
        assert "name" in exc_info.value.details

    async def test_empty_name_is_rejected(self, store):
        with pytest.raises(ValidationError) as exc_info:
            await store.create(Module, {"name": "   "})
        assert exc_info.value.details == {"name": "must not be empty"}

    async def test_missing_required_field(self, store):
        with pytest.raises(ValidationError) as exc_info:
            await store.create(User, {"credential_ref": "sub-1"})
        assert exc_info.value.details == {"username": "field required"}

    async def test_unknown_field_is_rejected(self, store):
        with pytest.raises(ValidationError) as exc_info:
            await store.create(Role, {"name": "Viewer", "is_admin": True})
        assert "is_admin" in exc_info.value.details

    async def test_permission_action_must_be_in_enum(self, store):
        module = await store.create(Module, {"name": "Users"})

        with pytest.raises(ValidationError) as exc_info:
            await store.create(Permission, {"module_id": module.id, "action": "approve"})
        assert "action" in exc_info.value.details

    async def test_permission_action_accepts_plain_string(self, store):
        module = await store.create(Module, {"name": "Users"})

        permission = await store.create(Permission, {"module_id": module.id, "action": "read"})
        assert permission.action is Action.READ
        assert permission.module.name == "Users"

    async def test_duplicate_module_action_pair_is_rejected(self, store):
        module = await store.create(Module, {"name": "Users"})
        await store.create(Permission, {"module_id": module.id, "action": Action.READ})

        with pytest.raises(ValidationError):
            await store.create(Permission, {"module_id": module.id, "action": Action.READ})

    async def test_same_action_on_other_module_is_allowed(self, store):
        users = await store.create(Module, {"name": "Users"})
        roles = await store.create(Module, {"name": "Roles"})
        await store.create(Permission, {"module_id": users.id, "action": Action.READ})

        permission = await store.create(Permission, {"module_id": roles.id, "action": Action.READ})
        assert permission.module_id == roles.id

    async def test_permission_for_missing_module(self, store):
        with pytest.raises(NotFound):
            await store.create(Permission, {"module_id": "missing", "action": Action.READ})


class TestReadUpdate:
    async def test_get_missing_raises_not_found(self, store):
        with pytest.raises(NotFound, match="Role not found"):
            await store.get(Role, "01HZZZZZZZZZZZZZZZZZZZZZZZ")

    async def test_list_is_in_creation_order(self, store):
        for name in ("Gamma", "Alpha", "Beta"):
            await store.create(Role, {"name": name})

        roles = await store.list(Role)
        assert [r.name for r in roles] == ["Gamma", "Alpha", "Beta"]

    async def test_list_search_is_case_insensitive(self, store):
        for username in ("alice", "Alicia", "bob"):
            await store.create(User, {"username": username})

        users = await store.list(User, search="ALI")
        assert [u.username for u in users] == ["alice", "Alicia"]
        assert await store.count(User, search="ali") == 2

    async def test_list_filters_permissions(self, store):
        users = await store.create(Module, {"name": "Users"})
        roles = await store.create(Module, {"name": "Roles"})
        for module in (users, roles):
            for action in (Action.READ, Action.DELETE):
                await store.create(Permission, {"module_id": module.id, "action": action})

        found = await store.list(Permission, module_id=roles.id, action=Action.DELETE)
        assert len(found) == 1
        assert found[0].module.name == "Roles"

    async def test_list_rejects_unknown_filter(self, store):
        with pytest.raises(ValidationError):
            await store.list(Role, colour="red")

    async def test_update_renames(self, store):
        module = await store.create(Module, {"name": "Users"})

        updated = await store.update(Module, module.id, {"name": "Accounts"})
        assert updated.name == "Accounts"

    async def test_update_keeping_own_name_is_allowed(self, store):
        role = await store.create(Role, {"name": "Viewer"})

        updated = await store.update(Role, role.id, {"name": "Viewer", "description": "Read only"})
        assert updated.description == "Read only"

    async def test_update_to_taken_name_is_rejected(self, store):
        await store.create(Role, {"name": "Viewer"})
        editor = await store.create(Role, {"name": "Editor"})

        with pytest.raises(ValidationError):
            await store.update(Role, editor.id, {"name": "Viewer"})

    async def test_update_missing_entity(self, store):
        with pytest.raises(NotFound):
            await store.update(Group, "missing", {"name": "Editors"})


class TestRelationships:
    async def test_assign_is_idempotent(self, store):
        role = await store.create(Role, {"name": "Viewer"})
        module = await store.create(Module, {"name": "Users"})
        permission = await store.create(Permission, {"module_id": module.id, "action": Action.READ})

        assert await store.assign_role_permission(role.id, permission.id) is True
        assert await store.assign_role_permission(role.id, permission.id) is False

        role = await store.get(Role, role.id)
        assert [p.id for p in role.permissions] == [permission.id]

    async def test_unassign_missing_edge_is_a_no_op(self, store):
        group = await store.create(Group, {"name": "Editors"})
        user = await store.create(User, {"username": "alice"})

        assert await store.unassign_user_group(user.id, group.id) is False
        assert await store.assign_user_group(user.id, group.id) is True
        assert await store.unassign_user_group(user.id, group.id) is True

    async def test_unassign_role_permission(self, store):
        role = await store.create(Role, {"name": "Viewer"})
        module = await store.create(Module, {"name": "Users"})
        read = await store.create(Permission, {"module_id": module.id, "action": Action.READ})
        update = await store.create(Permission, {"module_id": module.id, "action": Action.UPDATE})
        await store.assign_role_permission(role.id, read.id)
        await store.assign_role_permission(role.id, update.id)

        assert await store.unassign_role_permission(role.id, read.id) is True
        assert await store.unassign_role_permission(role.id, read.id) is False

        role = await store.get(Role, role.id)
        assert [p.id for p in role.permissions] == [update.id]

    async def test_unassign_group_role(self, store):
        group = await store.create(Group, {"name": "Editors"})
        role = await store.create(Role, {"name": "Editor"})
        await store.assign_group_role(group.id, role.id)

        assert await store.unassign_group_role(group.id, role.id) is True
        assert await store.unassign_group_role(group.id, role.id) is False

        group = await store.get(Group, group.id)
        assert group.roles == []
        with pytest.raises(NotFound, match="Role not found"):
            await store.unassign_group_role(group.id, "missing")

    async def test_assign_to_missing_endpoint(self, store):
        group = await store.create(Group, {"name": "Editors"})

        with pytest.raises(NotFound, match="Role not found"):
            await store.assign_group_role(group.id, "missing")
        with pytest.raises(NotFound, match="Group not found"):
            await store.assign(Relation.GROUP_ROLE, "missing", "missing")

    async def test_related_collections_are_loaded_both_ways(self, store):
        group = await store.create(Group, {"name": "Editors"})
        role = await store.create(Role, {"name": "Editor"})
        user = await store.create(User, {"username": "alice"})
        await store.assign_group_role(group.id, role.id)
        await store.assign_user_group(user.id, group.id)

        group = await store.get(Group, group.id)
        assert [r.name for r in group.roles] == ["Editor"]
        assert [u.username for u in group.users] == ["alice"]
        role = await store.get(Role, role.id)
        assert [g.name for g in role.groups] == ["Editors"]
        user = await store.get(User, user.id)
        assert [g.name for g in user.groups] == ["Editors"]


class TestDelete:
    async def test_delete_unreferenced(self, store):
        role = await store.create(Role, {"name": "Viewer"})

        await store.delete(Role, role.id)
        assert not await store.exists(Role, role.id)

    async def test_delete_missing(self, store):
        with pytest.raises(NotFound):
            await store.delete(Module, "missing")

    async def test_delete_module_with_permissions_conflicts(self, store):
        module = await store.create(Module, {"name": "Users"})
        await store.create(Permission, {"module_id": module.id, "action": Action.READ})

        with pytest.raises(Conflict) as exc_info:
            await store.delete(Module, module.id)
        assert exc_info.value.details == {"permissions": 1}

    async def test_delete_group_with_members_conflicts(self, store):
        group = await store.create(Group, {"name": "Editors"})
        user = await store.create(User, {"username": "alice"})
        await store.assign_user_group(user.id, group.id)

        with pytest.raises(Conflict):
            await store.delete(Group, group.id)
        with pytest.raises(Conflict):
            await store.delete(User, user.id)

    async def test_detach_then_delete(self, store):
        group = await store.create(Group, {"name": "Editors"})
        role = await store.create(Role, {"name": "Editor"})
        user = await store.create(User, {"username": "alice"})
        await store.assign_group_role(group.id, role.id)
        await store.assign_user_group(user.id, group.id)

        assert await store.detach(Group, group.id) == 2
        await store.delete(Group, group.id)

        assert await store.exists(Role, role.id)
        assert await store.exists(User, user.id)
        assert await store.group_ids_for_user(user.id) == []

    async def test_delete_module_permissions(self, store):
        module = await store.create(Module, {"name": "Users"})
        role = await store.create(Role, {"name": "Viewer"})
        read = await store.create(Permission, {"module_id": module.id, "action": Action.READ})
        await store.assign_role_permission(role.id, read.id)

        assert await store.delete_module_permissions(module.id) == [read.id]
        await store.delete(Module, module.id)

        role = await store.get(Role, role.id)
        assert role.permissions == []


class TestGraphQueries:
    async def test_capabilities_resolve_module_names(self, store):
        module = await store.create(Module, {"name": "Users"})
        permission = await store.create(Permission, {"module_id": module.id, "action": Action.UPDATE})

        assert await store.capabilities([permission.id]) == {permission.id: Capability("Users", Action.UPDATE)}
        assert await store.capabilities([]) == {}

    async def test_affected_user_queries(self, store):
        module = await store.create(Module, {"name": "Users"})
        permission = await store.create(Permission, {"module_id": module.id, "action": Action.READ})
        role = await store.create(Role, {"name": "Viewer"})
        staff = await store.create(Group, {"name": "Staff"})
        other = await store.create(Group, {"name": "Other"})
        alice = await store.create(User, {"username": "alice"})
        bob = await store.create(User, {"username": "bob"})
        await store.assign_role_permission(role.id, permission.id)
        await store.assign_group_role(staff.id, role.id)
        await store.assign_user_group(alice.id, staff.id)
        await store.assign_user_group(bob.id, other.id)

        assert await store.users_for_group(staff.id) == {alice.id}
        assert await store.users_for_role(role.id) == {alice.id}
        assert await store.users_for_permission(permission.id) == {alice.id}
        assert await store.users_for_module(module.id) == {alice.id}

    async def test_find_user_by_subject_then_username(self, store):
        alice = await store.create(User, {"username": "alice", "credential_ref": "sub-alice"})

        assert (await store.find_user(credential_ref="sub-alice")).id == alice.id
        assert (await store.find_user(credential_ref="unknown", username="alice")).id == alice.id
        assert await store.find_user(credential_ref="unknown") is None


async def test_slow_statement_surfaces_as_unavailable(store):
    store.timeout = 0.01

    with pytest.raises(Unavailable):
        await store._bounded(asyncio.sleep(1))
