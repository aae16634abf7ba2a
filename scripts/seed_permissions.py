"""
Seed script to populate the console's modules, permissions and roles.

Run this script after database initialization to create:
- One module per console area, each with create/read/update/delete
- Default roles with their permissions
- An "Administrators" group holding the Administrator role
- Optionally a bootstrap user (BOOTSTRAP_ADMIN_CREDENTIAL_REF) in that group

Every write goes through the mutation gateway, so seeding is audited like any
other change. Running it again only fills in what is missing.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.permissions.capabilities import Action, Capability
from app.features.permissions.gateway import MutationGateway
from app.features.permissions.models import Group, Module, Permission, Role
from app.features.permissions.service import AuthorizationService
from app.features.permissions.store import EntityStore, Relation
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


DEFAULT_MODULES = {
    "Users": "User accounts linked to the identity store",
    "Groups": "Groups joining users to roles",
    "Roles": "Named bundles of permissions",
    "Modules": "Resource domains subject to access control",
    "Permissions": "Actions allowed on modules",
    "Audit": "Audit log of permission changes",
}


DEFAULT_ROLES = {
    "Administrator": {
        "description": "Holds every permission explicitly",
        "permissions": "ALL"  # Expanded to every seeded permission
    },
    "Auditor": {
        "description": "Read-only access to every module",
        "permissions": [f"{module}:read" for module in DEFAULT_MODULES]
    },
}

ADMIN_GROUP = "Administrators"


async def _find(store: EntityStore, model, **filters):
    found = await store.list(model, limit=1, **filters)
    return found[0] if found else None


async def seed_permissions(gateway: MutationGateway, db: AsyncSession) -> dict[str, Permission]:
    """
    Create default modules and their permissions.

    Returns:
        Dictionary mapping "Module:action" to Permission objects
    """
    log.info("Creating default modules and permissions...")
    store = EntityStore(db)
    permissions_map = {}

    for name, description in DEFAULT_MODULES.items():
        module = await _find(store, Module, name=name)
        if module is None:
            module = await gateway.create(Module, {"name": name, "description": description})
            log.info("Created module: %s", name)
        else:
            log.debug("Module '%s' already exists, skipping", name)

        for action in Action:
            key = str(Capability(name, action))
            permission = await _find(store, Permission, module_id=module.id, action=action)
            if permission is None:
                permission = await gateway.create(Permission, {"module_id": module.id, "action": action})
                log.info("Created permission: %s", key)
            permissions_map[key] = permission

    log.info("Seeded %d permissions", len(permissions_map))
    return permissions_map


async def seed_roles(gateway: MutationGateway, db: AsyncSession, permissions_map: dict[str, Permission]) -> dict[str, Role]:
    """
    Create default roles and assign permissions.

    Args:
        gateway: Mutation gateway used for every write
        db: Session for existence checks
        permissions_map: Dictionary of "Module:action" -> Permission object
    """
    log.info("Creating default roles...")
    store = EntityStore(db)
    roles = {}

    for role_name, role_config in DEFAULT_ROLES.items():
        role = await _find(store, Role, name=role_name)
        if role is None:
            role = await gateway.create(Role, {"name": role_name, "description": role_config["description"]})
            log.info("Created role '%s'", role_name)
        roles[role_name] = role

        if role_config["permissions"] == "ALL":
            wanted = list(permissions_map)
        else:
            wanted = role_config["permissions"]

        assigned = 0
        for key in wanted:
            permission = permissions_map.get(key)
            if permission is None:
                log.warning("Permission '%s' not found for role '%s'", key, role_name)
                continue
            if await gateway.assign(Relation.ROLE_PERMISSION, role.id, permission.id):
                assigned += 1
        log.info("Role '%s': %d new permission(s) assigned", role_name, assigned)

    return roles


async def seed_admin_group(gateway: MutationGateway, db: AsyncSession, admin_role: Role) -> Group:
    store = EntityStore(db)
    group = await _find(store, Group, name=ADMIN_GROUP)
    if group is None:
        group = await gateway.create(Group, {"name": ADMIN_GROUP, "description": "Console administrators"})
        log.info("Created group '%s'", ADMIN_GROUP)
    await gateway.assign(Relation.GROUP_ROLE, group.id, admin_role.id)

    if config.BOOTSTRAP_ADMIN_CREDENTIAL_REF:
        user = await store.find_user(
            credential_ref=config.BOOTSTRAP_ADMIN_CREDENTIAL_REF,
            username=config.BOOTSTRAP_ADMIN_USERNAME,
        )
        if user is None:
            user = await gateway.create(User, {
                "username": config.BOOTSTRAP_ADMIN_USERNAME,
                "credential_ref": config.BOOTSTRAP_ADMIN_CREDENTIAL_REF,
            })
            log.info("Created bootstrap user '%s'", user.username)
        if await gateway.assign(Relation.USER_GROUP, user.id, group.id):
            log.info("Added '%s' to '%s'", user.username, ADMIN_GROUP)
    return group


async def seed(gateway: MutationGateway, db: AsyncSession) -> None:
    permissions_map = await seed_permissions(gateway, db)
    roles = await seed_roles(gateway, db, permissions_map)
    await seed_admin_group(gateway, db, roles["Administrator"])


async def main():
    """Main function to seed modules, permissions, roles and the admin group."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    gateway = MutationGateway(AuthorizationService(AsyncSessionLocal), AsyncSessionLocal)
    async with AsyncSessionLocal() as db:
        await seed(gateway, db)

    log.info("Permission seeding completed successfully!")
    for role_name, role_config in DEFAULT_ROLES.items():
        log.info("  - %s: %s", role_name, role_config["description"])


if __name__ == "__main__":
    asyncio.run(main())
