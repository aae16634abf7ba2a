"""
Permission management API routes.

Provides endpoints for modules, permissions, roles, groups, their
assignments, permission simulation and the audit log. Reads go through the
request session; every write goes through the mutation gateway.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.core.errors import NotFound
from app.core.rate_limit import limiter
from app.core.responses import ApiResponse, Page
from app.features.permissions.capabilities import Action
from app.features.permissions.dependencies import (
    get_authorization_service,
    get_mutation_gateway,
    require_permission,
)
from app.features.permissions.gateway import MutationGateway
from app.features.permissions.models import AuditLog, Group, Module, Permission, Role
from app.features.permissions.schemas import (
    AssignPermissionToRole,
    AssignRoleToGroup,
    AssignUserToGroup,
    AuditLogResponse,
    GroupCreate,
    GroupResponse,
    GroupUpdate,
    ModuleCreate,
    ModuleResponse,
    ModuleUpdate,
    PermissionCreate,
    PermissionResponse,
    PermissionUpdate,
    RoleCreate,
    RoleResponse,
    RoleUpdate,
    SimulateRequest,
    SimulateResult,
)
from app.features.permissions.service import AuthorizationService
from app.features.permissions.store import EntityStore, Relation
from app.features.users.auth import Principal
from app.features.users.dependencies import get_current_principal
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Module Routes
# ============================================================================

@router.post("/modules", response_model=ApiResponse[ModuleResponse], status_code=201)
async def create_module(
    module: ModuleCreate,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Modules", Action.CREATE))
):
    """Create a new module."""
    created = await gateway.create(Module, module.model_dump(), actor_id=principal.user_id)
    return ApiResponse.ok(ModuleResponse.model_validate(created), "Module created")


@router.get("/modules", response_model=ApiResponse[List[ModuleResponse]])
async def list_modules(
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission("Modules", Action.READ))
):
    """List modules with their permissions."""
    modules = await EntityStore(db).list(Module, skip=skip, limit=limit, search=search)
    return ApiResponse.ok([ModuleResponse.model_validate(m) for m in modules])


@router.get("/modules/{module_id}", response_model=ApiResponse[ModuleResponse])
async def get_module(
    module_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission("Modules", Action.READ))
):
    """Get a specific module by ID."""
    module = await EntityStore(db).get(Module, module_id)
    return ApiResponse.ok(ModuleResponse.model_validate(module))


@router.put("/modules/{module_id}", response_model=ApiResponse[ModuleResponse])
async def update_module(
    module_id: str,
    module_update: ModuleUpdate,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Modules", Action.UPDATE))
):
    """Rename or describe a module."""
    module = await gateway.update(
        Module, module_id, module_update.model_dump(exclude_unset=True), actor_id=principal.user_id
    )
    return ApiResponse.ok(ModuleResponse.model_validate(module), "Module updated")


@router.delete("/modules/{module_id}", response_model=ApiResponse[None])
async def delete_module(
    module_id: str,
    cascade: bool = True,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Modules", Action.DELETE))
):
    """Delete a module and its permissions. ``cascade=false`` refuses while it has any."""
    await gateway.delete(Module, module_id, cascade=cascade, actor_id=principal.user_id)
    return ApiResponse.ok(message="Module deleted")


# ============================================================================
# Permission Routes
# ============================================================================

@router.get("/permissions/mine", response_model=ApiResponse[List[str]])
@limiter.limit(config.RATE_LIMIT)
async def my_permissions(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    authorization: AuthorizationService = Depends(get_authorization_service)
):
    """Effective permissions of the caller as "Module:action" strings."""
    if not principal.user_id:
        raise NotFound("No user is registered for this principal")
    permissions = await authorization.resolve(principal.user_id)
    return ApiResponse.ok(sorted(str(capability) for capability in permissions))


@router.post("/permissions", response_model=ApiResponse[PermissionResponse], status_code=201)
async def create_permission(
    permission: PermissionCreate,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Permissions", Action.CREATE))
):
    """Create a new (module, action) permission."""
    created = await gateway.create(Permission, permission.model_dump(), actor_id=principal.user_id)
    return ApiResponse.ok(PermissionResponse.model_validate(created), "Permission created")


@router.get("/permissions", response_model=ApiResponse[List[PermissionResponse]])
async def list_permissions(
    skip: int = 0,
    limit: int = 100,
    module_id: Optional[str] = None,
    action: Optional[Action] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission("Permissions", Action.READ))
):
    """List all permissions with optional filtering."""
    permissions = await EntityStore(db).list(
        Permission, skip=skip, limit=limit, module_id=module_id, action=action
    )
    return ApiResponse.ok([PermissionResponse.model_validate(p) for p in permissions])


@router.get("/permissions/{permission_id}", response_model=ApiResponse[PermissionResponse])
async def get_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission("Permissions", Action.READ))
):
    """Get a specific permission by ID."""
    permission = await EntityStore(db).get(Permission, permission_id)
    return ApiResponse.ok(PermissionResponse.model_validate(permission))


@router.put("/permissions/{permission_id}", response_model=ApiResponse[PermissionResponse])
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Permissions", Action.UPDATE))
):
    """Move a permission to another module or action."""
    permission = await gateway.update(
        Permission, permission_id, permission_update.model_dump(exclude_unset=True), actor_id=principal.user_id
    )
    return ApiResponse.ok(PermissionResponse.model_validate(permission), "Permission updated")


@router.delete("/permissions/{permission_id}", response_model=ApiResponse[None])
async def delete_permission(
    permission_id: str,
    cascade: bool = True,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Permissions", Action.DELETE))
):
    """Delete a permission, removing it from every role. ``cascade=false`` refuses while a role holds it."""
    await gateway.delete(Permission, permission_id, cascade=cascade, actor_id=principal.user_id)
    return ApiResponse.ok(message="Permission deleted")


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=ApiResponse[RoleResponse], status_code=201)
async def create_role(
    role: RoleCreate,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Roles", Action.CREATE))
):
    """Create a new role."""
    created = await gateway.create(Role, role.model_dump(), actor_id=principal.user_id)
    return ApiResponse.ok(RoleResponse.model_validate(created), "Role created")


@router.get("/roles", response_model=ApiResponse[List[RoleResponse]])
async def list_roles(
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission("Roles", Action.READ))
):
    """List roles with their permissions and groups."""
    roles = await EntityStore(db).list(Role, skip=skip, limit=limit, search=search)
    return ApiResponse.ok([RoleResponse.model_validate(r) for r in roles])


@router.get("/roles/{role_id}", response_model=ApiResponse[RoleResponse])
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission("Roles", Action.READ))
):
    """Get a role with its permissions."""
    role = await EntityStore(db).get(Role, role_id)
    return ApiResponse.ok(RoleResponse.model_validate(role))


@router.put("/roles/{role_id}", response_model=ApiResponse[RoleResponse])
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Roles", Action.UPDATE))
):
    """Update role name or description."""
    role = await gateway.update(Role, role_id, role_update.model_dump(exclude_unset=True), actor_id=principal.user_id)
    return ApiResponse.ok(RoleResponse.model_validate(role), "Role updated")


@router.delete("/roles/{role_id}", response_model=ApiResponse[None])
async def delete_role(
    role_id: str,
    cascade: bool = True,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Roles", Action.DELETE))
):
    """Delete a role, detaching it from permissions and groups. ``cascade=false`` refuses while it is linked."""
    await gateway.delete(Role, role_id, cascade=cascade, actor_id=principal.user_id)
    return ApiResponse.ok(message="Role deleted")


@router.post("/roles/{role_id}/permissions", response_model=ApiResponse[RoleResponse])
async def assign_permission_to_role(
    role_id: str,
    assignment: AssignPermissionToRole,
    db: AsyncSession = Depends(get_db),
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Roles", Action.UPDATE))
):
    """Grant a permission to a role."""
    changed = await gateway.assign(
        Relation.ROLE_PERMISSION, role_id, assignment.permission_id, actor_id=principal.user_id
    )
    role = await EntityStore(db).get(Role, role_id)
    message = "Permission assigned to role" if changed else "Permission already assigned to role"
    return ApiResponse.ok(RoleResponse.model_validate(role), message)


@router.delete("/roles/{role_id}/permissions/{permission_id}", response_model=ApiResponse[RoleResponse])
async def remove_permission_from_role(
    role_id: str,
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Roles", Action.UPDATE))
):
    """Revoke a permission from a role."""
    changed = await gateway.unassign(Relation.ROLE_PERMISSION, role_id, permission_id, actor_id=principal.user_id)
    role = await EntityStore(db).get(Role, role_id)
    message = "Permission removed from role" if changed else "Permission was not assigned to role"
    return ApiResponse.ok(RoleResponse.model_validate(role), message)


# ============================================================================
# Group Routes
# ============================================================================

@router.post("/groups", response_model=ApiResponse[GroupResponse], status_code=201)
async def create_group(
    group: GroupCreate,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Groups", Action.CREATE))
):
    """Create a new group."""
    created = await gateway.create(Group, group.model_dump(), actor_id=principal.user_id)
    return ApiResponse.ok(GroupResponse.model_validate(created), "Group created")


@router.get("/groups", response_model=ApiResponse[List[GroupResponse]])
async def list_groups(
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission("Groups", Action.READ))
):
    """List groups with their roles and members."""
    groups = await EntityStore(db).list(Group, skip=skip, limit=limit, search=search)
    return ApiResponse.ok([GroupResponse.model_validate(g) for g in groups])


@router.get("/groups/{group_id}", response_model=ApiResponse[GroupResponse])
async def get_group(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission("Groups", Action.READ))
):
    """Get a group with its roles and members."""
    group = await EntityStore(db).get(Group, group_id)
    return ApiResponse.ok(GroupResponse.model_validate(group))


@router.put("/groups/{group_id}", response_model=ApiResponse[GroupResponse])
async def update_group(
    group_id: str,
    group_update: GroupUpdate,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Groups", Action.UPDATE))
):
    """Update group name or description."""
    group = await gateway.update(
        Group, group_id, group_update.model_dump(exclude_unset=True), actor_id=principal.user_id
    )
    return ApiResponse.ok(GroupResponse.model_validate(group), "Group updated")


@router.delete("/groups/{group_id}", response_model=ApiResponse[None])
async def delete_group(
    group_id: str,
    cascade: bool = True,
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Groups", Action.DELETE))
):
    """Delete a group, detaching its members and roles. ``cascade=false`` refuses while it has any."""
    await gateway.delete(Group, group_id, cascade=cascade, actor_id=principal.user_id)
    return ApiResponse.ok(message="Group deleted")


@router.post("/groups/{group_id}/roles", response_model=ApiResponse[GroupResponse])
async def assign_role_to_group(
    group_id: str,
    assignment: AssignRoleToGroup,
    db: AsyncSession = Depends(get_db),
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Groups", Action.UPDATE))
):
    """Assign a role to a group; every member gains its permissions."""
    changed = await gateway.assign(Relation.GROUP_ROLE, group_id, assignment.role_id, actor_id=principal.user_id)
    group = await EntityStore(db).get(Group, group_id)
    message = "Role assigned to group" if changed else "Role already assigned to group"
    return ApiResponse.ok(GroupResponse.model_validate(group), message)


@router.delete("/groups/{group_id}/roles/{role_id}", response_model=ApiResponse[GroupResponse])
async def remove_role_from_group(
    group_id: str,
    role_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Groups", Action.UPDATE))
):
    """Remove a role from a group."""
    changed = await gateway.unassign(Relation.GROUP_ROLE, group_id, role_id, actor_id=principal.user_id)
    group = await EntityStore(db).get(Group, group_id)
    message = "Role removed from group" if changed else "Role was not assigned to group"
    return ApiResponse.ok(GroupResponse.model_validate(group), message)


@router.post("/groups/{group_id}/users", response_model=ApiResponse[GroupResponse])
async def add_user_to_group(
    group_id: str,
    assignment: AssignUserToGroup,
    db: AsyncSession = Depends(get_db),
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Groups", Action.UPDATE))
):
    """Add a user to a group."""
    changed = await gateway.assign(Relation.USER_GROUP, assignment.user_id, group_id, actor_id=principal.user_id)
    group = await EntityStore(db).get(Group, group_id)
    message = "User added to group" if changed else "User already in group"
    return ApiResponse.ok(GroupResponse.model_validate(group), message)


@router.delete("/groups/{group_id}/users/{user_id}", response_model=ApiResponse[GroupResponse])
async def remove_user_from_group(
    group_id: str,
    user_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: MutationGateway = Depends(get_mutation_gateway),
    principal: Principal = Depends(require_permission("Groups", Action.UPDATE))
):
    """Remove a user from a group."""
    changed = await gateway.unassign(Relation.USER_GROUP, user_id, group_id, actor_id=principal.user_id)
    group = await EntityStore(db).get(Group, group_id)
    message = "User removed from group" if changed else "User was not in group"
    return ApiResponse.ok(GroupResponse.model_validate(group), message)


# ============================================================================
# Permission Checking
# ============================================================================

@router.post("/simulate", response_model=ApiResponse[SimulateResult])
@limiter.limit(config.RATE_LIMIT)
async def simulate_permission(
    request: Request,
    check: SimulateRequest,
    principal: Principal = Depends(get_current_principal),
    authorization: AuthorizationService = Depends(get_authorization_service)
):
    """
    Check whether the caller may perform ``action`` on ``module``.

    Always answers; an unknown principal or a failed lookup is a denial.
    """
    decision = await authorization.simulate(principal.user_id, check.module, check.action)
    return ApiResponse.ok(SimulateResult(can_perform=decision.allowed, reason=decision.reason))


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=ApiResponse[Page[AuditLogResponse]])
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission("Audit", Action.READ))
):
    """List audit logs, newest first, with optional filtering."""
    store = EntityStore(db)
    filters = {"user_id": user_id, "action": action, "resource_type": resource_type}
    total = await store.count(AuditLog, **filters)
    logs = await store.list(AuditLog, skip=skip, limit=limit, newest_first=True, **filters)

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return ApiResponse.ok(Page[AuditLogResponse](
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    ))
