"""
User feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.errors import NotFound
from app.core.responses import ApiResponse
from app.features.permissions.capabilities import Action
from app.features.permissions.dependencies import (
    get_authorization_service,
    get_mutation_gateway,
    require_permission,
)
from app.features.permissions.gateway import MutationGateway
from app.features.permissions.schemas import EffectivePermissions
from app.features.permissions.service import AuthorizationService
from app.features.permissions.store import EntityStore
from app.features.users.auth import Principal
from app.features.users.dependencies import get_current_principal
from app.features.users.models import User
from app.features.users.schemas import UserCreate, UserResponse, UserUpdate


router = APIRouter(tags=["users"])


@router.get("/me", response_model=ApiResponse[UserResponse])
async def get_current_user_profile(
    principal: Annotated[Principal, Depends(get_current_principal)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get the user record behind the current token."""
    if not principal.user_id:
        raise NotFound("No user is registered for this principal")
    user = await EntityStore(db).get(User, principal.user_id)
    return ApiResponse.ok(UserResponse.model_validate(user))


@router.get("", response_model=ApiResponse[list[UserResponse]])
async def list_users(
    principal: Annotated[Principal, Depends(require_permission("Users", Action.READ))],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = 0,
    limit: int = 50,
    search: str | None = None
):
    """List users; ``search`` matches usernames case-insensitively."""
    users = await EntityStore(db).list(User, skip=skip, limit=limit, search=search)
    return ApiResponse.ok([UserResponse.model_validate(u) for u in users])


@router.post("", response_model=ApiResponse[UserResponse], status_code=201)
async def create_user(
    user: UserCreate,
    principal: Annotated[Principal, Depends(require_permission("Users", Action.CREATE))],
    gateway: Annotated[MutationGateway, Depends(get_mutation_gateway)]
):
    """Register an identity-store account as a user."""
    created = await gateway.create(User, user.model_dump(), actor_id=principal.user_id)
    return ApiResponse.ok(UserResponse.model_validate(created), "User created")


@router.get("/{user_id}", response_model=ApiResponse[UserResponse])
async def get_user_by_id(
    user_id: str,
    principal: Annotated[Principal, Depends(require_permission("Users", Action.READ))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get a user with their groups."""
    user = await EntityStore(db).get(User, user_id)
    return ApiResponse.ok(UserResponse.model_validate(user))


@router.get("/{user_id}/permissions", response_model=ApiResponse[EffectivePermissions])
async def get_user_permissions(
    user_id: str,
    principal: Annotated[Principal, Depends(require_permission("Users", Action.READ))],
    authorization: Annotated[AuthorizationService, Depends(get_authorization_service)]
):
    """Effective permission set of any user."""
    permissions = await authorization.resolve(user_id)
    return ApiResponse.ok(EffectivePermissions(
        user_id=user_id,
        permissions=sorted(str(capability) for capability in permissions),
    ))


@router.put("/{user_id}", response_model=ApiResponse[UserResponse])
async def update_user(
    user_id: str,
    update_data: UserUpdate,
    principal: Annotated[Principal, Depends(require_permission("Users", Action.UPDATE))],
    gateway: Annotated[MutationGateway, Depends(get_mutation_gateway)]
):
    """Rename a user or re-link their identity-store account."""
    user = await gateway.update(User, user_id, update_data.model_dump(exclude_unset=True), actor_id=principal.user_id)
    return ApiResponse.ok(UserResponse.model_validate(user), "User updated")


@router.delete("/{user_id}", response_model=ApiResponse[None])
async def delete_user(
    user_id: str,
    principal: Annotated[Principal, Depends(require_permission("Users", Action.DELETE))],
    gateway: Annotated[MutationGateway, Depends(get_mutation_gateway)],
    cascade: bool = True
):
    """Delete a user, removing them from their groups. ``cascade=false`` refuses while they are in one."""
    await gateway.delete(User, user_id, cascade=cascade, actor_id=principal.user_id)
    return ApiResponse.ok(message="User deleted")
