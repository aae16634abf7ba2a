"""
Permission checking dependencies for route protection.

The authorization service and the mutation gateway are process-wide
singletons; routes reach them through the ``get_*`` dependencies so tests
can swap in fresh instances.
"""
from fastapi import Depends, HTTPException, status

from app.core.database.engine import AsyncSessionLocal
from app.features.permissions.capabilities import Action
from app.features.permissions.gateway import MutationGateway
from app.features.permissions.service import AuthorizationService
from app.features.users.auth import Principal
from app.features.users.dependencies import get_current_principal
from app.utils import get_logger


log = get_logger(__name__)

authorization_service = AuthorizationService(AsyncSessionLocal)
mutation_gateway = MutationGateway(authorization_service, AsyncSessionLocal)


def get_authorization_service() -> AuthorizationService:
    return authorization_service


def get_mutation_gateway() -> MutationGateway:
    return mutation_gateway


def require_permission(module: str, action: Action):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.post("/roles")
        async def create_role(
            principal: Principal = Depends(require_permission("Roles", Action.CREATE))
        ):
            pass

    Args:
        module: Module name
        action: Action on that module

    Returns:
        Dependency function that returns the current principal if allowed

    Raises:
        HTTPException: 403 if the principal does not hold the permission
    """
    async def permission_dependency(
        principal: Principal = Depends(get_current_principal),
        authorization: AuthorizationService = Depends(get_authorization_service),
    ) -> Principal:
        if not await authorization.can(principal.user_id, module, action):
            log.info("Forbidden: %s lacks %s:%s", principal.subject, module, action.value)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {action.value} on {module}"
            )
        return principal

    return permission_dependency
