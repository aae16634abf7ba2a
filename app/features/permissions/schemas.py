"""
Pydantic schemas for permission management.

Request and response models for modules, permissions, roles, groups,
simulation and audit logs. Responses carry the "include related" shape:
every entity lists its immediate neighbours in the permission graph.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, computed_field

from app.features.permissions.capabilities import Action


# ============================================================================
# Summaries (neighbours embedded in responses)
# ============================================================================

class ModuleSummary(BaseModel):
    id: str
    name: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PermissionBrief(BaseModel):
    id: str
    module_id: str
    action: Action

    model_config = ConfigDict(from_attributes=True)


class PermissionSummary(PermissionBrief):
    """Permission with its owning module."""
    module: ModuleSummary

    @computed_field
    @property
    def capability(self) -> str:
        return f"{self.module.name}:{self.action.value}"


class RoleSummary(BaseModel):
    id: str
    name: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class GroupSummary(BaseModel):
    id: str
    name: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class UserSummary(BaseModel):
    id: str
    username: str

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Module Schemas
# ============================================================================

class ModuleBase(BaseModel):
    """Base module schema."""
    name: str = Field(..., max_length=100, description="Unique module name (e.g., 'Users')")
    description: Optional[str] = Field(None, max_length=1000, description="Module description")


class ModuleCreate(ModuleBase):
    """Schema for creating a new module."""


class ModuleUpdate(BaseModel):
    """Schema for updating a module."""
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class ModuleResponse(ModuleSummary):
    """Schema for module response."""
    permissions: List[PermissionBrief] = []
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionCreate(BaseModel):
    """Schema for creating a new permission."""
    module_id: str = Field(..., description="Owning module ID")
    action: Action = Field(..., description="One of create, read, update, delete")


class PermissionUpdate(BaseModel):
    """Schema for updating a permission."""
    module_id: Optional[str] = None
    action: Optional[Action] = None


class PermissionResponse(PermissionSummary):
    """Schema for permission response."""
    roles: List[RoleSummary] = []
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., max_length=100, description="Unique role name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class RoleResponse(RoleSummary):
    """Schema for role response."""
    permissions: List[PermissionSummary] = []
    groups: List[GroupSummary] = []
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Group Schemas
# ============================================================================

class GroupBase(BaseModel):
    """Base group schema."""
    name: str = Field(..., max_length=100, description="Unique group name")
    description: Optional[str] = Field(None, max_length=1000, description="Group description")


class GroupCreate(GroupBase):
    """Schema for creating a new group."""


class GroupUpdate(BaseModel):
    """Schema for updating a group."""
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class GroupResponse(GroupSummary):
    """Schema for group response."""
    roles: List[RoleSummary] = []
    users: List[UserSummary] = []
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignPermissionToRole(BaseModel):
    """Schema for assigning a permission to a role."""
    permission_id: str = Field(..., description="Permission ID")


class AssignRoleToGroup(BaseModel):
    """Schema for assigning a role to a group."""
    role_id: str = Field(..., description="Role ID")


class AssignUserToGroup(BaseModel):
    """Schema for adding a user to a group."""
    user_id: str = Field(..., description="User ID")


# ============================================================================
# Permission Check Schemas
# ============================================================================

class SimulateRequest(BaseModel):
    """What-if check for the current principal."""
    module: str = Field(..., min_length=1, description="Module name")
    action: str = Field(..., min_length=1, description="Action")


class SimulateResult(BaseModel):
    can_perform: bool = Field(..., alias="canPerform")
    reason: str

    model_config = ConfigDict(populate_by_name=True)


class EffectivePermissions(BaseModel):
    """A user's effective permission set as "Module:action" strings."""
    user_id: str
    permissions: List[str]


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
