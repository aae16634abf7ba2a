"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, Field

from app.features.permissions.schemas import GroupSummary


class UserBase(BaseModel):
    """Base user schema with common fields."""
    username: str = Field(..., max_length=150)


class UserCreate(UserBase):
    """Schema for creating a new user."""
    credential_ref: str | None = Field(None, max_length=255, description="Identity-store subject (JWT sub)")


class UserUpdate(BaseModel):
    """Schema for updating user information."""
    username: str | None = Field(None, max_length=150)
    credential_ref: str | None = Field(None, max_length=255)


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    credential_ref: str | None = None
    groups: list[GroupSummary] = []
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
