"""
Error taxonomy for the access-control core.

Store and gateway code raise these; ``main.py`` renders them through the
standard response envelope. A negative authorization decision is not an
error and has no class here.
"""
from typing import Any, Dict, Optional
from fastapi import status


class AccessControlError(Exception):
    """Base class carrying an HTTP status and optional detail payload."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AccessControlError):
    """Malformed or constraint-violating input. ``details`` maps field -> message."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(AccessControlError):
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(AccessControlError):
    """Deletion or mutation would break referential integrity."""

    status_code = status.HTTP_409_CONFLICT


class Unavailable(AccessControlError):
    """The store could not be reached or timed out. Safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
