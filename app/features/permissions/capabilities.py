"""
Capability value types: the restricted action enum and the (module, action) pair.
"""
from enum import Enum
from typing import NamedTuple


class Action(str, Enum):
    """CRUD actions. Independent of each other; no action implies another."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class Capability(NamedTuple):
    """A (module name, action) pair, rendered as ``"Module:action"``."""
    module: str
    action: Action

    def __str__(self) -> str:
        return f"{self.module}:{self.action.value}"
