"""
Policy enforcement module for the consent engine
Role and operation checks for every public entry point
"""

from .rbac import (
    ProviderType, Role, Operation, ROLE_OPERATIONS, can_act, require_operation
)

__all__ = [
    "ProviderType",
    "Role",
    "Operation",
    "ROLE_OPERATIONS",
    "can_act",
    "require_operation",
]
