"""SQLAlchemy models package."""
from apitemplate.models.user import User
from apitemplate.models.rbac import ActionType, Permission, Resource, Role, RolePermission, UserRole
from apitemplate.models.auth import RefreshToken

__all__ = [
    "User",
    "Role",
    "UserRole",
    "Resource",
    "ActionType",
    "Permission",
    "RolePermission",
    "RefreshToken",
]
