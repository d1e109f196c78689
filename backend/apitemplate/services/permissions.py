"""Permission resolution over the role/permission graph.

A user may perform an action on a resource only when there is a path

    user -(UserRole)-> Role -(RolePermission)-> Permission -> (Resource, ActionType)

on which every node and every edge is active. There is no role hierarchy,
no wildcard resource and no inherited grant. Errors deny.
"""
from dataclasses import dataclass
import logging

from sqlalchemy import exists, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apitemplate.models.rbac import ActionType, Permission, Resource, Role, RolePermission, UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionGrant:
    role: str
    resource_id: int
    resource: str
    action_type_id: int
    action: str


class PermissionService:
    """Answers allow/deny questions from the database of record on every call."""

    def __init__(self, db: Session):
        self.db = db

    def has_permission(self, user_id: int, resource_id: int, action_type_title: str) -> bool:
        """Check an action by title, compared case-insensitively."""
        if not action_type_title:
            return False
        return self._check(
            user_id,
            resource_id,
            func.lower(ActionType.title) == action_type_title.lower(),
            f"Action={action_type_title}",
        )

    def has_permission_by_action_type_id(self, user_id: int, resource_id: int, action_type_id: int) -> bool:
        return self._check(
            user_id,
            resource_id,
            Permission.action_type_id == action_type_id,
            f"ActionTypeId={action_type_id}",
        )

    def active_role_ids(self, user_id: int) -> list[int]:
        stmt = (
            select(UserRole.role_id)
            .join(Role, Role.id == UserRole.role_id)
            .where(
                UserRole.user_id == user_id,
                UserRole.is_active.is_(True),
                Role.is_active.is_(True),
            )
        )
        return list(self.db.scalars(stmt))

    def list_permissions(self, user_id: int) -> list[PermissionGrant]:
        """All fully-active (role, resource, action) paths of a user."""
        stmt = (
            select(Role.title, Resource.id, Resource.name, ActionType.id, ActionType.title)
            .select_from(UserRole)
            .join(Role, Role.id == UserRole.role_id)
            .join(RolePermission, RolePermission.role_id == Role.id)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .join(Resource, Resource.id == Permission.resource_id)
            .join(ActionType, ActionType.id == Permission.action_type_id)
            .where(
                UserRole.user_id == user_id,
                UserRole.is_active.is_(True),
                Role.is_active.is_(True),
                RolePermission.is_active.is_(True),
                Permission.is_active.is_(True),
                Resource.is_active.is_(True),
                ActionType.is_active.is_(True),
            )
            .order_by(Role.title, Resource.id, ActionType.id)
        )
        return [PermissionGrant(*row) for row in self.db.execute(stmt)]

    def _check(self, user_id: int, resource_id: int, action_clause, action_info: str) -> bool:
        try:
            role_ids = self.active_role_ids(user_id)
            if not role_ids:
                logger.warning(f"User {user_id} has no active roles")
                return False

            granted = self.db.scalar(
                select(
                    exists()
                    .where(
                        RolePermission.role_id.in_(role_ids),
                        RolePermission.is_active.is_(True),
                        Permission.id == RolePermission.permission_id,
                        Permission.resource_id == resource_id,
                        Permission.is_active.is_(True),
                        ActionType.id == Permission.action_type_id,
                        ActionType.is_active.is_(True),
                        Resource.id == Permission.resource_id,
                        Resource.is_active.is_(True),
                        action_clause,
                    )
                )
            )
        except SQLAlchemyError:
            logger.exception(
                f"Error checking permission for UserId={user_id}, ResourceId={resource_id}, {action_info}"
            )
            return False

        if not granted:
            logger.warning(f"Permission denied: UserId={user_id}, ResourceId={resource_id}, {action_info}")
        return bool(granted)
