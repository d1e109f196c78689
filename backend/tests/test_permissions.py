import pytest
from sqlalchemy.exc import OperationalError

from apitemplate.models.rbac import ActionType, Permission, Resource, Role, RolePermission, UserRole
from apitemplate.services.permissions import PermissionGrant, PermissionService
from conftest import make_user


@pytest.fixture
def graph(db):
    """User 'alice' holds role Admin, which may Read resource 5."""
    user = make_user(db)
    admin = Role(id=1, title="Admin")
    read = ActionType(id=1, title="Read")
    delete = ActionType(id=4, title="Delete")
    reports = Resource(id=5, name="Reports")
    invoices = Resource(id=6, name="Invoices")
    db.add_all([admin, read, delete, reports, invoices])
    db.flush()

    read_reports = Permission(resource_id=reports.id, action_type_id=read.id)
    delete_invoices = Permission(resource_id=invoices.id, action_type_id=delete.id)
    db.add_all([read_reports, delete_invoices])
    db.flush()

    membership = UserRole(user_id=user.id, role_id=admin.id)
    grant = RolePermission(role_id=admin.id, permission_id=read_reports.id)
    db.add_all([membership, grant])
    db.flush()

    return {
        "user": user,
        "role": admin,
        "action": read,
        "resource": reports,
        "permission": read_reports,
        "membership": membership,
        "grant": grant,
    }


def test_admin_scenario(db, graph):
    service = PermissionService(db)
    user_id = graph["user"].id

    assert service.has_permission(user_id, 5, "read") is True
    assert service.has_permission(user_id, 5, "READ") is True
    assert service.has_permission(user_id, 5, "Delete") is False
    assert service.has_permission(user_id, 6, "Read") is False


def test_action_type_id_lookup(db, graph):
    service = PermissionService(db)
    user_id = graph["user"].id

    assert service.has_permission_by_action_type_id(user_id, 5, 1) is True
    assert service.has_permission_by_action_type_id(user_id, 5, 4) is False
    assert service.has_permission_by_action_type_id(user_id, 6, 1) is False


def test_user_without_roles_is_denied(db, graph):
    stranger = make_user(db, "mallory")
    service = PermissionService(db)

    assert service.active_role_ids(stranger.id) == []
    assert service.has_permission(stranger.id, 5, "Read") is False
    assert service.has_permission_by_action_type_id(stranger.id, 5, 1) is False


def test_empty_action_title_is_denied(db, graph):
    assert PermissionService(db).has_permission(graph["user"].id, 5, "") is False


@pytest.mark.parametrize("element", ["membership", "role", "grant", "permission", "action", "resource"])
def test_inactive_element_breaks_the_path(db, graph, element):
    graph[element].is_active = False
    db.flush()
    service = PermissionService(db)
    user_id = graph["user"].id

    assert service.has_permission(user_id, 5, "Read") is False
    assert service.has_permission_by_action_type_id(user_id, 5, 1) is False
    assert service.list_permissions(user_id) == []


def test_second_active_path_still_grants(db, graph):
    graph["role"].is_active = False
    viewer = Role(title="Viewer")
    db.add(viewer)
    db.flush()
    db.add_all([
        UserRole(user_id=graph["user"].id, role_id=viewer.id),
        RolePermission(role_id=viewer.id, permission_id=graph["permission"].id),
    ])
    db.flush()

    assert PermissionService(db).has_permission(graph["user"].id, 5, "Read") is True


def test_list_permissions(db, graph):
    grants = PermissionService(db).list_permissions(graph["user"].id)

    assert grants == [
        PermissionGrant(role="Admin", resource_id=5, resource="Reports", action_type_id=1, action="Read"),
    ]


def test_storage_error_fails_closed(db, graph, monkeypatch):
    service = PermissionService(db)

    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is gone"))

    monkeypatch.setattr(service, "active_role_ids", broken)

    assert service.has_permission(graph["user"].id, 5, "Read") is False
    assert service.has_permission_by_action_type_id(graph["user"].id, 5, 1) is False
