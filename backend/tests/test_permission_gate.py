from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
import pytest
from sqlalchemy.exc import OperationalError

from apitemplate.api.permission_gate import (
    ExemptRoutes,
    PermissionMiddleware,
    _parse_int,
    collect_exempt_routes,
    skip_permission_check,
)
from apitemplate.models.rbac import ActionType, Permission, Resource, Role, RolePermission, UserRole
from apitemplate.security import create_access_token
from conftest import make_user

FORBIDDEN = "You do not have permission to perform this action on this resource."


def _build_app(session_factory) -> FastAPI:
    app = FastAPI()
    exempt_routes = ExemptRoutes()
    app.add_middleware(
        PermissionMiddleware,
        session_factory=session_factory,
        public_paths=["/health"],
        exempt_routes=exempt_routes,
    )

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    @app.get("/api/public")
    @skip_permission_check
    def public():
        return {"public": True}

    @app.get("/api/reports")
    def reports(request: Request):
        return {"user_id": request.state.user_id}

    exempt_routes.include(app.router)
    return app


@pytest.fixture
def seeded(session_factory):
    db = session_factory()
    try:
        user = make_user(db)
        admin = Role(title="Admin")
        read = ActionType(id=1, title="Read")
        delete = ActionType(id=4, title="Delete")
        resource = Resource(id=5, name="Reports")
        db.add_all([admin, read, delete, resource])
        db.flush()
        permission = Permission(resource_id=5, action_type_id=1)
        db.add(permission)
        db.flush()
        db.add_all([
            UserRole(user_id=user.id, role_id=admin.id),
            RolePermission(role_id=admin.id, permission_id=permission.id),
        ])
        db.commit()
        user_id = user.id
    finally:
        db.close()

    access_token, _ = create_access_token(user_id)
    return {"user_id": user_id, "auth": {"Authorization": f"Bearer {access_token}"}}


@pytest.fixture
def client(session_factory):
    return TestClient(_build_app(session_factory))


def _assert_denial(response, status_code, message):
    assert response.status_code == status_code
    body = response.json()
    assert body["StatusCode"] == status_code
    assert body["Message"] == message
    datetime.fromisoformat(body["Timestamp"].replace("Z", "+00:00"))


def test_public_path_and_exempt_route_skip_checks(client):
    assert client.get("/health").status_code == 200
    assert client.get("/api/public").json() == {"public": True}


def test_exempt_routes_are_collected_from_registration_flag(session_factory):
    app = _build_app(session_factory)

    assert [route.path for route in collect_exempt_routes(app.router.routes)] == ["/api/public"]
    assert ExemptRoutes().include(app.router, prefix="/v1") == ["/v1/api/public"]


def test_exempt_routes_match_path_and_method():
    exempt_routes = ExemptRoutes()
    exempt_routes.add("/api/items/{item_id}", {"GET"})
    exempt_routes.add("/api/ping")

    assert exempt_routes.matches("get", "/api/items/42")
    assert exempt_routes.matches("HEAD", "/api/items/42")
    assert not exempt_routes.matches("DELETE", "/api/items/42")
    assert not exempt_routes.matches("GET", "/api/items/42/history")
    assert exempt_routes.matches("POST", "/api/ping")


@pytest.mark.parametrize(
    "raw, expected",
    [("5", 5), (" 17 ", 17), ("+3", 3), ("-2", -2), ("1_0", None), ("١٢", None), ("", None), (None, None)],
)
def test_header_integers_accept_plain_ascii_digits_only(raw, expected):
    assert _parse_int(raw) == expected


def test_missing_resource_header_is_rejected(client, seeded):
    response = client.get("/api/reports", headers={**seeded["auth"], "X-Action-Type": "Read"})

    _assert_denial(
        response,
        403,
        "Missing or invalid 'X-Resource-Id' header. Please provide a valid resource ID.",
    )


def test_non_numeric_resource_header_is_rejected(client, seeded):
    response = client.get(
        "/api/reports",
        headers={**seeded["auth"], "X-Resource-Id": "reports", "X-Action-Type": "Read"},
    )

    assert response.status_code == 403
    assert "X-Resource-Id" in response.json()["Message"]


def test_resource_is_checked_before_authentication(client):
    response = client.get("/api/reports", headers={"X-Action-Type": "Read"})

    assert response.status_code == 403


def test_missing_subject_is_unauthenticated(client, seeded):
    response = client.get("/api/reports", headers={"X-Resource-Id": "5", "X-Action-Type": "Read"})

    _assert_denial(response, 401, "User not authenticated")


def test_invalid_access_token_is_unauthenticated(client, seeded):
    response = client.get(
        "/api/reports",
        headers={"Authorization": "Bearer not-a-jwt", "X-Resource-Id": "5", "X-Action-Type": "Read"},
    )

    assert response.status_code == 401


def test_missing_action_headers_are_rejected(client, seeded):
    response = client.get("/api/reports", headers={**seeded["auth"], "X-Resource-Id": "5"})

    _assert_denial(
        response,
        403,
        "Missing 'X-Action-Type-Id' or 'X-Action-Type' header. Please provide the action type for permission checking.",
    )


def test_granted_by_action_name(client, seeded):
    response = client.get(
        "/api/reports",
        headers={**seeded["auth"], "X-Resource-Id": "5", "X-Action-Type": "read"},
    )

    assert response.status_code == 200
    assert response.json() == {"user_id": seeded["user_id"]}


def test_granted_by_action_type_id(client, seeded):
    response = client.get(
        "/api/reports",
        headers={**seeded["auth"], "X-Resource-Id": "5", "X-Action-Type-Id": "1"},
    )

    assert response.status_code == 200


def test_action_type_id_takes_priority_over_name(client, seeded):
    response = client.get(
        "/api/reports",
        headers={**seeded["auth"], "X-Resource-Id": "5", "X-Action-Type-Id": "4", "X-Action-Type": "Read"},
    )

    _assert_denial(response, 403, FORBIDDEN)


def test_non_numeric_action_type_id_falls_back_to_name(client, seeded):
    response = client.get(
        "/api/reports",
        headers={**seeded["auth"], "X-Resource-Id": "5", "X-Action-Type-Id": "read", "X-Action-Type": "Read"},
    )

    assert response.status_code == 200


def test_permission_denied(client, seeded):
    response = client.get(
        "/api/reports",
        headers={**seeded["auth"], "X-Resource-Id": "6", "X-Action-Type": "Read"},
    )

    _assert_denial(response, 403, FORBIDDEN)


def test_store_failure_denies(seeded):
    def broken_session_factory():
        raise OperationalError("connect", {}, Exception("database is gone"))

    client = TestClient(_build_app(broken_session_factory))
    response = client.get(
        "/api/reports",
        headers={**seeded["auth"], "X-Resource-Id": "5", "X-Action-Type": "Read"},
    )

    _assert_denial(response, 403, FORBIDDEN)
