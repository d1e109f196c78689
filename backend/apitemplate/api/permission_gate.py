"""Global permission check driven by request headers.

Every request must name the resource it touches (``X-Resource-Id``) and the
action it performs (``X-Action-Type-Id`` or ``X-Action-Type``). The caller's
roles must grant that action on that resource, otherwise the request never
reaches its handler. Routes registered with :func:`skip_permission_check`
and the configured public paths bypass the check.
"""
from enum import Enum
import logging
import re

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import compile_path

from apitemplate.config import get_settings
from apitemplate.schemas.errors import GateErrorResponse
from apitemplate.security import AccessTokenError, decode_access_token
from apitemplate.services.permissions import PermissionService

logger = logging.getLogger(__name__)

RESOURCE_ID_HEADER = "X-Resource-Id"
ACTION_TYPE_ID_HEADER = "X-Action-Type-Id"
ACTION_TYPE_HEADER = "X-Action-Type"

SKIP_PERMISSION_CHECK_ATTR = "skip_permission_check"

# ASCII digits with an optional sign, surrounding whitespace already stripped
INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")


class DenialReason(Enum):
    UNAUTHENTICATED = (401, "User not authenticated")
    MISSING_RESOURCE_CONTEXT = (
        403,
        f"Missing or invalid '{RESOURCE_ID_HEADER}' header. Please provide a valid resource ID.",
    )
    MISSING_ACTION_CONTEXT = (
        403,
        f"Missing '{ACTION_TYPE_ID_HEADER}' or '{ACTION_TYPE_HEADER}' header. "
        "Please provide the action type for permission checking.",
    )
    FORBIDDEN = (403, "You do not have permission to perform this action on this resource.")

    @property
    def status_code(self) -> int:
        return self.value[0]

    @property
    def message(self) -> str:
        return self.value[1]


def skip_permission_check(endpoint):
    """Mark an endpoint as exempt from the permission gate.

    Apply it below the route decorator so the flag is on the function the
    router registers.
    """
    setattr(endpoint, SKIP_PERMISSION_CHECK_ATTR, True)
    return endpoint


def collect_exempt_routes(routes) -> list:
    return [
        route for route in routes
        if getattr(getattr(route, "endpoint", None), SKIP_PERMISSION_CHECK_ATTR, False)
    ]


class ExemptRoutes:
    """Paths and methods of the endpoints marked with :func:`skip_permission_check`.

    Filled while the app is assembled, one router at a time, with the prefix
    the router is mounted under. Lookups never walk the app's route table.
    """

    def __init__(self):
        self._entries: list[tuple[re.Pattern, frozenset[str] | None]] = []

    def add(self, path: str, methods=None) -> None:
        path_regex, _, _ = compile_path(path)
        allowed = frozenset(method.upper() for method in methods) if methods else None
        self._entries.append((path_regex, allowed))

    def include(self, router, prefix: str = "") -> list[str]:
        """Record the flagged routes of ``router`` as served under ``prefix``."""
        paths = []
        for route in collect_exempt_routes(router.routes):
            path = prefix + route.path
            self.add(path, getattr(route, "methods", None))
            paths.append(path)
        return paths

    def matches(self, method: str, path: str) -> bool:
        method = method.upper()
        for path_regex, allowed in self._entries:
            if not path_regex.match(path):
                continue
            if allowed is None or method in allowed or (method == "HEAD" and "GET" in allowed):
                return True
        return False


def deny(reason: DenialReason) -> JSONResponse:
    body = GateErrorResponse(StatusCode=reason.status_code, Message=reason.message)
    return JSONResponse(status_code=reason.status_code, content=body.model_dump(mode="json"))


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    value = value.strip()
    if not INTEGER_PATTERN.fullmatch(value):
        return None
    return int(value)


class PermissionMiddleware(BaseHTTPMiddleware):
    """Rejects requests whose caller lacks the permission named in the headers."""

    def __init__(
        self,
        app,
        session_factory: sessionmaker,
        public_paths: list[str] | None = None,
        exempt_routes: ExemptRoutes | None = None,
    ):
        super().__init__(app)
        self.session_factory = session_factory
        self.public_paths = tuple(public_paths if public_paths is not None else get_settings().public_paths)
        self.exempt_routes = exempt_routes if exempt_routes is not None else ExemptRoutes()

    def is_exempt(self, request: Request) -> bool:
        path = request.url.path
        if any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in self.public_paths):
            return True
        return self.exempt_routes.matches(request.method, path)

    async def dispatch(self, request: Request, call_next):
        if self.is_exempt(request):
            logger.debug(f"Skipping permission check for path: {request.url.path}")
            return await call_next(request)

        resource_id = _parse_int(request.headers.get(RESOURCE_ID_HEADER))
        if resource_id is None:
            logger.warning(
                f"Permission check failed: Missing or invalid '{RESOURCE_ID_HEADER}' header "
                f"for path: {request.url.path}"
            )
            return deny(DenialReason.MISSING_RESOURCE_CONTEXT)

        user_id = self.resolve_user_id(request)
        if user_id is None:
            logger.warning("Permission check failed: User not authenticated or invalid user ID")
            return deny(DenialReason.UNAUTHENTICATED)

        action_type_id = _parse_int(request.headers.get(ACTION_TYPE_ID_HEADER))
        action_type = (request.headers.get(ACTION_TYPE_HEADER) or "").strip()
        if action_type_id is not None:
            action_info = f"ActionTypeId={action_type_id}"
        elif action_type:
            action_info = f"ActionType={action_type}"
        else:
            logger.warning(
                f"Permission check failed: Missing '{ACTION_TYPE_ID_HEADER}' or '{ACTION_TYPE_HEADER}' "
                f"header for path: {request.url.path}"
            )
            return deny(DenialReason.MISSING_ACTION_CONTEXT)

        allowed = await run_in_threadpool(self.check_permission, user_id, resource_id, action_type_id, action_type)
        if not allowed:
            logger.warning(
                f"Permission denied: UserId={user_id}, ResourceId={resource_id}, {action_info}, "
                f"Path={request.url.path}"
            )
            return deny(DenialReason.FORBIDDEN)

        logger.info(
            f"Permission granted: UserId={user_id}, ResourceId={resource_id}, {action_info}, "
            f"Path={request.url.path}"
        )
        request.state.user_id = user_id
        return await call_next(request)

    @staticmethod
    def resolve_user_id(request: Request) -> int | None:
        auth_header = request.headers.get("Authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        try:
            return decode_access_token(token.strip())
        except AccessTokenError:
            return None

    def check_permission(
        self,
        user_id: int,
        resource_id: int,
        action_type_id: int | None,
        action_type: str,
    ) -> bool:
        try:
            with self.session_factory() as db:
                permissions = PermissionService(db)
                if action_type_id is not None:
                    return permissions.has_permission_by_action_type_id(user_id, resource_id, action_type_id)
                return permissions.has_permission(user_id, resource_id, action_type)
        except SQLAlchemyError:
            logger.exception(f"Permission store unavailable for UserId={user_id}, ResourceId={resource_id}")
            return False
