"""ApiTemplate - authentication and authorization API."""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from apitemplate.api.permission_gate import ExemptRoutes, PermissionMiddleware
from apitemplate.config import get_settings
from apitemplate.database import SessionLocal

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup: create tables and sweep stale refresh tokens
    from apitemplate.database import Base, engine, unit_of_work
    from apitemplate.services.refresh_tokens import RefreshTokenService
    from apitemplate.services.token_store import SqlAlchemyTokenStore

    # Import all models so they're registered with Base
    from apitemplate import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    if settings.cleanup_on_startup:
        with unit_of_work() as db:
            RefreshTokenService(SqlAlchemyTokenStore(db), settings).cleanup_expired()

    yield


app = FastAPI(
    title=settings.app_name,
    description="Authentication, refresh-token lifecycle and header-driven permissions",
    version="0.1.0",
    lifespan=lifespan,
)

exempt_routes = ExemptRoutes()
app.add_middleware(
    PermissionMiddleware,
    session_factory=SessionLocal,
    public_paths=settings.public_paths,
    exempt_routes=exempt_routes,
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}


# Import and include routers
from apitemplate.api import auth  # noqa: E402

app.include_router(auth.router, prefix="/api/auth")
exempt_routes.include(auth.router, prefix="/api/auth")
