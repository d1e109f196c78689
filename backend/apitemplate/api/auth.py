"""Authentication API endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from apitemplate.api.deps import (
    get_current_user,
    get_db,
    get_device_info,
    get_permission_service,
    get_refresh_token_service,
    get_request_ip,
)
from apitemplate.api.permission_gate import skip_permission_check
from apitemplate.config import get_settings
from apitemplate.models.user import User
from apitemplate.schemas.auth import (
    LoginResponse,
    MessageResponse,
    PermissionGrantResponse,
    RefreshTokenRequest,
    RefreshTokenResponse,
    RevokeTokenRequest,
    RevokeTokenResponse,
    UserLogin,
    UserRegister,
    UserResponse,
)
from apitemplate.security import create_access_token, get_password_hash, verify_password
from apitemplate.services.permissions import PermissionService
from apitemplate.services.refresh_tokens import (
    RefreshTokenService,
    TokenNotActiveError,
    TokenNotFoundError,
)

router = APIRouter(tags=["auth"])
settings = get_settings()
logger = logging.getLogger(__name__)

INVALID_REFRESH_TOKEN = "Invalid or expired refresh token"


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
@skip_permission_check
def register(user_data: UserRegister, db: Session = Depends(get_db)):
    """Register a new user."""
    # Check username
    if db.query(User).filter(User.username == user_data.username).first():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username already registered",
        )

    # Check email
    if db.query(User).filter(User.email == user_data.email).first():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered",
        )

    user = User(
        username=user_data.username,
        email=user_data.email,
        password_hash=get_password_hash(user_data.password),
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    return user


@router.post("/login", response_model=LoginResponse)
@skip_permission_check
def login(
    user_data: UserLogin,
    request: Request,
    db: Session = Depends(get_db),
    tokens: RefreshTokenService = Depends(get_refresh_token_service),
):
    """Login and get an access/refresh token pair."""
    # Find user by username or email
    user = db.query(User).filter(
        (User.username == user_data.username) | (User.email == user_data.username)
    ).first()

    if not user or not user.is_active or not verify_password(user_data.password, user.password_hash):
        logger.warning(f"Failed login for {user_data.username!r} from {get_request_ip(request)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    refresh_token = tokens.generate_for(user.id, get_request_ip(request), get_device_info(request))
    access_token, expires_at = create_access_token(user.id)
    response = LoginResponse(
        access_token=access_token,
        refresh_token=refresh_token.token,
        expires_at=expires_at,
        refresh_token_expires_at=refresh_token.expires_at,
    )
    db.commit()
    logger.info(f"User {user.id} logged in")

    return response


@router.post("/refresh", response_model=RefreshTokenResponse)
@skip_permission_check
def refresh_tokens(
    payload: RefreshTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
    tokens: RefreshTokenService = Depends(get_refresh_token_service),
):
    """Exchange a refresh token for a new access/refresh token pair."""
    try:
        current = tokens.validate(payload.refresh_token)
        user = db.get(User, current.user_id)
        if user is None or not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=INVALID_REFRESH_TOKEN,
            )
        new_token = tokens.rotate(current, get_request_ip(request), get_device_info(request))
    except TokenNotFoundError:
        logger.info("Refresh attempted with an unknown token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_REFRESH_TOKEN,
        )
    except TokenNotActiveError as exc:
        db.rollback()
        if exc.is_reuse and settings.revoke_all_on_refresh_reuse:
            tokens.revoke_all_for_user(exc.record.user_id, get_request_ip(request))
            db.commit()
            logger.warning(f"Revoked all refresh tokens of user {exc.record.user_id} after token reuse")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=INVALID_REFRESH_TOKEN,
        )

    access_token, expires_at = create_access_token(user.id)
    response = RefreshTokenResponse(
        access_token=access_token,
        refresh_token=new_token.token,
        expires_at=expires_at,
        refresh_token_expires_at=new_token.expires_at,
    )
    db.commit()

    return response


@router.post("/revoke", response_model=RevokeTokenResponse)
@skip_permission_check
def revoke_token(
    payload: RevokeTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
    tokens: RefreshTokenService = Depends(get_refresh_token_service),
):
    """Revoke a single refresh token.

    Unknown and already-terminal tokens get the same answer.
    """
    if not tokens.revoke(payload.refresh_token, get_request_ip(request)):
        return RevokeTokenResponse(success=False, message=INVALID_REFRESH_TOKEN)
    db.commit()
    return RevokeTokenResponse(success=True, message="Refresh token revoked")


@router.post("/logout", response_model=MessageResponse)
@skip_permission_check
def logout(
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    tokens: RefreshTokenService = Depends(get_refresh_token_service),
):
    """Logout and revoke all refresh tokens for the current user."""
    tokens.revoke_all_for_user(current_user.id, get_request_ip(request))
    db.commit()
    return MessageResponse(message="Successfully logged out")


@router.get("/me/permissions", response_model=list[PermissionGrantResponse])
@skip_permission_check
def my_permissions(
    current_user: User = Depends(get_current_user),
    permissions: PermissionService = Depends(get_permission_service),
):
    """List the active role, resource and action grants of the current user."""
    return permissions.list_permissions(current_user.id)
