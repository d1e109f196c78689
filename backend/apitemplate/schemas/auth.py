"""Authentication schemas.

Token exchange payloads use PascalCase field names on the wire.
"""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserRegister(BaseModel):
    """User registration request."""

    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)


class UserLogin(BaseModel):
    """User login request."""

    username: str  # Can be username or email
    password: str


class UserResponse(BaseModel):
    """User info response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    created_at: datetime


class RefreshTokenRequest(BaseModel):
    """Token refresh request."""

    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="RefreshToken", min_length=1)


class RevokeTokenRequest(BaseModel):
    """Refresh token revocation request."""

    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="RefreshToken", min_length=1)


class RefreshTokenResponse(BaseModel):
    """New access/refresh token pair."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="AccessToken")
    refresh_token: str = Field(..., alias="RefreshToken")
    expires_at: datetime = Field(..., alias="ExpiresAt")
    refresh_token_expires_at: datetime = Field(..., alias="RefreshTokenExpiresAt")


class LoginResponse(RefreshTokenResponse):
    """Token pair issued on login."""

    token_type: str = Field("bearer", alias="TokenType")


class RevokeTokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(..., alias="Success")
    message: str = Field(..., alias="Message")


class PermissionGrantResponse(BaseModel):
    """One active role -> resource/action path."""

    model_config = ConfigDict(from_attributes=True)

    role: str
    resource_id: int
    resource: str
    action_type_id: int
    action: str


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
