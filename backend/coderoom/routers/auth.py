"""
Authentication Router for CodeRoom

Thin identity adapter: token issue, refresh, revocation and the
``get_current_user`` dependency used by every room endpoint.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from coderoom.database import get_db
from coderoom.services.auth_service import AuthService
from coderoom.services.redis_state import get_redis_state
from coderoom.schemas.auth import UserLogin, UserResponse, TokenResponse, TokenRefresh
from coderoom.models.user import User
from coderoom.utils.rate_limit import rate_limit
from coderoom.utils.logging_config import auth_logger
from coderoom.exceptions import (
    TokenExpiredException,
    InvalidCredentialsException,
    UserInactiveException,
)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])
security = HTTPBearer()


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Resolve the bearer token to the current user.

    Raises:
        TokenExpiredException: token invalid or expired, or user unknown
        TokenRevokedException: token was revoked by logout
        UserInactiveException: account disabled
    """
    auth_service = AuthService(db)
    user = await auth_service.get_user_from_token(credentials.credentials)
    if not user:
        auth_logger.warning("Failed authorization attempt via token")
        raise TokenExpiredException()
    if not user.is_active:
        raise UserInactiveException()
    # Rate limiter keys per user once authenticated
    request.state.user = user
    return user


@router.post("/login", response_model=TokenResponse)
@rate_limit(limit=5, window=60, identifier="login")
async def login(
    request: Request,
    login_data: UserLogin,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Login with username - 5 attempts / minute.

    Raises:
        InvalidCredentialsException: wrong username or password
        UserInactiveException: account disabled
    """
    auth_service = AuthService(db)
    user = await auth_service.authenticate_user(login_data.username, login_data.password)

    if not user:
        raise InvalidCredentialsException()

    if not user.is_active:
        raise UserInactiveException()

    auth_logger.info("User logged in successfully", extra={"username": user.username})
    return auth_service.create_user_tokens(user)


@router.post("/refresh", response_model=TokenResponse)
@rate_limit(limit=20, window=60, identifier="refresh")
async def refresh_token(
    request: Request,
    token_data: TokenRefresh,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Refresh tokens - 20 requests / minute.

    Raises:
        TokenExpiredException: refresh token invalid, expired or revoked
    """
    auth_service = AuthService(db)
    tokens = await auth_service.refresh_tokens(token_data.refresh_token)

    if not tokens:
        raise TokenExpiredException("Invalid refresh token")

    return tokens


@router.get("/me", response_model=UserResponse)
@rate_limit(limit=60, window=60, identifier="me")
async def get_me(
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)]
):
    """Current user - 60 requests / minute"""
    return current_user


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
@rate_limit(limit=20, window=60, identifier="logout")
async def logout(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Revoke the presented access token and go offline - 20 requests / minute"""
    auth_service = AuthService(db)
    await auth_service.revoke_token(credentials.credentials)
    await get_redis_state().delete_active_user(str(current_user.id))
    auth_logger.info("User logged out", extra={"user_id": str(current_user.id)})
