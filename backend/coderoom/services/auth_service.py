from uuid import UUID
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from coderoom.exceptions import TokenRevokedException
from coderoom.models.user import User
from coderoom.services.redis_state import get_redis_state
from coderoom.utils.security import (
    hash_password,
    verify_password,
    create_tokens,
    decode_token,
    token_fingerprint,
    remaining_lifetime,
)
from coderoom.utils.logging_config import auth_logger


class AuthService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_username(self, username: str) -> User | None:
        result = await self.db.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: UUID) -> User | None:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def create_user(
        self,
        username: str,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User:
        user = User(
            username=username,
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
        )
        self.db.add(user)
        await self.db.flush()
        await self.db.refresh(user)
        return user

    async def authenticate_user(self, username: str, password: str) -> User | None:
        user = await self.get_user_by_username(username)
        if not user or not verify_password(password, user.password_hash):
            auth_logger.warning("Failed authentication attempt", extra={"username": username})
            return None
        auth_logger.info("User authenticated successfully", extra={"username": username})
        return user

    def create_user_tokens(self, user: User) -> dict[str, str]:
        """Create access and refresh tokens for user."""
        return create_tokens(str(user.id))

    async def get_user_from_token(self, token: str) -> User | None:
        """
        Resolve an access token to its user.

        Returns None for malformed, expired or non-access tokens and for
        unknown users.

        Raises:
            TokenRevokedException: the token was revoked by logout
        """
        payload = decode_token(token)
        if not payload or payload.get("type") != "access":
            auth_logger.warning("Invalid or expired access token")
            return None
        user_id = payload.get("sub")
        if not user_id:
            auth_logger.warning("Token missing subject (user_id)")
            return None
        if await get_redis_state().is_token_blocked(token_fingerprint(token)):
            auth_logger.warning("Revoked token presented", extra={"user_id": user_id})
            raise TokenRevokedException()
        try:
            user = await self.get_user_by_id(UUID(user_id))
        except ValueError:
            return None
        if user:
            auth_logger.debug("User retrieved from token", extra={"username": user.username})
        return user

    async def refresh_tokens(self, refresh_token: str) -> dict[str, str] | None:
        payload = decode_token(refresh_token)
        if not payload or payload.get("type") != "refresh":
            return None
        user_id = payload.get("sub")
        if not user_id:
            return None
        if await get_redis_state().is_token_blocked(token_fingerprint(refresh_token)):
            return None
        user = await self.get_user_by_id(UUID(user_id))
        if not user or not user.is_active:
            return None
        return self.create_user_tokens(user)

    async def revoke_token(self, token: str) -> None:
        """Block ``token`` for the rest of its lifetime."""
        payload = decode_token(token)
        if not payload:
            return
        await get_redis_state().block_token(token_fingerprint(token), remaining_lifetime(payload))
        auth_logger.info("Token revoked", extra={"user_id": payload.get("sub")})
