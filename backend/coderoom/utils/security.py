import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
import bcrypt
from jose import jwt, JWTError
from coderoom.config import settings


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password_bytes, salt).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))
    except ValueError:
        # Malformed hash in the database
        return False


def _encode(data: dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    # Unique per token; revocation is keyed by token
    to_encode.update({
        "exp": datetime.now(timezone.utc) + expires_delta,
        "type": token_type,
        "jti": str(uuid.uuid4()),
    })
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    return _encode(data, "access", expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))


def create_refresh_token(data: dict[str, Any]) -> str:
    return _encode(data, "refresh", timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS))


def decode_token(token: str) -> dict[str, Any] | None:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def create_tokens(user_id: str) -> dict[str, str]:
    claims = {"sub": user_id}
    return {
        "access_token": create_access_token(claims),
        "refresh_token": create_refresh_token(claims),
        "token_type": "bearer",
    }


def token_fingerprint(token: str) -> str:
    """Stable short identifier for a token (blocklist and rate-limit keys)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:32]


def remaining_lifetime(payload: dict[str, Any]) -> int:
    """Seconds until the token in ``payload`` expires, never below 1."""
    exp = payload.get("exp")
    if not exp:
        return 1
    return max(1, int(exp - datetime.now(timezone.utc).timestamp()))
