from uuid import UUID
from datetime import datetime
from pydantic import BaseModel, Field


class UserLogin(BaseModel):
    """Login with username and password"""
    username: str = Field(..., min_length=3, max_length=50)
    password: str


class UserResponse(BaseModel):
    id: UUID
    username: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    avatar_url: str | None = None
    display_name: str
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenRefresh(BaseModel):
    refresh_token: str
