from coderoom.schemas.auth import UserLogin, UserResponse, TokenResponse, TokenRefresh
from coderoom.schemas.room import RoomCreate, RoomResponse, RoomDetailResponse, ParticipantResponse

__all__ = [
    "UserLogin", "UserResponse", "TokenResponse", "TokenRefresh",
    "RoomCreate", "RoomResponse", "RoomDetailResponse", "ParticipantResponse"
]
