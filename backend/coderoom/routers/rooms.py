"""
Team Rooms Router for CodeRoom

Room creation, lobby listing, HTTP join/leave and closing. Live editing
happens over the /ws/team socket.
"""
from uuid import UUID
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, status, Request, Query
from coderoom.services.lifecycle import get_lifecycle
from coderoom.services.redis_state import get_redis_state
from coderoom.services.room_state import Principal
from coderoom.schemas.room import RoomCreate, RoomResponse, RoomDetailResponse, ActiveUserResponse
from coderoom.routers.auth import get_current_user
from coderoom.models.user import User
from coderoom.utils.rate_limit import rate_limit
from coderoom.utils.logging_config import room_logger

router = APIRouter(prefix="/api/team", tags=["Team Rooms"])

# Seconds without a heartbeat before a user counts as offline
HEARTBEAT_TIMEOUT = 60


@router.post("/create", response_model=RoomDetailResponse, status_code=status.HTTP_201_CREATED)
@rate_limit(limit=10, window=60, identifier="create_room")
async def create_room(
    request: Request,
    room_data: RoomCreate,
    current_user: Annotated[User, Depends(get_current_user)]
):
    """
    Create a team room - 10 requests / minute.

    Raises:
        InvalidRoomConfigException: capacity, language or time limit out of bounds
        ProblemNotFoundException: unknown problem
    """
    state = await get_lifecycle().create_room(Principal.from_user(current_user), room_data)
    return RoomDetailResponse.from_state(state)


@router.get("/rooms", response_model=list[RoomResponse])
@rate_limit(limit=60, window=60, identifier="list_rooms")
async def list_rooms(
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)],
    language: Optional[str] = Query(default=None),
    problem_id: Optional[UUID] = Query(default=None, alias="problemId")
):
    """Open rooms for the lobby, newest first - 60 requests / minute"""
    rooms = await get_lifecycle().list_active(language, problem_id)
    return [RoomResponse.from_state(state) for state in rooms]


@router.get("/my-rooms", response_model=list[RoomResponse])
@rate_limit(limit=60, window=60, identifier="my_rooms")
async def list_my_rooms(
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)]
):
    """Rooms the user hosts or has joined - 60 requests / minute"""
    rooms = await get_lifecycle().list_for_user(str(current_user.id))
    return [RoomResponse.from_state(state) for state in rooms]


@router.get("/room/{room_id}", response_model=RoomDetailResponse)
@rate_limit(limit=60, window=60, identifier="get_room")
async def get_room(
    request: Request,
    room_id: str,
    current_user: Annotated[User, Depends(get_current_user)]
):
    """
    Room detail - 60 requests / minute.

    Raises:
        RoomNotFoundException: unknown or expired room
    """
    lifecycle = get_lifecycle()
    state = await lifecycle.get_room(room_id)
    return RoomDetailResponse.from_state(state, degraded=lifecycle.coordinator.is_degraded(room_id))


@router.post("/room/{room_id}/join", response_model=RoomDetailResponse)
@rate_limit(limit=30, window=60, identifier="join_room")
async def join_room(
    request: Request,
    room_id: str,
    current_user: Annotated[User, Depends(get_current_user)]
):
    """
    Register as a participant before opening the socket - 30 requests / minute.

    Raises:
        RoomNotFoundException: unknown or expired room
        RoomInactiveException: room is no longer active
        RoomLockedException: room is locked by its host
        RoomFullException: room is at capacity
    """
    state = await get_lifecycle().join(room_id, Principal.from_user(current_user))
    return RoomDetailResponse.from_state(state)


@router.post("/room/{room_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
@rate_limit(limit=30, window=60, identifier="leave_room")
async def leave_room(
    request: Request,
    room_id: str,
    current_user: Annotated[User, Depends(get_current_user)]
):
    """
    Leave a room - 30 requests / minute.

    Raises:
        RoomNotFoundException: unknown or expired room
        NotInRoomException: user never joined the room
    """
    await get_lifecycle().leave(room_id, Principal.from_user(current_user))


@router.delete("/room/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
@rate_limit(limit=20, window=60, identifier="close_room")
async def close_room(
    request: Request,
    room_id: str,
    current_user: Annotated[User, Depends(get_current_user)]
):
    """
    Close the room for everyone (host only) - 20 requests / minute.

    Raises:
        RoomNotFoundException: unknown room
        NotRoomHostException: requester is not the host
    """
    closed = await get_lifecycle().close_room(room_id, Principal.from_user(current_user))
    if not closed:
        room_logger.debug("Room already closed", extra={"room_id": room_id, "user_id": str(current_user.id)})


@router.post("/heartbeat")
@rate_limit(limit=60, window=60, identifier="heartbeat")
async def heartbeat(
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)]
):
    """Mark the user as online - 60 requests / minute"""
    await get_redis_state().update_active_user(
        user_id=str(current_user.id),
        username=current_user.username
    )
    return {"status": "ok"}


@router.get("/active-users", response_model=list[ActiveUserResponse])
@rate_limit(limit=30, window=60, identifier="active_users")
async def get_active_users(
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)],
    room_id: Optional[str] = Query(default=None, alias="roomId")
):
    """
    Online users, or the users connected to one room when ``roomId`` is given.
    - 30 requests / minute
    """
    redis_state = get_redis_state()
    if room_id:
        users = await redis_state.ws_get_room_users(room_id)
    else:
        users = await redis_state.get_all_active_users(timeout=HEARTBEAT_TIMEOUT)
    return [ActiveUserResponse(user_id=u["user_id"], username=u.get("username") or "Unknown") for u in users]
