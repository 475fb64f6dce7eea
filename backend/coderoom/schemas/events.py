"""
Wire vocabulary of the team-coding socket.

Every frame is a flat JSON object with a ``type`` tag and camelCase keys.
Client frames are parsed into a closed tagged union; anything outside it
is rejected before it reaches the coordinator. Client supplied identity
fields (``userData``, ``username``) are accepted for compatibility but never
trusted: the authenticated principal is used instead.
"""

import json
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from coderoom.exceptions import WebSocketInvalidMessageException
from coderoom.services.room_state import RoomState


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==================== Client -> server ====================

class ClientEvent(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RoomScopedEvent(ClientEvent):
    room_id: str = Field(..., min_length=1, max_length=32)


class AuthEvent(ClientEvent):
    type: Literal["auth"]
    token: str = Field(..., min_length=1)


class JoinRoomEvent(RoomScopedEvent):
    type: Literal["join-room"]
    user_data: Optional[dict[str, Any]] = None


class LeaveRoomEvent(RoomScopedEvent):
    type: Literal["leave-room"]


class CodeChangeEvent(RoomScopedEvent):
    type: Literal["code-change"]
    code: str
    cursor_position: Optional[Any] = None


class LanguageChangeEvent(RoomScopedEvent):
    type: Literal["language-change"]
    language: str


class SendMessageEvent(RoomScopedEvent):
    type: Literal["send-message"]
    message: str
    username: Optional[str] = None


class CodeRunResultEvent(RoomScopedEvent):
    type: Literal["code-run-result"]
    results: Any = None


class CursorMoveEvent(RoomScopedEvent):
    type: Literal["cursor-move"]
    position: Any = None
    selection: Any = None


class TypingEvent(RoomScopedEvent):
    type: Literal["typing"]
    is_typing: bool = False


class LockRoomEvent(RoomScopedEvent):
    type: Literal["lock-room"]
    locked: bool


class EditorLockEvent(RoomScopedEvent):
    type: Literal["editor-lock"]


class EditorUnlockEvent(RoomScopedEvent):
    type: Literal["editor-unlock"]


class PingEvent(ClientEvent):
    type: Literal["ping"]


class PongEvent(ClientEvent):
    type: Literal["pong"]


AnyClientEvent = Annotated[
    Union[
        AuthEvent,
        JoinRoomEvent,
        LeaveRoomEvent,
        CodeChangeEvent,
        LanguageChangeEvent,
        SendMessageEvent,
        CodeRunResultEvent,
        CursorMoveEvent,
        TypingEvent,
        LockRoomEvent,
        EditorLockEvent,
        EditorUnlockEvent,
        PingEvent,
        PongEvent,
    ],
    Field(discriminator="type"),
]

_client_event_adapter: TypeAdapter[AnyClientEvent] = TypeAdapter(AnyClientEvent)


def parse_client_event(raw: Union[str, bytes, dict]) -> ClientEvent:
    """
    Parse one inbound frame.

    Raises:
        WebSocketInvalidMessageException: malformed JSON, unknown ``type``
            or missing/invalid fields
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise WebSocketInvalidMessageException("Malformed JSON")
    if not isinstance(raw, dict):
        raise WebSocketInvalidMessageException("Frame must be a JSON object")
    if "type" not in raw:
        raise WebSocketInvalidMessageException("Missing event type")

    try:
        return _client_event_adapter.validate_python(raw)
    except ValidationError as e:
        first = e.errors()[0]
        if first["type"] == "union_tag_invalid":
            raise WebSocketInvalidMessageException(f"Unknown event type: {raw.get('type')}")
        field = ".".join(str(loc) for loc in first["loc"][1:]) or "frame"
        raise WebSocketInvalidMessageException(f"{field}: {first['msg']}")


# ==================== Server -> client ====================

class ServerEvent(WireModel):
    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def _now() -> datetime:
    return datetime.utcnow()


class RoomStateEvent(ServerEvent):
    type: Literal["room-state"] = "room-state"
    room_id: str
    name: str
    problem_id: str
    host_id: str
    code: str
    language: str
    max_participants: int
    is_locked: bool
    participants: list[dict[str, Any]]
    chat_history: list[dict[str, Any]]
    editor_lock: dict[str, Any]
    test_results: Optional[dict[str, Any]] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: RoomState, replay_limit: int) -> "RoomStateEvent":
        return cls(
            room_id=state.room_id,
            name=state.name,
            problem_id=state.problem_id,
            host_id=state.host_id,
            code=state.code,
            language=state.language,
            max_participants=state.max_participants,
            is_locked=state.is_locked,
            participants=[p.to_wire() for p in state.participants.values()],
            chat_history=state.chat_history[-replay_limit:] if replay_limit else [],
            editor_lock=state.editor_lock(),
            test_results=state.test_results,
            expires_at=state.expires_at,
        )


class UserJoinedEvent(ServerEvent):
    type: Literal["user-joined"] = "user-joined"
    room_id: str
    user_id: str
    user_data: dict[str, Any]
    timestamp: datetime = Field(default_factory=_now)


class UserLeftEvent(ServerEvent):
    type: Literal["user-left"] = "user-left"
    room_id: str
    user_id: str
    timestamp: datetime = Field(default_factory=_now)


class CodeUpdateEvent(ServerEvent):
    type: Literal["code-update"] = "code-update"
    room_id: str
    code: str
    user_id: str
    cursor_position: Any = None
    timestamp: datetime = Field(default_factory=_now)


class LanguageUpdatedEvent(ServerEvent):
    type: Literal["language-updated"] = "language-updated"
    room_id: str
    language: str
    user_id: str
    timestamp: datetime = Field(default_factory=_now)


class NewMessageEvent(ServerEvent):
    type: Literal["new-message"] = "new-message"
    room_id: str
    user_id: str
    username: str
    message: str
    timestamp: str


class TestResultsEvent(ServerEvent):
    type: Literal["test-results"] = "test-results"
    room_id: str
    results: Any = None
    user_id: str
    timestamp: datetime = Field(default_factory=_now)


class RoomClosedEvent(ServerEvent):
    type: Literal["room-closed"] = "room-closed"
    room_id: str
    reason: str
    timestamp: datetime = Field(default_factory=_now)


class CursorUpdateEvent(ServerEvent):
    type: Literal["cursor-update"] = "cursor-update"
    room_id: str
    user_id: str
    position: Any = None
    selection: Any = None
    timestamp: datetime = Field(default_factory=_now)


class UserTypingEvent(ServerEvent):
    type: Literal["user-typing"] = "user-typing"
    room_id: str
    user_id: str
    username: str
    is_typing: bool
    timestamp: datetime = Field(default_factory=_now)


class RoomLockUpdatedEvent(ServerEvent):
    type: Literal["room-lock-updated"] = "room-lock-updated"
    room_id: str
    is_locked: bool
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None


class EditorLockedEvent(ServerEvent):
    type: Literal["editor-locked"] = "editor-locked"
    room_id: str
    locked_by: str
    locked_at: datetime


class EditorUnlockedEvent(ServerEvent):
    type: Literal["editor-unlocked"] = "editor-unlocked"
    room_id: str
    released_by: str
    timestamp: datetime = Field(default_factory=_now)


class PersistenceStatusEvent(ServerEvent):
    type: Literal["persistence-status"] = "persistence-status"
    room_id: str
    degraded: bool
    timestamp: datetime = Field(default_factory=_now)


class RateLimitExceededEvent(ServerEvent):
    type: Literal["rate-limit-exceeded"] = "rate-limit-exceeded"
    event: str
    message: str


class ServerPingEvent(ServerEvent):
    type: Literal["ping"] = "ping"
    timestamp: datetime = Field(default_factory=_now)


class ServerPongEvent(ServerEvent):
    type: Literal["pong"] = "pong"
    timestamp: datetime = Field(default_factory=_now)
