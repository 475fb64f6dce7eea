from enum import Enum
from uuid import UUID
from datetime import datetime
from typing import Any
from pydantic import BaseModel, Field

from coderoom.services.room_state import RoomState


class Language(str, Enum):
    JAVASCRIPT = "javascript"
    JAVA = "java"
    CPP = "cpp"


class RoomCreate(BaseModel):
    problem_id: UUID
    room_name: str | None = Field(default=None, max_length=100)
    # Bounds are enforced by the lifecycle manager so the error is a room config error
    max_participants: int = 6
    language: str = Language.JAVASCRIPT.value
    # Minutes until the room expires; no limit when omitted
    time_limit: int | None = None


class ParticipantResponse(BaseModel):
    user_id: str
    username: str
    display_name: str
    avatar_url: str | None = None
    joined_at: datetime
    is_active: bool


class EditorLockResponse(BaseModel):
    is_locked: bool
    locked_by: str | None = None
    locked_at: datetime | None = None


class RoomResponse(BaseModel):
    room_id: str
    name: str
    problem_id: str
    problem_title: str = ""
    host_id: str
    max_participants: int
    language: str
    is_locked: bool
    is_active: bool
    participant_count: int = 0
    expires_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_state(cls, state: RoomState) -> "RoomResponse":
        return cls(
            room_id=state.room_id,
            name=state.name,
            problem_id=state.problem_id,
            problem_title=state.problem_title,
            host_id=state.host_id,
            max_participants=state.max_participants,
            language=state.language,
            is_locked=state.is_locked,
            is_active=state.is_active,
            participant_count=state.active_count(),
            expires_at=state.expires_at,
            created_at=state.created_at,
        )


class RoomDetailResponse(RoomResponse):
    code: str
    participants: list[ParticipantResponse] = []
    editor_lock: EditorLockResponse
    test_results: dict[str, Any] | None = None
    # Latest edits are not yet durable
    persistence_degraded: bool = False

    @classmethod
    def from_state(cls, state: RoomState, degraded: bool = False) -> "RoomDetailResponse":
        base = RoomResponse.from_state(state).model_dump()
        return cls(
            **base,
            code=state.code,
            participants=[
                ParticipantResponse(
                    user_id=p.user_id,
                    username=p.username,
                    display_name=p.display_name,
                    avatar_url=p.avatar_url,
                    joined_at=p.joined_at,
                    is_active=p.is_active,
                )
                for p in state.participants.values()
            ],
            editor_lock=EditorLockResponse(
                is_locked=state.editor_locked_by is not None,
                locked_by=state.editor_locked_by,
                locked_at=state.editor_locked_at,
            ),
            test_results=state.test_results,
            persistence_degraded=degraded,
        )


class ActiveUserResponse(BaseModel):
    user_id: str
    username: str
