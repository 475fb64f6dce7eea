"""
In-memory room state owned by the Room Coordinator.

The coordinator mutates a RoomState only while holding that room's lock;
everything handed out (room-state events, REST snapshots, persistence) is
a deep copy taken under the lock.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class Principal:
    """Authenticated identity attached to every request and socket event."""

    user_id: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        full = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full or self.username

    def user_data(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
        }

    @classmethod
    def from_user(cls, user) -> "Principal":
        return cls(
            user_id=str(user.id),
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            avatar_url=user.avatar_url,
        )


@dataclass
class ParticipantState:
    user_id: str
    username: str
    display_name: str
    avatar_url: Optional[str]
    joined_at: datetime
    is_active: bool = True

    def to_wire(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
            "joinedAt": self.joined_at.isoformat(),
            "isActive": self.is_active,
        }


@dataclass
class RoomState:
    pk: uuid.UUID
    room_id: str
    name: str
    problem_id: str
    host_id: str
    max_participants: int
    language: str
    code: str = ""
    problem_title: str = ""
    is_locked: bool = False
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    editor_locked_by: Optional[str] = None
    editor_locked_at: Optional[datetime] = None
    is_active: bool = True
    # chat entries: {"userId", "username", "message", "timestamp"}
    chat_history: list[dict[str, Any]] = field(default_factory=list)
    # code history entries: {"userId", "code", "language", "timestamp"}
    code_history: list[dict[str, Any]] = field(default_factory=list)
    test_results: Optional[dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    # insertion ordered by join time
    participants: dict[str, ParticipantState] = field(default_factory=dict)

    def is_host(self, user_id: str) -> bool:
        return self.host_id == user_id

    def participant(self, user_id: str) -> Optional[ParticipantState]:
        return self.participants.get(user_id)

    def is_active_participant(self, user_id: str) -> bool:
        p = self.participants.get(user_id)
        return p is not None and p.is_active

    def active_count(self) -> int:
        return sum(1 for p in self.participants.values() if p.is_active)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.utcnow())

    def copy(self) -> "RoomState":
        return copy.deepcopy(self)

    def editor_lock(self) -> dict[str, Any]:
        return {
            "isLocked": self.editor_locked_by is not None,
            "lockedBy": self.editor_locked_by,
            "lockedAt": self.editor_locked_at.isoformat() if self.editor_locked_at else None,
        }
