"""
Room Lifecycle Manager: creating, listing, closing and expiring team rooms.

Wires the Room Store, Session Registry, Relay Transport and Room
Coordinator together; the application uses the singleton returned by
get_lifecycle().
"""

import asyncio
import secrets
import string
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from coderoom.config import settings
from coderoom.exceptions import (
    DatabaseException,
    InvalidRoomConfigException,
    NotRoomHostException,
    ProblemNotFoundException,
    RoomNotFoundException,
)
from coderoom.schemas.room import RoomCreate
from coderoom.services.redis_state import get_redis_state
from coderoom.services.relay import RelayTransport
from coderoom.services.room_coordinator import RoomCoordinator
from coderoom.services.room_state import RoomState, ParticipantState, Principal
from coderoom.services.room_store import RoomStore
from coderoom.services.session_registry import SessionRegistry
from coderoom.utils.logging_config import room_logger

ROOM_ID_ALPHABET = string.ascii_letters + string.digits + "_-"
ROOM_ID_LENGTH = 10
ROOM_ID_ATTEMPTS = 5
TOMBSTONE_LIMIT = 1024


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    return "".join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(length))


class RoomLifecycleManager:
    def __init__(self, store: RoomStore, coordinator: RoomCoordinator):
        self.store = store
        self.coordinator = coordinator
        # room_id -> host user_id of rooms closed by their host
        self._closed: "OrderedDict[str, str]" = OrderedDict()
        self._sweeper_task: Optional[asyncio.Task] = None

    # ==================== Creation ====================

    @staticmethod
    def _validate(data: RoomCreate) -> None:
        if not settings.MIN_PARTICIPANTS <= data.max_participants <= settings.MAX_PARTICIPANTS:
            raise InvalidRoomConfigException(
                f"maxParticipants must be between {settings.MIN_PARTICIPANTS} and {settings.MAX_PARTICIPANTS}",
                {"field": "max_participants"},
            )
        if data.language not in settings.SUPPORTED_LANGUAGES:
            raise InvalidRoomConfigException(
                f"Unsupported language: {data.language}",
                {"field": "language", "supported": settings.SUPPORTED_LANGUAGES},
            )
        if data.time_limit is not None and not 1 <= data.time_limit <= settings.MAX_TIME_LIMIT_MINUTES:
            raise InvalidRoomConfigException(
                f"timeLimit must be between 1 and {settings.MAX_TIME_LIMIT_MINUTES} minutes",
                {"field": "time_limit"},
            )

    async def create_room(self, owner: Principal, data: RoomCreate) -> RoomState:
        """
        Create a room hosted by ``owner``, who is also its first participant.

        Raises:
            InvalidRoomConfigException: capacity, language or time limit out of bounds
            ProblemNotFoundException: unknown problem
        """
        self._validate(data)
        problem = await self.store.get_problem(data.problem_id)
        if problem is None:
            raise ProblemNotFoundException()

        now = datetime.utcnow()
        name = (data.room_name or "").strip() or f"{problem.title} - Team Session"

        for attempt in range(1, ROOM_ID_ATTEMPTS + 1):
            state = RoomState(
                pk=uuid.uuid4(),
                room_id=generate_room_id(),
                name=name[:100],
                problem_id=str(problem.id),
                problem_title=problem.title,
                host_id=owner.user_id,
                max_participants=data.max_participants,
                language=data.language,
                code=problem.starter_code(data.language),
                expires_at=now + timedelta(minutes=data.time_limit) if data.time_limit else None,
                created_at=now,
                updated_at=now,
                participants={
                    owner.user_id: ParticipantState(
                        user_id=owner.user_id,
                        username=owner.username,
                        display_name=owner.display_name,
                        avatar_url=owner.avatar_url,
                        joined_at=now,
                        is_active=True,
                    )
                },
            )
            try:
                created = await self.store.insert(state)
            except IntegrityError:
                room_logger.warning("Room id collision, retrying", extra={"attempt": attempt})
                continue

            room_logger.info(
                "Room created",
                extra={
                    "room_id": created.room_id,
                    "host_id": owner.user_id,
                    "problem_id": created.problem_id,
                    "max_participants": created.max_participants,
                    "language": created.language,
                },
            )
            return created

        raise DatabaseException("Could not allocate a room id")

    # ==================== Queries ====================

    def _merge_live(self, stored: list[RoomState], include) -> list[RoomState]:
        """
        Overlay in-memory state on stored records; writes are persisted
        behind, so the cache may be newer than the store.
        """
        live = {state.room_id: state for state in self.coordinator.cached_rooms()}
        merged = {state.room_id: live.get(state.room_id, state) for state in stored}
        for room_id, state in live.items():
            merged.setdefault(room_id, state)
        rooms = [state for state in merged.values() if include(state)]
        rooms.sort(key=lambda state: state.created_at, reverse=True)
        return rooms

    async def list_active(self, language: str | None = None, problem_id: uuid.UUID | None = None) -> list[RoomState]:
        """Open rooms: active, unlocked and not expired; newest first."""
        stored = await self.store.list_active(language, problem_id, settings.ACTIVE_ROOMS_LIMIT)

        def include(state: RoomState) -> bool:
            return (
                state.is_active
                and not state.is_locked
                and not state.is_expired()
                and (language is None or state.language == language)
                and (problem_id is None or state.problem_id == str(problem_id))
            )

        return self._merge_live(stored, include)[:settings.ACTIVE_ROOMS_LIMIT]

    async def list_for_user(self, user_id: str) -> list[RoomState]:
        stored = await self.store.list_for_user(user_id)
        return self._merge_live(
            stored,
            lambda state: (
                state.is_active
                and not state.is_expired()
                and (state.is_host(user_id) or state.participant(user_id) is not None)
            ),
        )

    async def get_room(self, room_id: str) -> RoomState:
        """Live snapshot, including changes not yet written to the store."""
        return await self.coordinator.snapshot(room_id)

    # ==================== Membership over HTTP ====================

    async def join(self, room_id: str, principal: Principal) -> RoomState:
        return await self.coordinator.admit(room_id, principal)

    async def leave(self, room_id: str, principal: Principal) -> bool:
        return await self.coordinator.leave_everywhere(room_id, principal.user_id)

    # ==================== Closing ====================

    def _remember_closed(self, room_id: str, host_id: str) -> None:
        self._closed[room_id] = host_id
        self._closed.move_to_end(room_id)
        while len(self._closed) > TOMBSTONE_LIMIT:
            self._closed.popitem(last=False)

    async def close_room(self, room_id: str, requester: Principal) -> bool:
        """
        Host closes the room for everyone.

        Closing a room the same host already closed is a no-op (returns
        False).

        Raises:
            RoomNotFoundException: unknown room
            NotRoomHostException: requester is not the host
        """
        if self._closed.get(room_id) == requester.user_id:
            return False
        try:
            state = await self.coordinator.snapshot(room_id)
        except RoomNotFoundException:
            # Lost a race with a concurrent close by the same host
            if self._closed.get(room_id) == requester.user_id:
                return False
            raise
        if not state.is_host(requester.user_id):
            raise NotRoomHostException("Only the host can close the room")

        await self.coordinator.close(room_id, "Room closed by host")
        self._remember_closed(room_id, state.host_id)
        return True

    async def expire_sweep(self, now: datetime | None = None) -> list[str]:
        """Close every room whose time limit has passed."""
        expired = await self.store.list_expired(now)
        closed = []
        for room_id in expired:
            try:
                await self.coordinator.close(room_id, "Room expired")
                closed.append(room_id)
            except SQLAlchemyError as e:
                room_logger.error("Failed to expire room", extra={"room_id": room_id, "error": str(e)})
        if closed:
            room_logger.info("Expired rooms closed", extra={"count": len(closed)})
        return closed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(settings.EXPIRE_SWEEP_INTERVAL_SECONDS)
            self.coordinator.retry_dirty()
            try:
                await self.expire_sweep()
            except (SQLAlchemyError, OSError) as e:
                room_logger.error("Error in expire sweep", extra={"error": str(e)})

    def start(self) -> None:
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(self._sweep_loop())
        self.coordinator.transport.start()

    async def stop(self) -> None:
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None
        await self.coordinator.transport.stop()
        await self.coordinator.shutdown()


# Global singleton instance
_lifecycle: Optional[RoomLifecycleManager] = None


def get_lifecycle() -> RoomLifecycleManager:
    """Get global lifecycle manager (and the coordinator stack behind it)."""
    global _lifecycle
    if _lifecycle is None:
        registry = SessionRegistry()
        transport = RelayTransport(registry)
        store = RoomStore()
        coordinator = RoomCoordinator(store, registry, transport, presence=get_redis_state())
        _lifecycle = RoomLifecycleManager(store, coordinator)
    return _lifecycle


async def close_lifecycle():
    """Stop background tasks and flush pending room writes."""
    global _lifecycle
    if _lifecycle:
        await _lifecycle.stop()
        _lifecycle = None
