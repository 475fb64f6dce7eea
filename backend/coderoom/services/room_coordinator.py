"""
Room Coordinator: the single writer of every team room.

All mutations of one room run under that room's asyncio.Lock, so they are
applied, broadcast and queued for persistence in one total order. Different
rooms never share a lock and proceed in parallel.

Persistence is write-behind: a mutation marks the room dirty and makes sure
one flush task is running for it. The flush copies the state under the lock
and writes outside of it, retrying with bounded exponential backoff. After
PERSIST_DEGRADED_AFTER failed attempts the room is told its state may not
be durable (``persistence-status``), and told again once a write succeeds.
"""

import asyncio
import weakref
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from coderoom.config import settings
from coderoom.exceptions import (
    AppException,
    RoomNotFoundException,
    RoomInactiveException,
    RoomFullException,
    RoomLockedException,
    NotRoomHostException,
    NotInRoomException,
    EditorLockedException,
    PermissionDeniedException,
    InvalidRoomConfigException,
    InvalidInputException,
)
from coderoom.schemas.events import (
    RoomStateEvent,
    UserJoinedEvent,
    UserLeftEvent,
    CodeUpdateEvent,
    LanguageUpdatedEvent,
    NewMessageEvent,
    TestResultsEvent,
    RoomClosedEvent,
    CursorUpdateEvent,
    UserTypingEvent,
    RoomLockUpdatedEvent,
    EditorLockedEvent,
    EditorUnlockedEvent,
    PersistenceStatusEvent,
)
from coderoom.services.redis_state import RedisStateService
from coderoom.services.relay import RelayTransport
from coderoom.services.room_state import RoomState, ParticipantState, Principal
from coderoom.services.room_store import RoomStore
from coderoom.services.session_registry import SessionRegistry
from coderoom.utils.logging_config import room_logger


class RoomCoordinator:
    def __init__(
        self,
        store: RoomStore,
        registry: SessionRegistry,
        transport: RelayTransport,
        presence: Optional[RedisStateService] = None,
    ):
        self.store = store
        self.registry = registry
        self.transport = transport
        self.presence = presence
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._rooms: dict[str, RoomState] = {}
        self._dirty: set[str] = set()
        self._flushers: dict[str, asyncio.Task] = {}
        self._degraded: set[str] = set()
        self._expiring: dict[str, asyncio.Task] = {}
        # Records last written before this moment belong to an earlier process
        self._started_at = datetime.utcnow()
        transport.on_grace_expired = self._leave_after_grace

    # ==================== Internals ====================

    def _lock(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    async def _load(self, room_id: str) -> RoomState:
        """
        Cached state for ``room_id``; caller holds the room lock.

        An expired room is gone for every caller, cached or not, and is
        closed in the background so its sockets get ``room-closed``.
        """
        state = self._rooms.get(room_id)
        if state is None:
            state = await self.store.load(room_id)
            if state is None:
                raise RoomNotFoundException()
            if not state.is_expired():
                self._rooms[room_id] = state
                if state.updated_at < self._started_at:
                    self._release_stale_seats(state)
        if state.is_expired():
            self._expire_later(room_id)
            raise RoomNotFoundException()
        return state

    def _release_stale_seats(self, state: RoomState) -> None:
        """
        Record written before this process started: nobody is bound to it
        yet, so active participants get the reconnect grace like a drop.
        """
        for user_id, participant in state.participants.items():
            if not participant.is_active:
                continue
            if self.registry.connections_of(state.room_id, user_id):
                continue
            if self.transport.has_pending_leave(state.room_id, user_id):
                continue
            self.transport.schedule_leave(state.room_id, user_id)
        room_logger.info("Stale room seats scheduled for release", extra={"room_id": state.room_id})

    def _expire_later(self, room_id: str) -> None:
        if room_id in self._expiring:
            return
        task = asyncio.create_task(self._expire(room_id))
        self._expiring[room_id] = task
        task.add_done_callback(lambda _task: self._expiring.pop(room_id, None))

    async def _expire(self, room_id: str) -> None:
        try:
            await self.close(room_id, "Room expired")
        except SQLAlchemyError as e:
            room_logger.error("Failed to expire room", extra={"room_id": room_id, "error": str(e)})

    async def _load_member(self, room_id: str, user_id: str) -> RoomState:
        state = await self._load(room_id)
        if not state.is_active_participant(user_id):
            raise NotInRoomException()
        return state

    @staticmethod
    def _check_admission(state: RoomState, user_id: str) -> None:
        if not state.is_active:
            raise RoomInactiveException()
        known = state.participant(user_id) is not None
        if state.is_locked and not (state.is_host(user_id) or known):
            raise RoomLockedException()
        if not state.is_active_participant(user_id) and state.active_count() >= state.max_participants:
            raise RoomFullException()

    @staticmethod
    def _add_or_reactivate(state: RoomState, principal: Principal, active: bool) -> ParticipantState:
        participant = state.participant(principal.user_id)
        if participant is None:
            participant = ParticipantState(
                user_id=principal.user_id,
                username=principal.username,
                display_name=principal.display_name,
                avatar_url=principal.avatar_url,
                joined_at=datetime.utcnow(),
                is_active=active,
            )
            state.participants[principal.user_id] = participant
        else:
            participant.username = principal.username
            participant.display_name = principal.display_name
            participant.avatar_url = principal.avatar_url
            participant.is_active = participant.is_active or active
        return participant

    def _touch(self, state: RoomState) -> None:
        state.updated_at = datetime.utcnow()
        self._mark_dirty(state.room_id)

    # ==================== Membership ====================

    async def join(self, room_id: str, principal: Principal, conn_id: str) -> RoomState:
        """
        Bind a socket to the room and activate its user.

        The joining connection gets ``room-state``; every other connection
        of the room gets ``user-joined``.

        Raises:
            RoomNotFoundException, RoomInactiveException,
            RoomLockedException, RoomFullException
        """
        user_id = principal.user_id
        async with self._lock(room_id):
            state = await self._load(room_id)
            self._check_admission(state, user_id)

            self.transport.cancel_pending_leave(room_id, user_id)
            moved_from = self.registry.bind(conn_id, room_id, user_id)
            self._add_or_reactivate(state, principal, active=True)
            self._touch(state)

            self.transport.deliver_to(
                conn_id, RoomStateEvent.from_state(state, settings.CHAT_REPLAY_LIMIT).to_wire()
            )
            self.transport.deliver(
                room_id,
                UserJoinedEvent(room_id=room_id, user_id=user_id, user_data=principal.user_data()).to_wire(),
                exclude_conn_id=conn_id,
            )
            snapshot = state.copy()

        room_logger.info("User joined room", extra={"room_id": room_id, "user_id": user_id, "conn_id": conn_id})
        if moved_from is not None:
            self.connection_dropped(moved_from.room_id, moved_from.user_id)
        if self.presence is not None:
            await self.presence.ws_add_to_room(room_id, user_id, principal.username)
        return snapshot

    async def admit(self, room_id: str, principal: Principal) -> RoomState:
        """
        HTTP pre-authorization: same admission rules as ``join``, records the
        user as a participant without marking them connected.
        """
        async with self._lock(room_id):
            state = await self._load(room_id)
            self._check_admission(state, principal.user_id)
            if state.participant(principal.user_id) is None:
                self._add_or_reactivate(state, principal, active=False)
                self._touch(state)
            snapshot = state.copy()

        room_logger.info("User admitted to room", extra={"room_id": room_id, "user_id": principal.user_id})
        return snapshot

    async def leave(self, room_id: str, user_id: str, conn_id: Optional[str] = None) -> bool:
        """
        Detach ``conn_id`` (when given) and, once the user has no other live
        connection in the room, mark them inactive and emit ``user-left``.
        Host status never moves to another participant.

        Returns True when the participant was deactivated.
        """
        async with self._lock(room_id):
            if conn_id is not None:
                binding = self.registry.binding_of(conn_id)
                if binding is not None and binding.room_id == room_id:
                    self.registry.unbind(conn_id)
            self.transport.cancel_pending_leave(room_id, user_id)

            state = await self._load(room_id)
            if self.registry.connections_of(room_id, user_id):
                return False
            participant = state.participant(user_id)
            if participant is None or not participant.is_active:
                return False

            participant.is_active = False
            if state.editor_locked_by == user_id:
                state.editor_locked_by = None
                state.editor_locked_at = None
                self.transport.deliver(
                    room_id, EditorUnlockedEvent(room_id=room_id, released_by=user_id).to_wire()
                )
            self.transport.deliver(room_id, UserLeftEvent(room_id=room_id, user_id=user_id).to_wire())
            self._touch(state)

        room_logger.info("User left room", extra={"room_id": room_id, "user_id": user_id})
        if self.presence is not None:
            await self.presence.ws_remove_from_room(room_id, user_id)
        return True

    async def leave_everywhere(self, room_id: str, user_id: str) -> bool:
        """HTTP leave: drop every connection of the user in the room, then leave."""
        async with self._lock(room_id):
            state = await self._load(room_id)
            if state.participant(user_id) is None:
                raise NotInRoomException()
            for conn_id in self.registry.connections_of(room_id, user_id):
                self.registry.unbind(conn_id)
        return await self.leave(room_id, user_id)

    async def _leave_after_grace(self, room_id: str, user_id: str) -> None:
        try:
            await self.leave(room_id, user_id)
        except AppException as e:
            # Room closed or expired during the grace period
            room_logger.debug("Grace leave skipped", extra={"room_id": room_id, "user_id": user_id, "reason": e.message})

    def connection_dropped(self, room_id: str, user_id: str) -> None:
        """Called by the socket handler after a drop without ``leave-room``."""
        if not self.registry.connections_of(room_id, user_id):
            self.transport.schedule_leave(room_id, user_id)

    # ==================== Editing ====================

    async def change_code(
        self,
        room_id: str,
        principal: Principal,
        conn_id: Optional[str],
        code: str,
        cursor_position: Any = None,
    ) -> None:
        """Last writer wins; arrival order at the room lock is the order."""
        if len(code) > settings.MAX_CODE_LENGTH:
            raise InvalidInputException("code", f"at most {settings.MAX_CODE_LENGTH} characters")

        user_id = principal.user_id
        async with self._lock(room_id):
            state = await self._load_member(room_id, user_id)
            if state.editor_locked_by is not None and state.editor_locked_by != user_id:
                raise EditorLockedException()

            now = datetime.utcnow()
            state.code = code
            state.code_history = (state.code_history + [{
                "userId": user_id,
                "code": code,
                "language": state.language,
                "timestamp": now.isoformat(),
            }])[-settings.CODE_HISTORY_LIMIT:]
            self.transport.deliver(
                room_id,
                CodeUpdateEvent(
                    room_id=room_id,
                    code=code,
                    user_id=user_id,
                    cursor_position=cursor_position,
                    timestamp=now,
                ).to_wire(),
                exclude_conn_id=conn_id,
            )
            self._touch(state)

    async def change_language(self, room_id: str, principal: Principal, language: str) -> None:
        async with self._lock(room_id):
            state = await self._load(room_id)
            if not state.is_host(principal.user_id):
                raise NotRoomHostException("Only the host can change the language")
            if language not in settings.SUPPORTED_LANGUAGES:
                raise InvalidRoomConfigException(
                    f"Unsupported language: {language}",
                    {"supported": settings.SUPPORTED_LANGUAGES},
                )
            state.language = language
            self.transport.deliver(
                room_id,
                LanguageUpdatedEvent(room_id=room_id, language=language, user_id=principal.user_id).to_wire(),
            )
            self._touch(state)

        room_logger.info("Room language changed", extra={"room_id": room_id, "language": language})

    # ==================== Chat & results ====================

    async def send_chat_message(self, room_id: str, principal: Principal, text: str) -> dict:
        text = (text or "").strip()
        if not text:
            raise InvalidInputException("message", "must not be empty")
        if len(text) > settings.MAX_CHAT_MESSAGE_LENGTH:
            raise InvalidInputException("message", f"at most {settings.MAX_CHAT_MESSAGE_LENGTH} characters")

        async with self._lock(room_id):
            state = await self._load_member(room_id, principal.user_id)
            entry = {
                "userId": principal.user_id,
                "username": principal.display_name,
                "message": text,
                "timestamp": datetime.utcnow().isoformat(),
            }
            state.chat_history = (state.chat_history + [entry])[-settings.CHAT_HISTORY_LIMIT:]
            self.transport.deliver(
                room_id,
                NewMessageEvent(
                    room_id=room_id,
                    user_id=entry["userId"],
                    username=entry["username"],
                    message=entry["message"],
                    timestamp=entry["timestamp"],
                ).to_wire(),
            )
            self._touch(state)
        return entry

    async def publish_run_result(self, room_id: str, principal: Principal, results: Any) -> None:
        async with self._lock(room_id):
            state = await self._load_member(room_id, principal.user_id)
            now = datetime.utcnow()
            state.test_results = {
                "lastRun": now.isoformat(),
                "results": results,
                "userId": principal.user_id,
            }
            self.transport.deliver(
                room_id,
                TestResultsEvent(room_id=room_id, results=results, user_id=principal.user_id, timestamp=now).to_wire(),
            )
            self._touch(state)

    async def relay_presence(
        self,
        room_id: str,
        principal: Principal,
        conn_id: Optional[str],
        kind: str,
        payload: dict,
    ) -> None:
        """Cursor and typing hints; relayed to the others, never stored."""
        async with self._lock(room_id):
            await self._load_member(room_id, principal.user_id)
            if kind == "cursor":
                event = CursorUpdateEvent(
                    room_id=room_id,
                    user_id=principal.user_id,
                    position=payload.get("position"),
                    selection=payload.get("selection"),
                )
            elif kind == "typing":
                event = UserTypingEvent(
                    room_id=room_id,
                    user_id=principal.user_id,
                    username=principal.display_name,
                    is_typing=bool(payload.get("is_typing")),
                )
            else:
                raise ValueError(f"unknown presence kind: {kind}")
            self.transport.deliver(room_id, event.to_wire(), exclude_conn_id=conn_id)

    # ==================== Locks ====================

    async def set_room_lock(self, room_id: str, principal: Principal, locked: bool) -> None:
        """Host only: stop (or allow again) new users from joining."""
        async with self._lock(room_id):
            state = await self._load(room_id)
            if not state.is_host(principal.user_id):
                raise NotRoomHostException("Only the host can lock the room")
            state.is_locked = locked
            state.locked_by = principal.user_id if locked else None
            state.locked_at = datetime.utcnow() if locked else None
            self.transport.deliver(
                room_id,
                RoomLockUpdatedEvent(
                    room_id=room_id,
                    is_locked=state.is_locked,
                    locked_by=state.locked_by,
                    locked_at=state.locked_at,
                ).to_wire(),
            )
            self._touch(state)

    async def acquire_editor_lock(self, room_id: str, principal: Principal) -> None:
        user_id = principal.user_id
        async with self._lock(room_id):
            state = await self._load_member(room_id, user_id)
            if state.editor_locked_by == user_id:
                return
            if state.editor_locked_by is not None:
                raise EditorLockedException()
            state.editor_locked_by = user_id
            state.editor_locked_at = datetime.utcnow()
            self.transport.deliver(
                room_id,
                EditorLockedEvent(room_id=room_id, locked_by=user_id, locked_at=state.editor_locked_at).to_wire(),
            )
            self._touch(state)

    async def release_editor_lock(self, room_id: str, principal: Principal) -> None:
        """The lock owner or the host may release the editor."""
        user_id = principal.user_id
        async with self._lock(room_id):
            state = await self._load(room_id)
            if state.editor_locked_by is None:
                return
            if state.editor_locked_by != user_id and not state.is_host(user_id):
                raise PermissionDeniedException("Only the lock owner or the host can unlock the editor")
            state.editor_locked_by = None
            state.editor_locked_at = None
            self.transport.deliver(
                room_id, EditorUnlockedEvent(room_id=room_id, released_by=user_id).to_wire()
            )
            self._touch(state)

    # ==================== Snapshots & closing ====================

    async def snapshot(self, room_id: str) -> RoomState:
        async with self._lock(room_id):
            state = await self._load(room_id)
            snapshot = state.copy()
        self._maybe_evict(room_id)
        return snapshot

    async def close(self, room_id: str, reason: str = "Room closed by host") -> bool:
        """
        Delete the durable record, tell every bound connection
        ``room-closed`` and evict them. Returns False if the record was
        already gone.
        """
        async with self._lock(room_id):
            flusher = self._flushers.pop(room_id, None)
            if flusher is not None and not flusher.done():
                flusher.cancel()
                # Let an in-flight write unwind before the record is deleted
                await asyncio.gather(flusher, return_exceptions=True)
            self._dirty.discard(room_id)
            self._degraded.discard(room_id)
            deleted = await self.store.delete(room_id)
            self._rooms.pop(room_id, None)
            evicted = self.transport.evict(room_id, RoomClosedEvent(room_id=room_id, reason=reason).to_wire())

        room_logger.info(
            "Room closed",
            extra={"room_id": room_id, "reason": reason, "evicted": len(evicted), "deleted": deleted},
        )
        if self.presence is not None:
            await self.presence.ws_clear_room(room_id)
        return deleted

    # ==================== Write-behind persistence ====================

    def _mark_dirty(self, room_id: str) -> None:
        self._dirty.add(room_id)
        task = self._flushers.get(room_id)
        if task is None or task.done():
            self._flushers[room_id] = asyncio.create_task(self._flush(room_id))

    async def _flush(self, room_id: str) -> None:
        attempt = 0
        try:
            while True:
                async with self._lock(room_id):
                    state = self._rooms.get(room_id)
                    if room_id not in self._dirty or state is None:
                        self._dirty.discard(room_id)
                        return
                    snapshot = state.copy()
                    self._dirty.discard(room_id)

                try:
                    saved = await self.store.save(snapshot)
                except (SQLAlchemyError, OSError) as e:
                    attempt += 1
                    self._dirty.add(room_id)
                    room_logger.warning(
                        "Room write failed",
                        extra={"room_id": room_id, "attempt": attempt, "error": str(e)},
                    )
                    if attempt >= settings.PERSIST_DEGRADED_AFTER and room_id not in self._degraded:
                        self._degraded.add(room_id)
                        self.transport.deliver(
                            room_id, PersistenceStatusEvent(room_id=room_id, degraded=True).to_wire()
                        )
                    if attempt > settings.PERSIST_MAX_RETRIES:
                        # Left dirty: retried by the next mutation or retry_dirty()
                        room_logger.error("Giving up on room write", extra={"room_id": room_id, "attempts": attempt})
                        return
                    delay = min(
                        settings.PERSIST_RETRY_BASE_DELAY * (2 ** (attempt - 1)),
                        settings.PERSIST_RETRY_MAX_DELAY,
                    )
                    await asyncio.sleep(delay)
                    continue

                attempt = 0
                if room_id in self._degraded:
                    self._degraded.discard(room_id)
                    self.transport.deliver(
                        room_id, PersistenceStatusEvent(room_id=room_id, degraded=False).to_wire()
                    )
                    room_logger.info("Room persistence recovered", extra={"room_id": room_id})
                if not saved:
                    room_logger.debug("Skipped write for deleted room", extra={"room_id": room_id})
                    self._dirty.discard(room_id)
                    return
        finally:
            if self._flushers.get(room_id) is asyncio.current_task():
                del self._flushers[room_id]
            self._maybe_evict(room_id)

    def _maybe_evict(self, room_id: str) -> None:
        """Drop cached state of rooms nobody is connected to once it is durable."""
        lock = self._locks.get(room_id)
        if lock is not None and lock.locked():
            return
        if room_id in self._dirty or room_id in self._flushers:
            return
        if self.registry.members_of(room_id):
            return
        self._rooms.pop(room_id, None)

    def cached_rooms(self) -> list[RoomState]:
        """Copies of every room state currently held in memory."""
        return [state.copy() for state in self._rooms.values()]

    def is_degraded(self, room_id: str) -> bool:
        return room_id in self._degraded

    def retry_dirty(self) -> list[str]:
        """Restart writes for rooms whose flush gave up."""
        pending = [room_id for room_id in self._dirty if room_id not in self._flushers]
        for room_id in pending:
            self._mark_dirty(room_id)
        if pending:
            room_logger.info("Retrying room writes", extra={"rooms": len(pending)})
        return pending

    async def flush_all(self) -> None:
        """Write every dirty room and wait for pending writes (shutdown, tests)."""
        self.retry_dirty()
        while self._flushers:
            tasks = [t for t in self._flushers.values() if not t.done()]
            if not tasks:
                break
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        if self._expiring:
            await asyncio.gather(*self._expiring.values(), return_exceptions=True)
        await self.flush_all()
        for task in self._flushers.values():
            task.cancel()
        self._flushers.clear()
        if self._dirty:
            room_logger.error("Room writes lost on shutdown", extra={"rooms": sorted(self._dirty)})
