from uuid import UUID
from datetime import datetime
from sqlalchemy import select, delete, or_
from sqlalchemy.orm import selectinload
from coderoom.database import async_session
from coderoom.models.problem import Problem
from coderoom.models.room import Room, RoomParticipant
from coderoom.services.room_state import RoomState, ParticipantState
from coderoom.utils.logging_config import database_logger


def _uuid(value: str | None) -> UUID | None:
    return UUID(value) if value else None


def _str(value: UUID | None) -> str | None:
    return str(value) if value else None


class RoomStore:
    """
    Durable record of team rooms.

    Each call opens its own session so the store can be used from the
    coordinator's background flush tasks as well as from request handlers.
    """

    def __init__(self, session_factory=async_session):
        self.session_factory = session_factory

    def _room_query(self):
        return select(Room).options(
            selectinload(Room.participants).selectinload(RoomParticipant.user),
            selectinload(Room.problem),
        )

    async def get_problem(self, problem_id: UUID) -> Problem | None:
        async with self.session_factory() as session:
            result = await session.execute(select(Problem).where(Problem.id == problem_id))
            return result.scalar_one_or_none()

    async def insert(self, state: RoomState) -> RoomState:
        """Create the durable record and return it as loaded back."""
        async with self.session_factory() as session:
            room = Room(
                id=state.pk,
                room_id=state.room_id,
                name=state.name,
                problem_id=UUID(state.problem_id),
                host_id=UUID(state.host_id),
                max_participants=state.max_participants,
                language=state.language,
                code=state.code,
                is_locked=state.is_locked,
                locked_by=_uuid(state.locked_by),
                locked_at=state.locked_at,
                is_active=state.is_active,
                chat_history=list(state.chat_history),
                code_history=list(state.code_history),
                expires_at=state.expires_at,
                created_at=state.created_at,
                updated_at=state.updated_at,
            )
            session.add(room)
            for p in state.participants.values():
                session.add(RoomParticipant(
                    room_pk=state.pk,
                    user_id=UUID(p.user_id),
                    joined_at=p.joined_at,
                    is_active=p.is_active,
                ))
            await session.commit()

        database_logger.info("Room inserted", extra={"room_id": state.room_id})
        return await self.load(state.room_id)

    async def load(self, room_id: str) -> RoomState | None:
        async with self.session_factory() as session:
            result = await session.execute(self._room_query().where(Room.room_id == room_id))
            room = result.scalar_one_or_none()
            return self._to_state(room) if room else None

    async def save(self, state: RoomState) -> bool:
        """
        Write a state snapshot over the durable record.

        Returns False when the record no longer exists (closed meanwhile);
        a deleted room is never re-created by a late write.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Room)
                .options(selectinload(Room.participants))
                .where(Room.room_id == state.room_id)
            )
            room = result.scalar_one_or_none()
            if room is None:
                return False

            room.name = state.name
            room.language = state.language
            room.code = state.code
            room.max_participants = state.max_participants
            room.is_locked = state.is_locked
            room.locked_by = _uuid(state.locked_by)
            room.locked_at = state.locked_at
            room.editor_locked_by = _uuid(state.editor_locked_by)
            room.editor_locked_at = state.editor_locked_at
            room.is_active = state.is_active
            # JSON columns are replaced, never mutated in place
            room.chat_history = list(state.chat_history)
            room.code_history = list(state.code_history)
            room.test_results = state.test_results
            room.expires_at = state.expires_at
            room.updated_at = state.updated_at

            rows = {str(p.user_id): p for p in room.participants}
            for user_id, participant in state.participants.items():
                row = rows.get(user_id)
                if row is None:
                    room.participants.append(RoomParticipant(
                        user_id=UUID(user_id),
                        joined_at=participant.joined_at,
                        is_active=participant.is_active,
                    ))
                else:
                    row.is_active = participant.is_active

            await session.commit()
            return True

    async def delete(self, room_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(select(Room.id).where(Room.room_id == room_id))
            pk = result.scalar_one_or_none()
            if pk is None:
                return False
            # Participants first
            await session.execute(delete(RoomParticipant).where(RoomParticipant.room_pk == pk))
            await session.execute(delete(Room).where(Room.id == pk))
            await session.commit()

        database_logger.info("Room deleted", extra={"room_id": room_id})
        return True

    async def list_active(
        self,
        language: str | None = None,
        problem_id: UUID | None = None,
        limit: int = 50,
        now: datetime | None = None,
    ) -> list[RoomState]:
        """Open rooms for the lobby: active, unlocked, not expired, newest first."""
        now = now or datetime.utcnow()
        query = (
            self._room_query()
            .where(
                Room.is_active.is_(True),
                Room.is_locked.is_(False),
                or_(Room.expires_at.is_(None), Room.expires_at > now),
            )
            .order_by(Room.created_at.desc())
            .limit(limit)
        )
        if language:
            query = query.where(Room.language == language)
        if problem_id:
            query = query.where(Room.problem_id == problem_id)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [self._to_state(room) for room in result.scalars().all()]

    async def list_for_user(self, user_id: str) -> list[RoomState]:
        """Active rooms the user hosts or has joined, newest first."""
        uid = UUID(user_id)
        query = (
            self._room_query()
            .where(
                Room.is_active.is_(True),
                or_(
                    Room.host_id == uid,
                    Room.participants.any(RoomParticipant.user_id == uid),
                ),
            )
            .order_by(Room.created_at.desc())
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [self._to_state(room) for room in result.scalars().all()]

    async def list_expired(self, now: datetime | None = None) -> list[str]:
        now = now or datetime.utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Room.room_id).where(Room.expires_at.is_not(None), Room.expires_at <= now)
            )
            return list(result.scalars().all())

    @staticmethod
    def _to_state(room: Room) -> RoomState:
        participants: dict[str, ParticipantState] = {}
        for row in room.participants:
            user = row.user
            participants[str(row.user_id)] = ParticipantState(
                user_id=str(row.user_id),
                username=user.username if user else "unknown",
                display_name=user.display_name if user else "unknown",
                avatar_url=user.avatar_url if user else None,
                joined_at=row.joined_at,
                is_active=row.is_active,
            )

        return RoomState(
            pk=room.id,
            room_id=room.room_id,
            name=room.name,
            problem_id=str(room.problem_id),
            problem_title=room.problem.title if room.problem else "",
            host_id=str(room.host_id),
            max_participants=room.max_participants,
            language=room.language,
            code=room.code or "",
            is_locked=room.is_locked,
            locked_by=_str(room.locked_by),
            locked_at=room.locked_at,
            editor_locked_by=_str(room.editor_locked_by),
            editor_locked_at=room.editor_locked_at,
            is_active=room.is_active,
            chat_history=list(room.chat_history or []),
            code_history=list(room.code_history or []),
            test_results=room.test_results,
            expires_at=room.expires_at,
            created_at=room.created_at,
            updated_at=room.updated_at,
            participants=participants,
        )
