import uuid
from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Text, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from coderoom.database import Base


class Room(Base):
    __tablename__ = "team_rooms"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    # Public identifier shared in links and used on the socket
    room_id: Mapped[str] = mapped_column(String(16), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    problem_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("problems.id"), nullable=False)
    host_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, default=6)
    language: Mapped[str] = mapped_column(String(20), default="javascript")
    code: Mapped[str] = mapped_column(Text, default="")

    # Admission lock (host only)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    locked_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Editor lock (single writer)
    editor_locked_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    editor_locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    chat_history: Mapped[list] = mapped_column(JSON, default=list)
    code_history: Mapped[list] = mapped_column(JSON, default=list)
    test_results: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    host = relationship("User", back_populates="hosted_rooms")
    problem = relationship("Problem")
    participants = relationship(
        "RoomParticipant",
        back_populates="room",
        cascade="all, delete-orphan",
        order_by="RoomParticipant.joined_at",
    )


class RoomParticipant(Base):
    __tablename__ = "team_room_participants"
    __table_args__ = (UniqueConstraint("room_pk", "user_id", name="uq_team_room_participant"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    room_pk: Mapped[uuid.UUID] = mapped_column(ForeignKey("team_rooms.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Relationships
    room = relationship("Room", back_populates="participants")
    user = relationship("User", back_populates="participations")
