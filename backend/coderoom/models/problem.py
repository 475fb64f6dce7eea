import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from coderoom.database import Base


class Problem(Base):
    """Read-only view of the problem catalog; rooms are seeded from ``start_code``."""

    __tablename__ = "problems"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    difficulty: Mapped[str] = mapped_column(String(20), default="easy")
    tags: Mapped[list] = mapped_column(JSON, default=list)
    # {"javascript": "...", "java": "...", "cpp": "..."}
    start_code: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def starter_code(self, language: str) -> str:
        return (self.start_code or {}).get(language) or ""
