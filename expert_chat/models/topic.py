"""Topic model: retrospective label over a run of archived turns."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from expert_chat.database import ID_LENGTH, Base
from expert_chat.models._mixins import created_at_column, id_column, updated_at_column


class TopicStatus(StrEnum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class Topic(Base):
    """A topic for a (persona, user) pair.

    At most one topic per pair is ``active``; it is only a display handle.
    Topics written by compression are created ``archived``.
    """

    __tablename__ = "topics"

    id: Mapped[str] = id_column()
    persona_id: Mapped[str] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("personas.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), default=TopicStatus.ACTIVE, nullable=False)
    turn_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = created_at_column()
    updated_at: Mapped[datetime] = updated_at_column()
