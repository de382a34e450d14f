"""Turn model: one stored message of a persona/user conversation."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from expert_chat.database import ID_LENGTH, Base, JSONType
from expert_chat.models._mixins import created_at_column, id_column


class TurnRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Turn(Base):
    """A persisted message.

    ``topic_id`` is null while the turn is in working memory and is set once,
    by the compression pass. ``self_reflection`` holds an InnerVoice dump.
    """

    __tablename__ = "turns"
    __table_args__ = (
        Index("ix_turns_pair_created", "persona_id", "user_id", "created_at"),
    )

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
    )
    topic_id: Mapped[str | None] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("topics.id", ondelete="SET NULL"),
        index=True,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Usage
    tokens_in: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tokens_out: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    latency_ms: Mapped[int | None] = mapped_column(Integer)
    model_name: Mapped[str | None] = mapped_column(String(200))
    provider_name: Mapped[str | None] = mapped_column(String(100))

    tool_calls: Mapped[list | None] = mapped_column(JSONType)
    # Structure: [{"call": {...}, "result": {"success", "data", "error"},
    #              "duration_ms": 12, "timestamp": "2026-..."}]

    self_reflection: Mapped[dict | None] = mapped_column(JSONType)

    created_at: Mapped[datetime] = created_at_column()
