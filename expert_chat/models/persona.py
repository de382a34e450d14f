"""Persona model: the configured expert character and its model bindings."""

from datetime import datetime

from sqlalchemy import Boolean, Float, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from expert_chat.database import ID_LENGTH, Base, JSONType
from expert_chat.models._mixins import created_at_column, id_column, updated_at_column


class Persona(Base):
    """An expert persona.

    Soul fields (core_values, behavioral_guidelines, taboos) are stored as JSON
    lists; legacy rows may hold a newline-separated string instead.
    """

    __tablename__ = "personas"

    id: Mapped[str] = id_column()
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    introduction: Mapped[str | None] = mapped_column(Text)
    prompt_template: Mapped[str | None] = mapped_column(Text)

    # Soul
    speaking_style: Mapped[str | None] = mapped_column(Text)
    core_values: Mapped[list | str | None] = mapped_column(JSONType)
    behavioral_guidelines: Mapped[list | str | None] = mapped_column(JSONType)
    taboos: Mapped[list | str | None] = mapped_column(JSONType)
    emotional_tone: Mapped[str | None] = mapped_column(String(200))

    # Model bindings
    expressive_model_id: Mapped[str | None] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("ai_models.id", ondelete="SET NULL"),
    )
    reflective_model_id: Mapped[str | None] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("ai_models.id", ondelete="SET NULL"),
    )

    # Compression ratio of the context window
    context_threshold: Mapped[float] = mapped_column(Float, default=0.7, nullable=False)
    temperature: Mapped[float] = mapped_column(Float, default=0.7, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = created_at_column()
    updated_at: Mapped[datetime] = updated_at_column()
