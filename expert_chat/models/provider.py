"""LLM provider and model catalogue."""

from datetime import datetime

from sqlalchemy import Boolean, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expert_chat.database import ID_LENGTH, Base
from expert_chat.models._mixins import created_at_column, id_column


class Provider(Base):
    """An OpenAI-compatible endpoint (base URL + credentials)."""

    __tablename__ = "providers"

    id: Mapped[str] = id_column()
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    base_url: Mapped[str] = mapped_column(String(500), nullable=False)
    api_key: Mapped[str] = mapped_column(String(500), nullable=False)
    timeout_seconds: Mapped[float | None] = mapped_column(Float)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = created_at_column()


class AIModel(Base):
    """A model served by a provider."""

    __tablename__ = "ai_models"

    id: Mapped[str] = id_column()
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    model_name: Mapped[str] = mapped_column(String(200), nullable=False)
    provider_id: Mapped[str] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("providers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    max_tokens: Mapped[int | None] = mapped_column(Integer)
    context_size: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = created_at_column()

    provider: Mapped[Provider] = relationship(lazy="joined")
