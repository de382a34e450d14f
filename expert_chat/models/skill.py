"""Skill models: sandboxed capabilities exposed to personas as tools."""

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from expert_chat.database import ID_LENGTH, Base, JSONType
from expert_chat.models._mixins import created_at_column, id_column, updated_at_column


class Skill(Base):
    __tablename__ = "skills"

    id: Mapped[str] = id_column()
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    source_type: Mapped[str] = mapped_column(String(20), default="local", nullable=False)
    # Relative to settings.skills_base_path unless absolute
    source_path: Mapped[str | None] = mapped_column(String(500))
    skill_md: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = created_at_column()
    updated_at: Mapped[datetime] = updated_at_column()


class SkillTool(Base):
    """One callable function of a skill. Its id is the name the model sees."""

    __tablename__ = "skill_tools"

    id: Mapped[str] = id_column()
    skill_id: Mapped[str] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("skills.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    parameters: Mapped[dict | None] = mapped_column(JSONType)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class SkillParameter(Base):
    """Skill configuration value, passed to the sandbox as SKILL_<NAME>."""

    __tablename__ = "skill_parameters"
    __table_args__ = (
        UniqueConstraint("skill_id", "param_name", name="uq_skill_parameter_name"),
    )

    id: Mapped[str] = id_column()
    skill_id: Mapped[str] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("skills.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    param_name: Mapped[str] = mapped_column(String(100), nullable=False)
    param_value: Mapped[str | None] = mapped_column(Text)
    is_secret: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class PersonaSkill(Base):
    """Enable/disable relation between a persona and a skill."""

    __tablename__ = "persona_skills"
    __table_args__ = (
        UniqueConstraint("persona_id", "skill_id", name="uq_persona_skill"),
    )

    id: Mapped[str] = id_column()
    persona_id: Mapped[str] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("personas.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    skill_id: Mapped[str] = mapped_column(
        String(ID_LENGTH),
        ForeignKey("skills.id", ondelete="CASCADE"),
        nullable=False,
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    config: Mapped[dict | None] = mapped_column(JSONType)
