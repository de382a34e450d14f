"""Expert chat core schema: providers, models, personas, users, topics, turns, skills.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Turns carry a nullable topic_id: null while in working memory, set once by
compression. At most one topic per (persona, user) is 'active'.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ID = sa.String(32)
JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    cols = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]
    if updated:
        cols.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.text("now()"),
                nullable=False,
            )
        )
    return cols


def upgrade() -> None:
    op.create_table(
        "providers",
        sa.Column("id", ID, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("base_url", sa.String(500), nullable=False),
        sa.Column("api_key", sa.String(500), nullable=False),
        sa.Column("timeout_seconds", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(updated=False),
    )

    op.create_table(
        "ai_models",
        sa.Column("id", ID, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("model_name", sa.String(200), nullable=False),
        sa.Column("provider_id", ID, sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("max_tokens", sa.Integer(), nullable=True),
        sa.Column("context_size", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index("ix_ai_models_provider_id", "ai_models", ["provider_id"])

    op.create_table(
        "personas",
        sa.Column("id", ID, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("introduction", sa.Text(), nullable=True),
        sa.Column("prompt_template", sa.Text(), nullable=True),
        sa.Column("speaking_style", sa.Text(), nullable=True),
        sa.Column("core_values", JSON, nullable=True),
        sa.Column("behavioral_guidelines", JSON, nullable=True),
        sa.Column("taboos", JSON, nullable=True),
        sa.Column("emotional_tone", sa.String(200), nullable=True),
        sa.Column("expressive_model_id", ID, sa.ForeignKey("ai_models.id", ondelete="SET NULL"), nullable=True),
        sa.Column("reflective_model_id", ID, sa.ForeignKey("ai_models.id", ondelete="SET NULL"), nullable=True),
        sa.Column("context_threshold", sa.Float(), server_default="0.7", nullable=False),
        sa.Column("temperature", sa.Float(), server_default="0.7", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", ID, primary_key=True),
        sa.Column("nickname", sa.String(100), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("gender", sa.String(20), nullable=True),
        sa.Column("birthday", sa.Date(), nullable=True),
        sa.Column("occupation", sa.String(200), nullable=True),
        sa.Column("location", sa.String(200), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "user_profiles",
        sa.Column("id", ID, primary_key=True),
        sa.Column("user_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("persona_id", ID, sa.ForeignKey("personas.id", ondelete="CASCADE"), nullable=False),
        sa.Column("preferred_name", sa.String(100), nullable=True),
        sa.Column("introduction", sa.Text(), nullable=True),
        sa.Column("background", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("first_met", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_active", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "persona_id", name="uq_user_profile_user_persona"),
    )
    op.create_index("ix_user_profiles_user_id", "user_profiles", ["user_id"])

    op.create_table(
        "topics",
        sa.Column("id", ID, primary_key=True),
        sa.Column("persona_id", ID, sa.ForeignKey("personas.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(50), nullable=True),
        sa.Column(
            "status",
            sa.String(20),
            server_default="active",
            nullable=False,
            comment="active | archived | deleted",
        ),
        sa.Column("turn_count", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_topics_user_id", "topics", ["user_id"])
    # Single active topic per pair
    op.create_index(
        "uq_topics_active_pair",
        "topics",
        ["persona_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "turns",
        sa.Column("id", ID, primary_key=True),
        sa.Column("persona_id", ID, sa.ForeignKey("personas.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("topic_id", ID, sa.ForeignKey("topics.id", ondelete="SET NULL"), nullable=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("content", sa.Text(), server_default="", nullable=False),
        sa.Column("tokens_in", sa.Integer(), server_default="0", nullable=False),
        sa.Column("tokens_out", sa.Integer(), server_default="0", nullable=False),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("model_name", sa.String(200), nullable=True),
        sa.Column("provider_name", sa.String(100), nullable=True),
        sa.Column("tool_calls", JSON, nullable=True),
        sa.Column("self_reflection", JSON, nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_turns_topic_id", "turns", ["topic_id"])
    op.create_index("ix_turns_pair_created", "turns", ["persona_id", "user_id", "created_at"])
    op.create_index(
        "ix_turns_pair_unarchived",
        "turns",
        ["persona_id", "user_id", "created_at"],
        postgresql_where=sa.text("topic_id IS NULL"),
    )

    op.create_table(
        "skills",
        sa.Column("id", ID, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_type", sa.String(20), server_default="local", nullable=False),
        sa.Column("source_path", sa.String(500), nullable=True),
        sa.Column("skill_md", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "skill_tools",
        sa.Column("id", ID, primary_key=True),
        sa.Column("skill_id", ID, sa.ForeignKey("skills.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("parameters", JSON, nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
    )
    op.create_index("ix_skill_tools_skill_id", "skill_tools", ["skill_id"])

    op.create_table(
        "skill_parameters",
        sa.Column("id", ID, primary_key=True),
        sa.Column("skill_id", ID, sa.ForeignKey("skills.id", ondelete="CASCADE"), nullable=False),
        sa.Column("param_name", sa.String(100), nullable=False),
        sa.Column("param_value", sa.Text(), nullable=True),
        sa.Column("is_secret", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.UniqueConstraint("skill_id", "param_name", name="uq_skill_parameter_name"),
    )
    op.create_index("ix_skill_parameters_skill_id", "skill_parameters", ["skill_id"])

    op.create_table(
        "persona_skills",
        sa.Column("id", ID, primary_key=True),
        sa.Column("persona_id", ID, sa.ForeignKey("personas.id", ondelete="CASCADE"), nullable=False),
        sa.Column("skill_id", ID, sa.ForeignKey("skills.id", ondelete="CASCADE"), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("config", JSON, nullable=True),
        sa.UniqueConstraint("persona_id", "skill_id", name="uq_persona_skill"),
    )
    op.create_index("ix_persona_skills_persona_id", "persona_skills", ["persona_id"])


def downgrade() -> None:
    op.drop_table("persona_skills")
    op.drop_table("skill_parameters")
    op.drop_table("skill_tools")
    op.drop_table("skills")
    op.drop_index("ix_turns_pair_unarchived", table_name="turns")
    op.drop_index("ix_turns_pair_created", table_name="turns")
    op.drop_index("ix_turns_topic_id", table_name="turns")
    op.drop_table("turns")
    op.drop_index("uq_topics_active_pair", table_name="topics")
    op.drop_table("topics")
    op.drop_table("user_profiles")
    op.drop_table("users")
    op.drop_table("personas")
    op.drop_table("ai_models")
    op.drop_table("providers")
