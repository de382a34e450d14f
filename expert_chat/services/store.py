"""Conversation store: typed data access for the chat core.

Every method opens its own short transaction from the session maker, so the
orchestrator, background reflection and compression never share a session.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from expert_chat.core.logging import get_logger
from expert_chat.models.persona import Persona
from expert_chat.models.provider import AIModel
from expert_chat.models.skill import PersonaSkill, Skill, SkillParameter, SkillTool
from expert_chat.models.topic import Topic, TopicStatus
from expert_chat.models.turn import Turn, TurnRole
from expert_chat.models.user import User, UserProfile

logger = get_logger(__name__)


class ConversationStore:
    """Typed CRUD over turns, topics, personas, skills and users."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    # ── Personas & models ────────────────────────────────────────

    async def get_persona(self, persona_id: str) -> Persona | None:
        async with self.session_maker() as db:
            return await db.get(Persona, persona_id)

    async def get_model(self, model_id: str) -> AIModel | None:
        """AI model with its provider eagerly loaded."""
        async with self.session_maker() as db:
            result = await db.execute(select(AIModel).where(AIModel.id == model_id))
            return result.scalar_one_or_none()

    # ── Turns ────────────────────────────────────────────────────

    async def add_turn(
        self,
        *,
        persona_id: str,
        user_id: str,
        role: TurnRole | str,
        content: str,
        turn_id: str | None = None,
        tokens_in: int = 0,
        tokens_out: int = 0,
        latency_ms: int | None = None,
        model_name: str | None = None,
        provider_name: str | None = None,
        tool_calls: list | None = None,
    ) -> Turn:
        """Insert a turn. New turns are always unarchived (topic_id null)."""
        turn = Turn(
            persona_id=persona_id,
            user_id=user_id,
            role=str(role),
            content=content,
            topic_id=None,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            latency_ms=latency_ms,
            model_name=model_name,
            provider_name=provider_name,
            tool_calls=tool_calls,
        )
        if turn_id:
            turn.id = turn_id
        async with self.session_maker() as db:
            db.add(turn)
            await db.commit()
        return turn

    async def get_turn(self, turn_id: str) -> Turn | None:
        async with self.session_maker() as db:
            return await db.get(Turn, turn_id)

    async def list_unarchived_turns(
        self,
        persona_id: str,
        user_id: str,
        *,
        limit: int | None = None,
        exclude_ids: Sequence[str] = (),
    ) -> list[Turn]:
        """Unarchived turns in chronological order (the newest ``limit`` when given)."""
        stmt = (
            select(Turn)
            .where(Turn.persona_id == persona_id)
            .where(Turn.user_id == user_id)
            .where(Turn.topic_id.is_(None))
        )
        if exclude_ids:
            stmt = stmt.where(Turn.id.not_in(list(exclude_ids)))

        async with self.session_maker() as db:
            if limit is None:
                result = await db.execute(stmt.order_by(Turn.created_at, Turn.id))
                return list(result.scalars().all())
            result = await db.execute(
                stmt.order_by(Turn.created_at.desc(), Turn.id.desc()).limit(limit)
            )
            return list(reversed(result.scalars().all()))

    async def count_unarchived_turns(self, persona_id: str, user_id: str) -> int:
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.count(Turn.id))
                .where(Turn.persona_id == persona_id)
                .where(Turn.user_id == user_id)
                .where(Turn.topic_id.is_(None))
            )
            return int(result.scalar_one())

    async def list_recent_turns(self, persona_id: str, user_id: str, limit: int = 20) -> list[Turn]:
        """Most recent turns of the pair, archived or not, chronological."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(Turn)
                .where(Turn.persona_id == persona_id)
                .where(Turn.user_id == user_id)
                .order_by(Turn.created_at.desc(), Turn.id.desc())
                .limit(limit)
            )
            return list(reversed(result.scalars().all()))

    async def list_recent_reflections(self, persona_id: str, user_id: str, limit: int = 3) -> list[dict]:
        """Self-reflection payloads of the newest assistant turns, newest first."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(Turn.self_reflection)
                .where(Turn.persona_id == persona_id)
                .where(Turn.user_id == user_id)
                .where(Turn.role == TurnRole.ASSISTANT)
                .where(Turn.self_reflection.is_not(None))
                .order_by(Turn.created_at.desc(), Turn.id.desc())
                .limit(limit)
            )
            return [row for row in result.scalars().all() if row]

    async def set_self_reflection(self, turn_id: str, reflection: dict) -> None:
        async with self.session_maker() as db:
            await db.execute(
                update(Turn).where(Turn.id == turn_id).values(self_reflection=reflection)
            )
            await db.commit()

    async def assign_turns_to_topic(self, turn_ids: Sequence[str], topic_id: str) -> int:
        """Archive turns into a topic. Already-archived turns are never moved."""
        if not turn_ids:
            return 0
        async with self.session_maker() as db:
            result = await db.execute(
                update(Turn)
                .where(Turn.id.in_(list(turn_ids)))
                .where(Turn.topic_id.is_(None))
                .values(topic_id=topic_id)
            )
            await db.commit()
            return result.rowcount or 0

    # ── Topics ───────────────────────────────────────────────────

    async def get_active_topic(self, persona_id: str, user_id: str) -> Topic | None:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Topic)
                .where(Topic.persona_id == persona_id)
                .where(Topic.user_id == user_id)
                .where(Topic.status == TopicStatus.ACTIVE)
                .order_by(Topic.updated_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def create_active_topic(
        self,
        persona_id: str,
        user_id: str,
        title: str,
        description: str | None = None,
    ) -> Topic:
        """Create the pair's active topic, archiving any other active one in the same transaction."""
        topic = Topic(
            persona_id=persona_id,
            user_id=user_id,
            title=title[:200],
            description=description,
            status=TopicStatus.ACTIVE,
        )
        async with self.session_maker() as db:
            await db.execute(
                update(Topic)
                .where(Topic.persona_id == persona_id)
                .where(Topic.user_id == user_id)
                .where(Topic.status == TopicStatus.ACTIVE)
                .values(status=TopicStatus.ARCHIVED, updated_at=datetime.now(UTC))
            )
            db.add(topic)
            await db.commit()
        return topic

    async def create_archived_topic(
        self,
        persona_id: str,
        user_id: str,
        *,
        title: str,
        description: str | None = None,
        category: str | None = None,
    ) -> Topic:
        topic = Topic(
            persona_id=persona_id,
            user_id=user_id,
            title=title[:200],
            description=description,
            category=(category or "other")[:50],
            status=TopicStatus.ARCHIVED,
        )
        async with self.session_maker() as db:
            db.add(topic)
            await db.commit()
        return topic

    async def set_topic_status(self, topic_id: str, status: TopicStatus) -> None:
        async with self.session_maker() as db:
            await db.execute(
                update(Topic)
                .where(Topic.id == topic_id)
                .values(status=status, updated_at=datetime.now(UTC))
            )
            await db.commit()

    async def touch_topic(self, topic_id: str) -> None:
        async with self.session_maker() as db:
            await db.execute(
                update(Topic).where(Topic.id == topic_id).values(updated_at=datetime.now(UTC))
            )
            await db.commit()

    async def recount_topic(self, topic_id: str) -> int:
        """Recompute turn_count from storage."""
        async with self.session_maker() as db:
            result = await db.execute(select(func.count(Turn.id)).where(Turn.topic_id == topic_id))
            count = int(result.scalar_one())
            await db.execute(update(Topic).where(Topic.id == topic_id).values(turn_count=count))
            await db.commit()
            return count

    async def list_topics(self, persona_id: str, user_id: str, limit: int = 10) -> list[Topic]:
        """Non-deleted topics, most recently updated first."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(Topic)
                .where(Topic.persona_id == persona_id)
                .where(Topic.user_id == user_id)
                .where(Topic.status != TopicStatus.DELETED)
                .order_by(Topic.updated_at.desc(), Topic.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Users ────────────────────────────────────────────────────

    async def get_user(self, user_id: str) -> User | None:
        async with self.session_maker() as db:
            return await db.get(User, user_id)

    async def get_user_profile(self, persona_id: str, user_id: str) -> UserProfile | None:
        async with self.session_maker() as db:
            result = await db.execute(
                select(UserProfile)
                .where(UserProfile.persona_id == persona_id)
                .where(UserProfile.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def update_user(self, user_id: str, **fields: str | date | None) -> None:
        if not fields:
            return
        async with self.session_maker() as db:
            await db.execute(update(User).where(User.id == user_id).values(**fields))
            await db.commit()

    async def upsert_user_profile(self, persona_id: str, user_id: str, **fields: Any) -> UserProfile:
        async with self.session_maker() as db:
            result = await db.execute(
                select(UserProfile)
                .where(UserProfile.persona_id == persona_id)
                .where(UserProfile.user_id == user_id)
            )
            profile = result.scalar_one_or_none()
            if profile is None:
                profile = UserProfile(
                    persona_id=persona_id,
                    user_id=user_id,
                    first_met=datetime.now(UTC),
                )
                db.add(profile)
            for key, value in fields.items():
                setattr(profile, key, value)
            await db.commit()
            return profile

    # ── Skills ───────────────────────────────────────────────────

    async def list_enabled_skills(self, persona_id: str) -> list[tuple[Skill, dict | None]]:
        """Active skills enabled for a persona, with the persona-level config."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(Skill, PersonaSkill.config)
                .join(PersonaSkill, PersonaSkill.skill_id == Skill.id)
                .where(PersonaSkill.persona_id == persona_id)
                .where(PersonaSkill.is_enabled.is_(True))
                .where(Skill.is_active.is_(True))
                .order_by(Skill.name)
            )
            return [(skill, config) for skill, config in result.all()]

    async def get_skill(self, skill_id: str) -> Skill | None:
        async with self.session_maker() as db:
            return await db.get(Skill, skill_id)

    async def list_skill_tools(self, skill_id: str) -> list[SkillTool]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(SkillTool)
                .where(SkillTool.skill_id == skill_id)
                .where(SkillTool.is_active.is_(True))
                .order_by(SkillTool.name)
            )
            return list(result.scalars().all())

    async def get_skill_parameters(self, skill_id: str) -> dict[str, str | None]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(SkillParameter.param_name, SkillParameter.param_value)
                .where(SkillParameter.skill_id == skill_id)
            )
            return {name: value for name, value in result.all()}

    # ── Raw escape hatch ─────────────────────────────────────────

    async def fetch_all(self, sql: str, **params: Any) -> list[dict]:
        """Run a read-only SQL statement and return rows as dicts."""
        async with self.session_maker() as db:
            result = await db.execute(text(sql), params)
            return [dict(row) for row in result.mappings().all()]
