"""Shared fixtures: in-memory SQLite store, seeded persona, fake LLM backend."""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import expert_chat.models  # noqa: F401
from expert_chat.config import Settings
from expert_chat.database import Base
from expert_chat.models import AIModel, Persona, Provider, User
from expert_chat.services.store import ConversationStore
from fakes import FakeOpenAI, default_responder


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        llm_backoff_base_seconds=0.01,
        llm_backoff_cap_seconds=0.05,
        skills_base_path=str(tmp_path / "skills"),
        skill_timeout_seconds=10,
        skill_memory_limit_mb=1024,
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def store(session_maker) -> ConversationStore:
    return ConversationStore(session_maker)


@pytest.fixture
async def seeded(session_maker) -> SimpleNamespace:
    """One provider, two models, a persona with a soul and one user."""
    async with session_maker() as db:
        provider = Provider(name="local", base_url="http://llm.test/v1", api_key="sk-test")
        db.add(provider)
        await db.flush()
        expressive = AIModel(
            name="Chat",
            model_name="chat-model",
            provider_id=provider.id,
            max_tokens=1024,
            context_size=8000,
        )
        reflective = AIModel(name="Think", model_name="think-model", provider_id=provider.id)
        alternate = AIModel(name="Alt", model_name="alt-model", provider_id=provider.id)
        db.add_all([expressive, reflective, alternate])
        await db.flush()
        persona = Persona(
            name="Dr. Lin",
            introduction="You are Dr. Lin, a patient physics tutor.",
            core_values=["Honesty", "Curiosity"],
            behavioral_guidelines=["Explain with examples"],
            taboos=["medical diagnosis"],
            emotional_tone="calm",
            expressive_model_id=expressive.id,
            reflective_model_id=reflective.id,
        )
        user = User(nickname="sam")
        db.add_all([persona, user])
        await db.commit()
        return SimpleNamespace(
            persona_id=persona.id,
            user_id=user.id,
            provider_id=provider.id,
            expressive_id=expressive.id,
            reflective_id=reflective.id,
            alternate_id=alternate.id,
        )


@pytest.fixture
def fake_openai() -> FakeOpenAI:
    return FakeOpenAI(default_responder)
