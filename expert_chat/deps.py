"""Application context and FastAPI dependencies.

Every long-lived component is built once in the lifespan and hung on
``app.state.context``; endpoints receive it through ``AppCtx``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from expert_chat.config import Settings
from expert_chat.core.llm_client import ClientFactory
from expert_chat.core.orchestrator import ChatOrchestrator
from expert_chat.core.tokens import HeuristicTokenEstimator, TokenEstimator
from expert_chat.services.config_loader import PersonaConfigLoader
from expert_chat.services.store import ConversationStore
from expert_chat.skills.loader import SkillLoader


@dataclass
class AppContext:
    settings: Settings
    session_maker: async_sessionmaker[AsyncSession]
    store: ConversationStore
    config_loader: PersonaConfigLoader
    skill_loader: SkillLoader
    orchestrator: ChatOrchestrator
    engine: AsyncEngine | None = None


def build_app_context(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    engine: AsyncEngine | None = None,
    estimator: TokenEstimator | None = None,
    client_factory: ClientFactory | None = None,
) -> AppContext:
    estimator = estimator or HeuristicTokenEstimator()
    store = ConversationStore(session_maker)
    config_loader = PersonaConfigLoader(store, settings=settings)
    skill_loader = SkillLoader(store, settings=settings)
    orchestrator = ChatOrchestrator(
        store,
        config_loader,
        skill_loader=skill_loader,
        settings=settings,
        estimator=estimator,
        client_factory=client_factory,
    )
    return AppContext(
        settings=settings,
        session_maker=session_maker,
        store=store,
        config_loader=config_loader,
        skill_loader=skill_loader,
        orchestrator=orchestrator,
        engine=engine,
    )


def get_app_context(request: Request) -> AppContext:
    return request.app.state.context


AppCtx = Annotated[AppContext, Depends(get_app_context)]
