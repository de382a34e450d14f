"""Chat orchestrator: runs one conversational turn of a persona end to end.

A turn resolves the persona session, settles the active topic, stores the
user's message, compacts memory when needed, builds the prompt and then
drives the model through a small state machine:

    awaiting_model --(tool calls)--> executing_tools --> awaiting_model
    awaiting_model --(text only / cap reached)--> terminal

The caller consumes ``ChatEvent`` objects (start, delta, tool_call,
tool_results, complete | error). Reflection and post-turn compression run
as tracked background tasks.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Coroutine, Hashable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from expert_chat.config import Settings, get_settings
from expert_chat.core.context_assembler import ContextAssembler
from expert_chat.core.events import (
    EVENT_COMPLETE,
    EVENT_DELTA,
    EVENT_ERROR,
    EVENT_START,
    EVENT_TOOL_CALL,
    EVENT_TOOL_RESULTS,
    ChatEvent,
)
from expert_chat.core.llm_client import ClientFactory, LLMClient
from expert_chat.core.logging import bound_turn, get_logger, persona_id_var, turn_id_var, user_id_var
from expert_chat.core.reflection import ReflectiveMind
from expert_chat.core.tokens import HeuristicTokenEstimator, TokenEstimator
from expert_chat.core.tool_manager import ToolCallResult, ToolManager, format_tool_results, parse_arguments
from expert_chat.core.topic_detector import HISTORY_WINDOW, TopicShiftDetector
from expert_chat.database import new_id
from expert_chat.models.topic import Topic, TopicStatus
from expert_chat.models.turn import TurnRole
from expert_chat.schemas.persona import ModelConfig, PersonaConfig
from expert_chat.services.config_loader import PersonaConfigLoader
from expert_chat.services.memory import MemoryEngine, TurnCache
from expert_chat.services.store import ConversationStore
from expert_chat.skills.loader import SkillLoader

logger = get_logger(__name__)

FALLBACK_REPLY = "I've processed your request, but I don't have anything specific to add."
DEFAULT_TOPIC_TITLE = "New conversation"
TOPIC_TITLE_MAX_CHARS = 50

UNREPLIED_SQL = """
SELECT t.id, t.persona_id, t.user_id, t.content, t.created_at
FROM turns t
WHERE t.role = 'user'
  AND NOT EXISTS (
    SELECT 1 FROM turns r
    WHERE r.persona_id = t.persona_id
      AND r.user_id = t.user_id
      AND r.role = 'assistant'
      AND r.created_at > t.created_at
  )
ORDER BY t.created_at, t.id
"""

UNREPLIED_FOR_PERSONA_SQL = """
SELECT t.id, t.persona_id, t.user_id, t.content, t.created_at
FROM turns t
WHERE t.role = 'user'
  AND t.persona_id = :persona_id
  AND NOT EXISTS (
    SELECT 1 FROM turns r
    WHERE r.persona_id = t.persona_id
      AND r.user_id = t.user_id
      AND r.role = 'assistant'
      AND r.created_at > t.created_at
  )
ORDER BY t.created_at, t.id
"""


class TurnState(StrEnum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    TERMINAL = "terminal"


class TurnCancelled(Exception):
    """The client went away; abandon the turn without persisting a reply."""


class ChatTurnError(Exception):
    """A non-streaming turn ended with an error event."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, usage: dict) -> None:
        self.prompt_tokens += usage.get("prompt_tokens", 0)
        self.completion_tokens += usage.get("completion_tokens", 0)
        self.total_tokens += usage.get("total_tokens", 0)

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class PersonaSession:
    """Everything needed to talk as one persona, built once per config revision."""

    config: PersonaConfig
    llm: LLMClient
    tools: ToolManager
    assembler: ContextAssembler
    mind: ReflectiveMind
    detector: TopicShiftDetector


@dataclass
class ChatResult:
    message_id: str
    topic_id: str | None
    is_new_topic: bool
    content: str
    usage: dict = field(default_factory=dict)
    latency_ms: int = 0
    model: str = ""


def _topic_title(content: str) -> str:
    title = " ".join(content.split())[:TOPIC_TITLE_MAX_CHARS]
    return title or DEFAULT_TOPIC_TITLE


def _ledger_entry(call: dict, result: ToolCallResult) -> dict:
    return {
        "call": call,
        "result": {"success": result.success, "data": result.data, "error": result.error},
        "duration_ms": result.duration_ms,
        "timestamp": datetime.now(UTC).isoformat(),
    }


class ChatOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        config_loader: PersonaConfigLoader,
        *,
        memory: MemoryEngine | None = None,
        skill_loader: SkillLoader | None = None,
        settings: Settings | None = None,
        estimator: TokenEstimator | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.store = store
        self.config_loader = config_loader
        self.settings = settings or get_settings()
        self.estimator = estimator or HeuristicTokenEstimator()
        self.memory = memory or MemoryEngine(
            store,
            settings=self.settings,
            estimator=self.estimator,
            cache=TurnCache(
                max_turns=self.settings.turn_cache_max_turns,
                max_users=self.settings.turn_cache_max_users,
                on_evict=self._on_turn_cache_evict,
            ),
        )
        self.skill_loader = skill_loader or SkillLoader(store, settings=self.settings)
        self.client_factory = client_factory
        self._sessions: dict[str, PersonaSession] = {}
        self._background: set[asyncio.Task] = set()

    # ── Sessions ─────────────────────────────────────────────────

    async def get_session(self, persona_id: str) -> PersonaSession:
        """Session for a persona; rebuilt when its configuration changed."""
        config = await self.config_loader.load(persona_id)
        session = self._sessions.get(persona_id)
        if session is not None and session.config == config:
            return session

        llm = LLMClient(
            config.expressive,
            config.reflective,
            settings=self.settings,
            estimator=self.estimator,
            client_factory=self.client_factory,
        )
        tools = ToolManager(self.skill_loader, persona_id)
        await tools.initialize()

        session = PersonaSession(
            config=config,
            llm=llm,
            tools=tools,
            assembler=ContextAssembler(config, self.memory, settings=self.settings),
            mind=ReflectiveMind(config.soul, llm),
            detector=TopicShiftDetector(
                llm,
                confidence_threshold=self.settings.topic_shift_confidence,
                min_turns=self.settings.topic_shift_min_turns,
            ),
        )
        self._sessions[persona_id] = session
        logger.info("persona_session_created", persona_id=persona_id, tools=len(tools.get_tool_definitions()))
        return session

    def clear_persona_cache(self, persona_id: str | None = None) -> None:
        if persona_id is None:
            self._sessions.clear()
            self.skill_loader.invalidate_cache()
            self.memory.cache.invalidate()
        else:
            session = self._sessions.pop(persona_id, None)
            if session is not None:
                for skill in session.tools.skills:
                    self.skill_loader.invalidate_cache(skill.id)
            for key in self.memory.cache.keys():
                if key[0] == persona_id:
                    self.memory.cache.invalidate(key)
        self.config_loader.clear_cache(persona_id)

    @staticmethod
    def _on_turn_cache_evict(key: Hashable, turns: list[dict]) -> None:
        logger.info("turn_cache_user_evicted", key=str(key), turns=len(turns))

    # ── Streaming turn ───────────────────────────────────────────

    async def stream_turn(
        self,
        persona_id: str,
        user_id: str,
        content: str,
        model_override: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ChatEvent]:
        """Run one turn, yielding events. Configuration errors raise before the first event."""
        session = await self.get_session(persona_id)
        llm = session.llm
        model: ModelConfig = session.config.expressive
        if model_override:
            model = await self.config_loader.get_model_config(model_override, persona_id=persona_id)
            llm = llm.with_expressive(model)

        persona_id_var.set(persona_id)
        user_id_var.set(user_id)
        started = time.perf_counter()

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        try:
            topic, is_new_topic = await self._resolve_topic(session, user_id, content)
            message_id = new_id()
            turn_id_var.set(message_id)
            yield ChatEvent(
                EVENT_START,
                {"message_id": message_id, "topic_id": topic.id, "is_new_topic": is_new_topic},
            )

            user_turn = await self.memory.add_turn(persona_id, user_id, TurnRole.USER, content)
            await self._compress(session, user_id)

            context = await session.assembler.build(
                user_id,
                content,
                skills=session.tools.get_skill_list(),
                exclude_turn_ids=[user_turn.id],
            )
            messages = list(llm.truncate_messages(context.messages))
            tools = session.tools.get_tool_definitions()
            tool_context = {"persona_id": persona_id, "user_id": user_id, "topic_id": topic.id}
            max_rounds = self.settings.max_tool_rounds

            usage = TokenUsage()
            ledger: list[dict] = []
            full_content = ""
            round_content = ""
            pending_calls: list[dict] = []
            rounds = 0
            state = TurnState.AWAITING_MODEL

            while state is not TurnState.TERMINAL:
                if cancelled():
                    raise TurnCancelled

                if state is TurnState.AWAITING_MODEL:
                    offered = tools if tools and rounds < max_rounds else None
                    round_content = ""
                    pending_calls = []
                    stream = llm.call_stream(messages, temperature=session.config.temperature, tools=offered)
                    try:
                        async for event in stream:
                            if cancelled():
                                raise TurnCancelled
                            if event.kind == "delta":
                                round_content += event.data
                                full_content += event.data
                                yield ChatEvent(EVENT_DELTA, {"content": event.data})
                            elif event.kind == "usage":
                                usage.add(event.data)
                            elif event.kind == "tool_calls":
                                pending_calls = event.data
                    finally:
                        await stream.aclose()
                    rounds += 1

                    if pending_calls and offered:
                        yield ChatEvent(EVENT_TOOL_CALL, {"tool_calls": pending_calls})
                        state = TurnState.EXECUTING_TOOLS
                    else:
                        state = TurnState.TERMINAL

                elif state is TurnState.EXECUTING_TOOLS:
                    results: list[ToolCallResult] = []
                    for call in pending_calls:
                        if cancelled():
                            raise TurnCancelled
                        function = call.get("function") or {}
                        result = await session.tools.execute_tool(
                            function.get("name", ""),
                            parse_arguments(function.get("arguments")),
                            tool_context,
                            tool_call_id=call.get("id", ""),
                        )
                        results.append(result)
                        ledger.append(_ledger_entry(call, result))

                    yield ChatEvent(EVENT_TOOL_RESULTS, {"results": [r.to_dict() for r in results]})

                    messages.append({"role": "assistant", "content": round_content or None, "tool_calls": pending_calls})
                    messages.extend(format_tool_results(results, self.settings.tool_result_max_chars))
                    if rounds >= max_rounds:
                        logger.warning("tool_round_limit_reached", rounds=rounds, max_rounds=max_rounds)
                    state = TurnState.AWAITING_MODEL

            reply = full_content
            if not reply.strip():
                logger.warning("empty_model_reply", rounds=rounds)
                reply = FALLBACK_REPLY
            latency_ms = int((time.perf_counter() - started) * 1000)

            await self.memory.add_turn(
                persona_id,
                user_id,
                TurnRole.ASSISTANT,
                reply,
                turn_id=message_id,
                tokens_in=usage.prompt_tokens,
                tokens_out=usage.completion_tokens,
                latency_ms=latency_ms,
                model_name=model.model_name,
                provider_name=model.provider_name,
                tool_calls=ledger or None,
            )
            await self.store.touch_topic(topic.id)

            self._spawn(
                self._reflect(session, user_id, content, reply, message_id, context.messages),
                name=f"reflect:{message_id}",
            )
            self._spawn(self._post_turn_compress(session, user_id), name=f"compress:{persona_id}:{user_id}")

            logger.info(
                "chat_turn_completed",
                rounds=rounds,
                tool_calls=len(ledger),
                latency_ms=latency_ms,
                total_tokens=usage.total_tokens,
            )
            yield ChatEvent(
                EVENT_COMPLETE,
                {
                    "message_id": message_id,
                    "content": reply,
                    "usage": usage.to_dict(),
                    "latency_ms": latency_ms,
                    "model": model.model_name,
                },
            )

        except TurnCancelled:
            logger.info("turn_cancelled", persona_id=persona_id, user_id=user_id)
        except asyncio.CancelledError:
            logger.info("turn_cancelled", persona_id=persona_id, user_id=user_id)
            raise
        except Exception as e:
            logger.exception("chat_turn_failed", persona_id=persona_id, user_id=user_id)
            yield ChatEvent(EVENT_ERROR, {"message": str(e)})

    async def chat(
        self,
        persona_id: str,
        user_id: str,
        content: str,
        model_override: str | None = None,
    ) -> ChatResult:
        """Non-streaming turn built on ``stream_turn``."""
        start: dict = {}
        async for event in self.stream_turn(persona_id, user_id, content, model_override):
            if event.event == EVENT_START:
                start = event.data
            elif event.event == EVENT_ERROR:
                raise ChatTurnError(event.data.get("message") or "Chat turn failed")
            elif event.event == EVENT_COMPLETE:
                return ChatResult(
                    message_id=event.data["message_id"],
                    topic_id=start.get("topic_id"),
                    is_new_topic=bool(start.get("is_new_topic")),
                    content=event.data["content"],
                    usage=event.data["usage"],
                    latency_ms=event.data["latency_ms"],
                    model=event.data["model"],
                )
        raise ChatTurnError("Chat turn ended without a reply")

    # ── Topics ───────────────────────────────────────────────────

    async def _resolve_topic(self, session: PersonaSession, user_id: str, content: str) -> tuple[Topic, bool]:
        persona_id = session.config.id
        topic = await self.store.get_active_topic(persona_id, user_id)
        if topic is None:
            topic = await self.store.create_active_topic(persona_id, user_id, _topic_title(content))
            logger.info("topic_created", topic_id=topic.id)
            return topic, True

        if not self.settings.topic_shift_enabled:
            return topic, False

        recent = await self.memory.get_recent_turns(persona_id, user_id, limit=HISTORY_WINDOW)
        shift = await session.detector.detect(
            recent,
            content,
            current_title=topic.title,
            current_description=topic.description,
        )
        if not shift.should_switch:
            return topic, False

        previous_id = topic.id
        topic = await self.store.create_active_topic(
            persona_id,
            user_id,
            shift.suggested_title or _topic_title(content),
        )
        logger.info(
            "topic_switched",
            previous_topic_id=previous_id,
            topic_id=topic.id,
            confidence=shift.confidence,
        )
        return topic, True

    async def end_topic(self, persona_id: str, user_id: str) -> str | None:
        """Archive the pair's active topic. Returns its id, or None when there was none."""
        topic = await self.store.get_active_topic(persona_id, user_id)
        if topic is None:
            return None
        await self.store.set_topic_status(topic.id, TopicStatus.ARCHIVED)
        logger.info("topic_ended", persona_id=persona_id, user_id=user_id, topic_id=topic.id)
        return topic.id

    # ── Memory maintenance ───────────────────────────────────────

    async def _compress(self, session: PersonaSession, user_id: str) -> None:
        try:
            result = await self.memory.check_and_compress(session.config, user_id, session.llm)
        except Exception as e:
            logger.warning("compression_failed", persona_id=session.config.id, user_id=user_id, error=str(e))
            return
        if result.compressed:
            logger.info("context_compressed", topics=len(result.topic_ids), archived_turns=result.archived_turns)

    async def _post_turn_compress(self, session: PersonaSession, user_id: str) -> None:
        try:
            await self.memory.check_and_compress(session.config, user_id, session.llm)
        except Exception:
            logger.exception("post_turn_compression_failed", persona_id=session.config.id, user_id=user_id)

    async def _reflect(
        self,
        session: PersonaSession,
        user_id: str,
        user_message: str,
        reply: str,
        turn_id: str,
        context: list[dict],
    ) -> None:
        try:
            voice = session.mind.quick_reflect(reply) or await session.mind.reflect(user_message, reply, context)
            await self.memory.save_inner_voice(turn_id, voice)
            logger.info("reflection_saved", turn_id=turn_id, score=voice.score)
        except Exception:
            logger.exception("reflection_task_failed", persona_id=session.config.id, user_id=user_id)

    # ── Recovery ─────────────────────────────────────────────────

    async def process_unreplied(self, persona_id: str | None = None) -> int:
        """Reply to user turns left without an answer (e.g. after a crash).

        Only the newest unreplied turn of each persona/user pair is answered.
        Returns the number of replies written.
        """
        if persona_id:
            rows = await self.store.fetch_all(UNREPLIED_FOR_PERSONA_SQL, persona_id=persona_id)
        else:
            rows = await self.store.fetch_all(UNREPLIED_SQL)

        latest: dict[tuple[str, str], dict] = {}
        for row in rows:
            latest[(row["persona_id"], row["user_id"])] = row
        if not latest:
            logger.info("unreplied_scan_empty")
            return 0

        logger.info("unreplied_turns_found", turns=len(rows), pairs=len(latest))
        replied = 0
        for (pid, uid), row in latest.items():
            with bound_turn(pid, uid, row["id"]):
                try:
                    await self._reply_to(pid, uid, row["id"], row["content"])
                    replied += 1
                except Exception:
                    logger.exception("unreplied_turn_failed")
        return replied

    async def _reply_to(self, persona_id: str, user_id: str, turn_id: str, content: str) -> None:
        session = await self.get_session(persona_id)
        context = await session.assembler.build(user_id, content, exclude_turn_ids=[turn_id])
        started = time.perf_counter()
        response = await session.llm.call_expressive(
            session.llm.truncate_messages(context.messages),
            temperature=session.config.temperature,
        )
        reply = response.content if response.content.strip() else FALLBACK_REPLY
        await self.memory.add_turn(
            persona_id,
            user_id,
            TurnRole.ASSISTANT,
            reply,
            tokens_in=response.usage.get("prompt_tokens", 0),
            tokens_out=response.usage.get("completion_tokens") or self.estimator.estimate_text(reply),
            latency_ms=int((time.perf_counter() - started) * 1000),
            model_name=session.config.expressive.model_name,
            provider_name=session.config.expressive.provider_name,
        )
        topic = await self.store.get_active_topic(persona_id, user_id)
        if topic is not None:
            await self.store.touch_topic(topic.id)
        logger.info("unreplied_turn_answered")

    # ── Background tasks ─────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_failed", task=task.get_name(), error=str(exc))

    @property
    def pending_tasks(self) -> int:
        return len(self._background)

    async def shutdown(self) -> None:
        """Wait for in-flight background work."""
        if self._background:
            logger.info("orchestrator_draining", tasks=len(self._background))
            await asyncio.gather(*list(self._background), return_exceptions=True)
