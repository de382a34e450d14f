"""Context assembler: builds the system prompt and message list for a turn.

Block order is fixed; later blocks carry more steering weight:

1. persona base template
2. soul (values, guidelines, taboos, tone, speaking style)
3. skill catalog
4. prior topic summaries (chronological)
5. self-reflection notes
6. user profile + profile-completion nudge
7. unarchived turns (chronological), then the current user message
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from expert_chat.config import Settings, get_settings
from expert_chat.core.logging import get_logger
from expert_chat.core.reflection import analyze_score_trend
from expert_chat.models.topic import Topic
from expert_chat.schemas.memory import InnerVoice
from expert_chat.schemas.persona import PersonaConfig, Soul
from expert_chat.services.memory import MemoryEngine

logger = get_logger(__name__)

GUIDANCE_EVERY_N_TURNS = 3

# Checked in this order; the nudge rotates through whatever is missing.
_PROFILE_FIELDS: list[tuple[str, str]] = [
    ("preferred_name", "You don't know yet how the user likes to be addressed; ask naturally when it fits."),
    ("gender", "You don't know the user's gender yet; learn it only if it comes up naturally."),
    ("birthday", "You don't know the user's age yet; you may learn it naturally during the chat."),
    ("occupation", "You don't know what the user does for a living; you may learn it naturally."),
    ("location", "You don't know where the user lives; you may learn it naturally."),
]


@dataclass
class AssembledContext:
    system_prompt: str
    messages: list[dict]
    metadata: dict = field(default_factory=dict)


def _numbered(items: Sequence[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1))


def render_soul(soul: Soul) -> str:
    sections = [
        f"## Your core values\n{_numbered(soul.core_values)}",
        f"## Your behavioral guidelines\n{_numbered(soul.behavioral_guidelines)}",
        f"## Your taboos (never do these)\n{_numbered(soul.taboos)}",
        f"## Your emotional tone\n{soul.emotional_tone}",
    ]
    if soul.speaking_style:
        sections.append(f"## Your speaking style\n{soul.speaking_style}")
    return "\n\n".join(sections)


def render_skills(skills: Sequence[dict]) -> str | None:
    if not skills:
        return None
    lines = []
    for skill in skills:
        tools = ", ".join(skill.get("tools") or []) or "no specific tools"
        lines.append(
            f"- **{skill['name']}** ({skill['id']}): {skill.get('description') or 'No description'}\n"
            f"    - Available tools: {tools}"
        )
    return (
        "## Your skills\n"
        "You can use the following skills by calling their tools when it helps:\n\n"
        + "\n".join(lines)
        + "\n\nTool calls are executed for you; just decide when a tool is needed."
    )


def render_topics(topics: Sequence[Topic]) -> str | None:
    """Topics arrive most-recent-first and are rendered oldest first."""
    if not topics:
        return None
    summaries = "\n\n".join(
        f"【{t.title}】{t.description or 'No description'}" for t in reversed(topics)
    )
    return (
        "## Earlier conversation topics\n"
        "Topics you have already discussed with this user:\n\n"
        f"{summaries}"
    )


def render_inner_voices(voices: Sequence[InnerVoice]) -> str | None:
    """Voices arrive newest first."""
    if not voices:
        return None

    text = ""
    trend = analyze_score_trend(voices)
    latest = voices[0]
    if trend.trend == "declining" and latest.advice:
        text += f"Important reminder: your recent replies are slipping. {latest.advice}\n\n"

    monologues = "\n".join(v.monologue for v in voices if v.monologue)
    if monologues:
        text += f"Recent inner monologue:\n{monologues}"

    if not text:
        return None
    return (
        "## Your inner voice (reflections on previous replies)\n"
        f"{text}\n\n"
        "Adjust this reply according to these reflections."
    )


def missing_profile_fields(user_info: dict) -> list[str]:
    return [name for name, _ in _PROFILE_FIELDS if not user_info.get(name)]


def user_info_guidance(user_info: dict, conversation_count: int) -> str | None:
    """At most one nudge, every third turn, rotating through missing fields."""
    missing = missing_profile_fields(user_info)
    if not missing or conversation_count % GUIDANCE_EVERY_N_TURNS != 0:
        return None
    target = missing[(conversation_count // GUIDANCE_EVERY_N_TURNS) % len(missing)]
    return dict(_PROFILE_FIELDS)[target]


def render_user_profile(user_info: dict, guidance: str | None) -> str | None:
    known = []
    name = user_info.get("preferred_name") or user_info.get("nickname")
    if name:
        known.append(f"- Name: {name}")
    for key, label in (
        ("gender", "Gender"),
        ("birthday", "Birthday"),
        ("occupation", "Occupation"),
        ("location", "Location"),
        ("background", "Background"),
        ("notes", "Notes"),
    ):
        if user_info.get(key):
            known.append(f"- {label}: {user_info[key]}")

    parts = []
    if known:
        parts.append("What you know about the user:\n" + "\n".join(known))
    if guidance:
        parts.append(f"(Hint: {guidance})")
    if not parts:
        return None
    return "## Conversation notes\n" + "\n\n".join(parts)


class ContextAssembler:
    """Builds ``AssembledContext`` for one persona from stored state."""

    def __init__(
        self,
        persona: PersonaConfig,
        memory: MemoryEngine,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.persona = persona
        self.memory = memory
        self.settings = settings or get_settings()

    def build_system_prompt(
        self,
        *,
        skills: Sequence[dict] = (),
        topics: Sequence[Topic] = (),
        inner_voices: Sequence[InnerVoice] = (),
        user_info: dict | None = None,
        conversation_count: int = 0,
    ) -> str:
        user_info = user_info or {}
        blocks = [
            self.persona.base_template(),
            render_soul(self.persona.soul),
            render_skills(skills),
            render_topics(topics),
            render_inner_voices(inner_voices),
            render_user_profile(user_info, user_info_guidance(user_info, conversation_count)),
        ]
        return "\n\n".join(block for block in blocks if block)

    @staticmethod
    def build_messages(system_prompt: str, history: Sequence[dict], current_message: str) -> list[dict]:
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)
        if current_message:
            messages.append({"role": "user", "content": current_message})
        return messages

    async def build(
        self,
        user_id: str,
        current_message: str,
        *,
        skills: Sequence[dict] = (),
        exclude_turn_ids: Sequence[str] = (),
    ) -> AssembledContext:
        persona_id = self.persona.id
        turns = await self.memory.get_unarchived_turns(
            persona_id,
            user_id,
            limit=self.settings.context_max_history_turns,
            exclude_ids=exclude_turn_ids,
        )
        inner_voices = await self.memory.get_recent_inner_voices(
            persona_id, user_id, limit=self.settings.context_inner_voice_limit
        )
        topics = await self.memory.get_topics(persona_id, user_id, limit=self.settings.context_topic_limit)
        user_info = await self.memory.get_user_info(persona_id, user_id)

        history = [
            {"role": t.role, "content": t.content}
            for t in turns
            if t.role in ("user", "assistant") and t.content
        ]
        conversation_count = len(turns) // 2

        system_prompt = self.build_system_prompt(
            skills=skills,
            topics=topics,
            inner_voices=inner_voices,
            user_info=user_info,
            conversation_count=conversation_count,
        )
        messages = self.build_messages(system_prompt, history, current_message)

        logger.debug(
            "context_built",
            persona_id=persona_id,
            user_id=user_id,
            history_turns=len(history),
            topics=len(topics),
            inner_voices=len(inner_voices),
            skills=len(skills),
        )
        return AssembledContext(
            system_prompt=system_prompt,
            messages=messages,
            metadata={
                "persona_id": persona_id,
                "user_id": user_id,
                "turn_count": len(turns),
                "topic_count": len(topics),
                "inner_voice_count": len(inner_voices),
            },
        )
