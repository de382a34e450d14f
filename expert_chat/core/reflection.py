"""Reflective mind: post-hoc self-evaluation of a persona's reply.

The reflective model scores the reply against the persona's soul on four
weighted dimensions. The result (an ``InnerVoice``) is stored on the
assistant turn and steers the next turns through the context assembler.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from expert_chat.core.llm_client import LLMClient, parse_json_object
from expert_chat.core.logging import get_logger
from expert_chat.schemas.memory import InnerVoice, ScoreBreakdown
from expert_chat.schemas.persona import Soul

logger = get_logger(__name__)

WEIGHTS = {
    "value_alignment": 0.30,
    "behavior_adherence": 0.25,
    "taboo_avoidance": 0.25,
    "tone": 0.20,
}

# Keys the model is asked to produce, mapped to ScoreBreakdown fields
_BREAKDOWN_KEYS = {
    "valueAlignment": "value_alignment",
    "behaviorAdherence": "behavior_adherence",
    "tabooCheck": "taboo_avoidance",
    "emotionalTone": "tone",
}

TREND_THRESHOLD = 1.0


def weighted_score(breakdown: ScoreBreakdown) -> float:
    total = sum(getattr(breakdown, name) * weight for name, weight in WEIGHTS.items())
    return round(total, 1)


@dataclass
class ScoreTrend:
    trend: str  # "improving", "declining", "stable"
    diff: float = 0.0


def analyze_score_trend(voices: Sequence[InnerVoice]) -> ScoreTrend:
    """Compare the older and newer halves of a newest-first window."""
    scores = [v.score for v in reversed(voices) if v.score]
    if len(scores) < 2:
        return ScoreTrend("stable")

    mid = len(scores) // 2
    older, newer = scores[:mid], scores[mid:]
    diff = sum(newer) / len(newer) - sum(older) / len(older)
    if diff > TREND_THRESHOLD:
        return ScoreTrend("improving", diff)
    if diff < -TREND_THRESHOLD:
        return ScoreTrend("declining", diff)
    return ScoreTrend("stable", diff)


def _numbered(items: Sequence[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1)) or "(not defined)"


def _reflection_system_prompt(soul: Soul) -> str:
    return f"""You are the "reflective mind" of a character. You evaluate the character's last reply against its soul.

## Core values
{_numbered(soul.core_values)}

## Behavioral guidelines
{_numbered(soul.behavioral_guidelines)}

## Taboos
{_numbered(soul.taboos)}

## Emotional tone
{soul.emotional_tone}

## Scoring dimensions (1-10 each)
1. valueAlignment (30%): does the reply reflect the core values?
2. behaviorAdherence (25%): does it follow the guidelines?
3. tabooCheck (25%): 10 means no taboo was touched
4. emotionalTone (20%): does the emotion match the tone?

Answer with JSON only:
{{
  "selfEvaluation": {{
    "breakdown": {{"valueAlignment": 1, "behaviorAdherence": 1, "tabooCheck": 1, "emotionalTone": 1}},
    "reason": "why these scores"
  }},
  "nextRoundAdvice": "one concrete suggestion for the next reply",
  "monologue": "first-person inner monologue"
}}"""


class ReflectiveMind:
    def __init__(self, soul: Soul | None, llm: LLMClient) -> None:
        self.soul = soul if soul is not None and not soul.is_empty else None
        self.llm = llm

    async def reflect(
        self,
        user_message: str,
        response: str,
        context: Sequence[dict] = (),
    ) -> InnerVoice:
        """Never raises; degrades to a neutral record."""
        if self.soul is None:
            return InnerVoice(
                score=7,
                breakdown=ScoreBreakdown(value_alignment=7, behavior_adherence=7, taboo_avoidance=10, tone=7),
                rationale="No soul configured; default score",
                advice="Keep observing how the conversation develops",
                monologue="I don't fully know my own values yet...",
            )

        recent = "\n".join(f"{m['role']}: {m['content']}" for m in list(context)[-5:]) or "(none)"
        messages = [
            {"role": "system", "content": _reflection_system_prompt(self.soul)},
            {
                "role": "user",
                "content": (
                    "Reflect on this exchange.\n\n"
                    f"## Their message\n{user_message or '(none)'}\n\n"
                    f"## My reply\n{response or '(none)'}\n\n"
                    f"## Recent context\n{recent}"
                ),
            },
        ]

        try:
            result = await self.llm.call_reflective(messages, temperature=0.3)
        except Exception as e:
            logger.warning("reflection_failed", error=str(e))
            return InnerVoice(
                score=5,
                breakdown=ScoreBreakdown(value_alignment=5, behavior_adherence=5, taboo_avoidance=5, tone=5),
                rationale=f"Reflection failed: {e}",
                advice="Stay calm and keep the conversation going",
                monologue="Something went wrong while I was reflecting...",
                error=str(e),
            )

        return self.parse_reflection(result.content)

    def parse_reflection(self, raw: str) -> InnerVoice:
        data = parse_json_object(raw)
        if data is None:
            logger.warning("reflection_unparsable", preview=(raw or "")[:200])
            return InnerVoice(
                score=6,
                breakdown=ScoreBreakdown(value_alignment=6, behavior_adherence=6, taboo_avoidance=10, tone=6),
                rationale="Reflection output could not be parsed",
                advice="Stay sincere",
                monologue=raw or "",
            )

        evaluation = data.get("selfEvaluation") or {}
        raw_breakdown = evaluation.get("breakdown") or {}
        defaults = ScoreBreakdown()
        values = {}
        for key, field_name in _BREAKDOWN_KEYS.items():
            values[field_name] = _score(raw_breakdown.get(key), getattr(defaults, field_name))
        breakdown = ScoreBreakdown(**values)

        return InnerVoice(
            score=weighted_score(breakdown),
            breakdown=breakdown,
            rationale=str(evaluation.get("reason") or "No reason given"),
            advice=str(data.get("nextRoundAdvice") or "Stay sincere"),
            monologue=str(data.get("monologue") or data.get("innerMonologue") or "..."),
        )

    # ── Local taboo check ────────────────────────────────────────

    def check_taboos(self, text: str) -> str | None:
        """Return the first taboo that appears verbatim in ``text``."""
        if self.soul is None or not text:
            return None
        lowered = text.lower()
        for taboo in self.soul.taboos:
            if taboo and taboo.lower() in lowered:
                return taboo
        return None

    def quick_reflect(self, response: str) -> InnerVoice | None:
        """Keyword-level taboo check; None when nothing was hit."""
        taboo = self.check_taboos(response)
        if taboo is None:
            return None
        return InnerVoice(
            score=3,
            breakdown=ScoreBreakdown(value_alignment=3, behavior_adherence=3, taboo_avoidance=0, tone=5),
            rationale=f"Reply may break a taboo: {taboo}",
            advice="Stop this line of conversation, apologize and change the subject",
            monologue=f"Warning: I may have broken a taboo ({taboo})",
        )


def _score(value, default: float) -> float:
    if value is None:
        return default
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(score, 0.0), 10.0)
