"""Topic shift detector: decides whether a new message opens a new topic.

False splits are worse than false merges, so every uncertain path
(too little history, low confidence, call or parse failure) answers
"continue".
"""

from __future__ import annotations

from collections.abc import Sequence

from expert_chat.core.llm_client import LLMClient, parse_json_object
from expert_chat.core.logging import get_logger
from expert_chat.schemas.memory import TopicShift

logger = get_logger(__name__)

HISTORY_WINDOW = 10
TURN_PREVIEW_CHARS = 200
BOUNDARY_WINDOW = 6

DETECTION_SYSTEM_PROMPT = (
    "You are a topic analysis expert. Decide whether the user's new message "
    "continues the current conversation topic or opens a new one. Answer with JSON only."
)

DETECTION_PROMPT = """Decide whether the user's new message opens a brand new topic.

## Current topic
- Title: {title}
- Description: {description}

## Recent conversation
{history}

## New user message
{message}

## Output (JSON)
{{
  "isNewTopic": true,
  "confidence": 0.0,
  "reason": "short justification",
  "suggestedTitle": "short title if it is a new topic"
}}

Follow-up questions, extra details and related opinions continue the topic.
A different question or an unrelated domain is a new topic."""


def _preview(content: str | None) -> str:
    content = content or ""
    if len(content) > TURN_PREVIEW_CHARS:
        return content[:TURN_PREVIEW_CHARS] + "..."
    return content


class TopicShiftDetector:
    def __init__(
        self,
        llm: LLMClient,
        *,
        confidence_threshold: float = 0.7,
        min_turns: int = 6,
    ) -> None:
        self.llm = llm
        self.confidence_threshold = confidence_threshold
        self.min_turns = min_turns

    async def detect(
        self,
        recent_turns: Sequence[dict],
        new_message: str,
        *,
        current_title: str | None = None,
        current_description: str | None = None,
    ) -> TopicShift:
        if len(recent_turns) < self.min_turns:
            return TopicShift(reason="Not enough turns")

        history = "\n".join(
            f"{'User' if t['role'] == 'user' else 'Assistant'}: {_preview(t.get('content'))}"
            for t in list(recent_turns)[-HISTORY_WINDOW:]
        )
        prompt = DETECTION_PROMPT.format(
            title=current_title or "Untitled topic",
            description=current_description or "No description",
            history=history,
            message=new_message,
        )

        try:
            response = await self.llm.call_expressive(
                [
                    {"role": "system", "content": DETECTION_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.3,
                max_tokens=500,
            )
        except Exception as e:
            logger.warning("topic_detection_failed", error=str(e))
            return TopicShift(reason="Detection failed")

        result = self.parse_detection(response.content)
        logger.info(
            "topic_detection_result",
            should_switch=result.should_switch,
            confidence=result.confidence,
            suggested_title=result.suggested_title,
        )
        return result

    def parse_detection(self, raw: str | None) -> TopicShift:
        data = parse_json_object(raw)
        if data is None:
            logger.warning("topic_detection_unparsable", preview=(raw or "")[:200])
            return TopicShift(reason="Unparsable detection output")

        try:
            confidence = float(data.get("confidence") or 0)
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))
        is_new_topic = data.get("isNewTopic") is True

        return TopicShift(
            should_switch=is_new_topic and confidence >= self.confidence_threshold,
            is_new_topic=is_new_topic,
            confidence=confidence,
            reason=str(data.get("reason") or "No reason given"),
            suggested_title=(str(data["suggestedTitle"])[:200] if data.get("suggestedTitle") else None),
        )

    async def detect_boundaries(self, turns: Sequence[dict]) -> list[int]:
        """Indices where a new topic starts, scanning with a sliding window."""
        if len(turns) < self.min_turns:
            return []

        boundaries: list[int] = []
        step = BOUNDARY_WINDOW // 2
        for i in range(BOUNDARY_WINDOW, len(turns), step):
            window = list(turns[max(0, i - BOUNDARY_WINDOW) : i])
            result = await self.detect(
                window,
                turns[i].get("content") or "",
                current_title="Conversation history",
            )
            if result.should_switch:
                boundaries.append(i)
        return boundaries
