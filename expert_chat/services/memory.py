"""Memory engine: turn storage, recent-turn cache and context compression.

Compression keeps the unarchived working set bounded: once the estimated
token cost of unarchived turns crosses ``context_size * threshold_ratio``,
the reflective model partitions the transcript into topics, every turn is
re-labeled with its topic id and the topic summaries replace the raw turns
in later prompts.
"""

from __future__ import annotations

from collections import OrderedDict, deque
from collections.abc import Callable, Hashable, Sequence
from datetime import UTC, date, datetime

from pydantic import ValidationError

from expert_chat.config import Settings, get_settings
from expert_chat.core.llm_client import LLMClient, parse_json_object
from expert_chat.core.logging import get_logger
from expert_chat.core.tokens import HeuristicTokenEstimator, TokenEstimator
from expert_chat.models.topic import Topic
from expert_chat.models.turn import Turn, TurnRole
from expert_chat.schemas.memory import (
    CompressionCheck,
    CompressionResult,
    InnerVoice,
    TopicPartition,
    UserInfo,
)
from expert_chat.schemas.persona import PersonaConfig
from expert_chat.services.store import ConversationStore

logger = get_logger(__name__)

FALLBACK_TOPIC_TITLE = "Conversation log"
FALLBACK_TOPIC_SUMMARY = "auto-archived"
TRANSCRIPT_TURN_MAX_CHARS = 500

PARTITION_SYSTEM_PROMPT = (
    "You are a conversation analysis assistant. "
    "You split transcripts into topics and answer with JSON only."
)

PARTITION_PROMPT = """Split the following conversation into topics.

Transcript (each line is "[index] role: content"):
{transcript}

Answer with a JSON object of this shape:
{{
  "topics": [
    {{
      "title": "short title",
      "summary": "2-3 sentence summary of what was said",
      "startIndex": 0,
      "endIndex": 5,
      "keywords": ["keyword"],
      "category": "work|life|emotion|study|health|hobby|other"
    }}
  ],
  "userInfo": {{
    "gender": null,
    "age": null,
    "occupation": null,
    "preferredName": null,
    "location": null
  }}
}}

Rules:
- Topics are contiguous, in order, and together cover indices 0 to {last_index}.
- Fill userInfo fields only when the user states them explicitly. Never guess; use null otherwise."""


# ── Recent-turn cache ────────────────────────────────────────────────

EvictCallback = Callable[[Hashable, list[dict]], None]


class TurnCache:
    """Per-user ring of recent turns with strict LRU eviction across users.

    The OrderedDict is the access list: every read or write moves the user to
    the tail, eviction pops from the head and reports through ``on_evict``.
    """

    def __init__(
        self,
        max_turns: int = 100,
        max_users: int = 50,
        on_evict: EvictCallback | None = None,
    ) -> None:
        self.max_turns = max_turns
        self.max_users = max_users
        self.on_evict = on_evict
        self._entries: OrderedDict[Hashable, deque[dict]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def keys(self) -> list[Hashable]:
        """Keys from least to most recently used."""
        return list(self._entries)

    def get(self, key: Hashable) -> list[dict] | None:
        turns = self._entries.get(key)
        if turns is None:
            return None
        self._entries.move_to_end(key)
        return list(turns)

    def put(self, key: Hashable, turns: Sequence[dict]) -> None:
        self._entries[key] = deque(turns, maxlen=self.max_turns)
        self._entries.move_to_end(key)
        self._evict()

    def append(self, key: Hashable, turn: dict) -> bool:
        """Append to a cached ring. Returns False when the user is not cached."""
        turns = self._entries.get(key)
        if turns is None:
            return False
        turns.append(turn)
        self._entries.move_to_end(key)
        return True

    def invalidate(self, key: Hashable | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def _evict(self) -> None:
        while len(self._entries) > self.max_users:
            key, turns = self._entries.popitem(last=False)
            logger.debug("turn_cache_evicted", key=str(key), turns=len(turns))
            if self.on_evict is not None:
                self.on_evict(key, list(turns))


def _turn_snapshot(turn: Turn) -> dict:
    return {
        "id": turn.id,
        "role": turn.role,
        "content": turn.content,
        "created_at": turn.created_at,
    }


# ── Memory engine ────────────────────────────────────────────────────


class MemoryEngine:
    """Durable turn storage, short-term cache and compaction for one process."""

    def __init__(
        self,
        store: ConversationStore,
        *,
        settings: Settings | None = None,
        estimator: TokenEstimator | None = None,
        cache: TurnCache | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.estimator = estimator or HeuristicTokenEstimator()
        self.cache = cache or TurnCache(
            max_turns=self.settings.turn_cache_max_turns,
            max_users=self.settings.turn_cache_max_users,
        )

    # ── Turns ────────────────────────────────────────────────────

    async def add_turn(self, persona_id: str, user_id: str, role: TurnRole | str, content: str, **fields) -> Turn:
        turn = await self.store.add_turn(
            persona_id=persona_id,
            user_id=user_id,
            role=role,
            content=content,
            **fields,
        )
        self.cache.append((persona_id, user_id), _turn_snapshot(turn))
        return turn

    async def get_recent_turns(self, persona_id: str, user_id: str, limit: int = 20) -> list[dict]:
        """Recent turns (archived or not) as role/content dicts, chronological."""
        key = (persona_id, user_id)
        cached = self.cache.get(key)
        if cached is None:
            turns = await self.store.list_recent_turns(persona_id, user_id, limit=self.cache.max_turns)
            cached = [_turn_snapshot(t) for t in turns]
            self.cache.put(key, cached)
        return cached[-limit:] if limit else cached

    async def get_unarchived_turns(
        self,
        persona_id: str,
        user_id: str,
        *,
        limit: int | None = None,
        exclude_ids: Sequence[str] = (),
    ) -> list[Turn]:
        return await self.store.list_unarchived_turns(
            persona_id, user_id, limit=limit, exclude_ids=exclude_ids
        )

    async def count_unarchived(self, persona_id: str, user_id: str) -> int:
        return await self.store.count_unarchived_turns(persona_id, user_id)

    # ── Compression ──────────────────────────────────────────────

    async def should_compress(
        self,
        persona_id: str,
        user_id: str,
        context_size: int,
        threshold_ratio: float,
        min_turns: int,
    ) -> CompressionCheck:
        threshold = int(context_size * threshold_ratio)
        turn_count = await self.store.count_unarchived_turns(persona_id, user_id)
        if turn_count < min_turns:
            return CompressionCheck(
                need_compress=False,
                reason=f"Turn count {turn_count} < minimum {min_turns}",
                turn_count=turn_count,
                threshold=threshold,
            )

        turns = await self.store.list_unarchived_turns(persona_id, user_id)
        token_count = self.estimator.estimate_messages(
            [{"role": t.role, "content": t.content} for t in turns]
        )
        need = token_count >= threshold
        comparison = ">=" if need else "<"
        return CompressionCheck(
            need_compress=need,
            reason=f"Token count {token_count} {comparison} threshold {threshold}",
            token_count=token_count,
            turn_count=len(turns),
            threshold=threshold,
        )

    async def compress(
        self,
        persona_id: str,
        user_id: str,
        llm: LLMClient,
        *,
        context_size: int,
        threshold_ratio: float,
        min_turns: int,
    ) -> CompressionResult:
        """Archive all unarchived turns of the pair into summarized topics.

        Never fails open: when the partition cannot be obtained or parsed the
        whole range goes into one catch-all topic.
        """
        check = await self.should_compress(persona_id, user_id, context_size, threshold_ratio, min_turns)
        if not check.need_compress:
            return CompressionResult(compressed=False, reason=check.reason)

        turns = await self.store.list_unarchived_turns(persona_id, user_id)
        if not turns:
            return CompressionResult(compressed=False, reason="No unarchived turns")

        logger.info(
            "compression_started",
            persona_id=persona_id,
            user_id=user_id,
            turns=len(turns),
            tokens=check.token_count,
            threshold=check.threshold,
        )

        used_fallback = False
        user_info: UserInfo | None = None
        try:
            partitions, user_info = await self.identify_topics(llm, turns)
        except Exception as e:
            logger.warning("compression_partition_failed", persona_id=persona_id, error=str(e))
            partitions = []

        partitions = _normalize_partitions(partitions, len(turns))
        if not partitions:
            used_fallback = True
            partitions = [_fallback_partition(0, len(turns) - 1)]

        topic_ids: list[str] = []
        archived = 0
        covered: set[int] = set()
        for partition in partitions:
            topic_id, count = await self._archive_range(persona_id, user_id, turns, partition)
            topic_ids.append(topic_id)
            archived += count
            covered.update(range(partition.start_index, partition.end_index + 1))

        leftover = [i for i in range(len(turns)) if i not in covered]
        if leftover:
            topic_id, count = await self._archive_range(
                persona_id,
                user_id,
                turns,
                _fallback_partition(leftover[0], leftover[-1]),
                indices=leftover,
            )
            topic_ids.append(topic_id)
            archived += count

        if user_info is not None and not user_info.is_empty():
            try:
                await self.update_user_info(persona_id, user_id, user_info)
            except Exception:
                logger.exception("user_info_update_failed", persona_id=persona_id, user_id=user_id)

        logger.info(
            "compression_completed",
            persona_id=persona_id,
            user_id=user_id,
            topics=len(topic_ids),
            archived_turns=archived,
            used_fallback=used_fallback,
        )
        return CompressionResult(
            compressed=True,
            reason=check.reason,
            topic_ids=topic_ids,
            archived_turns=archived,
            used_fallback=used_fallback,
        )

    async def check_and_compress(self, persona: PersonaConfig, user_id: str, llm: LLMClient) -> CompressionResult:
        return await self.compress(
            persona.id,
            user_id,
            llm,
            context_size=persona.expressive.context_size,
            threshold_ratio=persona.context_threshold,
            min_turns=self.settings.compression_min_turns,
        )

    async def identify_topics(
        self,
        llm: LLMClient,
        turns: Sequence[Turn],
    ) -> tuple[list[TopicPartition], UserInfo | None]:
        transcript = "\n".join(
            f"[{i}] {t.role}: {t.content[:TRANSCRIPT_TURN_MAX_CHARS]}" for i, t in enumerate(turns)
        )
        response = await llm.call_reflective(
            [
                {"role": "system", "content": PARTITION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": PARTITION_PROMPT.format(transcript=transcript, last_index=len(turns) - 1),
                },
            ],
            temperature=0.3,
        )
        data = parse_json_object(response.content)
        if data is None:
            logger.warning("compression_output_unparsable", preview=response.content[:200])
            return [], None

        partitions: list[TopicPartition] = []
        for raw in data.get("topics") or []:
            try:
                partitions.append(TopicPartition.model_validate(raw))
            except ValidationError as e:
                logger.warning("compression_topic_invalid", error=str(e)[:300])

        user_info = None
        if isinstance(data.get("userInfo"), dict):
            try:
                user_info = UserInfo.model_validate(data["userInfo"])
            except ValidationError:
                user_info = None
        return partitions, user_info

    async def _archive_range(
        self,
        persona_id: str,
        user_id: str,
        turns: Sequence[Turn],
        partition: TopicPartition,
        *,
        indices: Sequence[int] | None = None,
    ) -> tuple[str, int]:
        if indices is None:
            indices = range(partition.start_index, partition.end_index + 1)
        topic = await self.store.create_archived_topic(
            persona_id,
            user_id,
            title=partition.title,
            description=partition.summary,
            category=partition.category,
        )
        await self.store.assign_turns_to_topic([turns[i].id for i in indices], topic.id)
        count = await self.store.recount_topic(topic.id)
        return topic.id, count

    # ── User info ────────────────────────────────────────────────

    async def update_user_info(self, persona_id: str, user_id: str, info: UserInfo) -> None:
        user_fields: dict[str, str | date] = {}
        if info.gender:
            user_fields["gender"] = info.gender[:20]
        if info.occupation:
            user_fields["occupation"] = info.occupation[:200]
        if info.location:
            user_fields["location"] = info.location[:200]
        if info.age:
            user_fields["birthday"] = date(datetime.now(UTC).year - info.age, 1, 1)

        if user_fields:
            await self.store.update_user(user_id, **user_fields)
        if info.preferred_name:
            await self.store.upsert_user_profile(persona_id, user_id, preferred_name=info.preferred_name[:100])

        logger.info(
            "user_info_updated",
            persona_id=persona_id,
            user_id=user_id,
            fields=sorted(user_fields) + (["preferred_name"] if info.preferred_name else []),
        )

    async def get_user_info(self, persona_id: str, user_id: str) -> dict:
        user = await self.store.get_user(user_id)
        profile = await self.store.get_user_profile(persona_id, user_id)
        return {
            "nickname": user.nickname if user else None,
            "gender": user.gender if user else None,
            "birthday": user.birthday if user else None,
            "occupation": user.occupation if user else None,
            "location": user.location if user else None,
            "preferred_name": profile.preferred_name if profile else None,
            "background": profile.background if profile else None,
            "notes": profile.notes if profile else None,
        }

    async def get_user_preferred_name(self, persona_id: str, user_id: str) -> str:
        profile = await self.store.get_user_profile(persona_id, user_id)
        if profile and profile.preferred_name:
            return profile.preferred_name
        user = await self.store.get_user(user_id)
        if user and user.nickname:
            return user.nickname
        return user_id

    # ── Reflection & topics ──────────────────────────────────────

    async def save_inner_voice(self, turn_id: str, voice: InnerVoice) -> None:
        await self.store.set_self_reflection(turn_id, voice.model_dump())

    async def get_recent_inner_voices(self, persona_id: str, user_id: str, limit: int = 3) -> list[InnerVoice]:
        """Newest first."""
        rows = await self.store.list_recent_reflections(persona_id, user_id, limit=limit)
        voices: list[InnerVoice] = []
        for row in rows:
            try:
                voices.append(InnerVoice.model_validate(row))
            except ValidationError:
                logger.debug("inner_voice_invalid", persona_id=persona_id)
        return voices

    async def get_topics(self, persona_id: str, user_id: str, limit: int = 10) -> list[Topic]:
        """Most recently updated first."""
        return await self.store.list_topics(persona_id, user_id, limit=limit)


def _fallback_partition(start: int, end: int) -> TopicPartition:
    return TopicPartition(
        title=FALLBACK_TOPIC_TITLE,
        summary=FALLBACK_TOPIC_SUMMARY,
        start_index=start,
        end_index=end,
        category="other",
    )


def _normalize_partitions(partitions: Sequence[TopicPartition], turn_count: int) -> list[TopicPartition]:
    """Clamp ranges to the transcript and drop empty or inverted ones."""
    normalized: list[TopicPartition] = []
    for p in sorted(partitions, key=lambda p: p.start_index):
        if p.start_index >= turn_count or p.start_index > p.end_index:
            continue
        end = min(p.end_index, turn_count - 1)
        normalized.append(p.model_copy(update={"end_index": end}))
    return normalized
