"""Tests for the turn cache, compression and user-info handling."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from expert_chat.core.llm_client import LLMCallError, LLMResponse
from expert_chat.models import TopicStatus, TurnRole
from expert_chat.schemas.memory import InnerVoice, UserInfo
from expert_chat.services.memory import (
    FALLBACK_TOPIC_SUMMARY,
    FALLBACK_TOPIC_TITLE,
    MemoryEngine,
    TurnCache,
)


class FixedEstimator:
    """Reports the same token count for any transcript."""

    def __init__(self, tokens: int) -> None:
        self.tokens = tokens

    def estimate_text(self, text: str) -> int:
        return self.tokens

    def estimate_messages(self, messages: list[dict]) -> int:
        return self.tokens


def _llm(content: str | Exception) -> MagicMock:
    llm = MagicMock()
    if isinstance(content, Exception):
        llm.call_reflective = AsyncMock(side_effect=content)
    else:
        llm.call_reflective = AsyncMock(return_value=LLMResponse(content=content))
    return llm


async def _fill(memory: MemoryEngine, seeded, count: int) -> list:
    turns = []
    for i in range(count):
        role = TurnRole.USER if i % 2 == 0 else TurnRole.ASSISTANT
        turns.append(await memory.add_turn(seeded.persona_id, seeded.user_id, role, f"message {i}"))
    return turns


@pytest.fixture
def memory(store, settings) -> MemoryEngine:
    return MemoryEngine(store, settings=settings, estimator=FixedEstimator(750))


# ── TurnCache ────────────────────────────────────────────────────────


class TestTurnCache:
    def test_ring_keeps_newest_turns(self):
        cache = TurnCache(max_turns=3, max_users=5)
        cache.put("u1", [{"id": str(i)} for i in range(5)])
        assert [t["id"] for t in cache.get("u1")] == ["2", "3", "4"]

        assert cache.append("u1", {"id": "5"})
        assert [t["id"] for t in cache.get("u1")] == ["3", "4", "5"]

    def test_append_to_uncached_user_is_a_miss(self):
        cache = TurnCache()
        assert cache.append("nobody", {"id": "x"}) is False
        assert cache.get("nobody") is None

    def test_lru_eviction_reports_through_callback(self):
        evicted: list[tuple] = []
        cache = TurnCache(max_turns=10, max_users=2, on_evict=lambda key, turns: evicted.append((key, turns)))

        cache.put("a", [{"id": "a1"}])
        cache.put("b", [{"id": "b1"}])
        cache.get("a")  # "b" is now least recently used
        cache.put("c", [])

        assert evicted == [("b", [{"id": "b1"}])]
        assert cache.keys() == ["a", "c"]
        assert "b" not in cache

    def test_invalidate(self):
        cache = TurnCache()
        cache.put("a", [])
        cache.put("b", [])
        cache.invalidate("a")
        assert cache.keys() == ["b"]
        cache.invalidate()
        assert len(cache) == 0


# ── Turns & cache integration ────────────────────────────────────────


class TestRecentTurns:
    async def test_cache_is_filled_then_appended(self, memory, seeded):
        await _fill(memory, seeded, 3)
        recent = await memory.get_recent_turns(seeded.persona_id, seeded.user_id, limit=2)
        assert [t["content"] for t in recent] == ["message 1", "message 2"]
        assert (seeded.persona_id, seeded.user_id) in memory.cache

        await memory.add_turn(seeded.persona_id, seeded.user_id, TurnRole.ASSISTANT, "fresh")
        recent = await memory.get_recent_turns(seeded.persona_id, seeded.user_id, limit=2)
        assert [t["content"] for t in recent] == ["message 2", "fresh"]

    async def test_limit_zero_returns_everything_cached(self, memory, seeded):
        await _fill(memory, seeded, 4)
        assert len(await memory.get_recent_turns(seeded.persona_id, seeded.user_id, limit=0)) == 4


# ── Compression check ────────────────────────────────────────────────


class TestShouldCompress:
    async def test_minimum_turn_gate(self, memory, seeded):
        await _fill(memory, seeded, 19)
        check = await memory.should_compress(seeded.persona_id, seeded.user_id, 1000, 0.7, 20)
        assert check.need_compress is False
        assert check.reason == "Turn count 19 < minimum 20"

    async def test_over_threshold(self, memory, seeded):
        await _fill(memory, seeded, 25)
        check = await memory.should_compress(seeded.persona_id, seeded.user_id, 1000, 0.7, 20)
        assert check.need_compress is True
        assert check.token_count == 750
        assert check.threshold == 700
        assert check.reason == "Token count 750 >= threshold 700"

    async def test_under_threshold(self, store, settings, seeded):
        memory = MemoryEngine(store, settings=settings, estimator=FixedEstimator(699))
        await _fill(memory, seeded, 25)
        check = await memory.should_compress(seeded.persona_id, seeded.user_id, 1000, 0.7, 20)
        assert check.need_compress is False
        assert check.reason == "Token count 699 < threshold 700"


# ── Compression ──────────────────────────────────────────────────────


class TestCompress:
    async def test_partitions_archive_every_turn(self, memory, store, seeded):
        await _fill(memory, seeded, 25)
        reply = json.dumps(
            {
                "topics": [
                    {"title": "Optics", "summary": "lenses", "startIndex": 0, "endIndex": 11, "category": "study"},
                    {"title": "Waves", "summary": "sound", "startIndex": 12, "endIndex": 24},
                ],
                "userInfo": {"preferredName": "Sammy", "occupation": "engineer", "age": 30},
            }
        )
        llm = _llm(f"Here you go:\n```json\n{reply}\n```")

        result = await memory.compress(
            seeded.persona_id, seeded.user_id, llm, context_size=1000, threshold_ratio=0.7, min_turns=20
        )

        assert result.compressed is True
        assert result.used_fallback is False
        assert result.archived_turns == 25
        assert len(result.topic_ids) == 2
        assert await memory.count_unarchived(seeded.persona_id, seeded.user_id) == 0

        topics = {t.title: t for t in await store.list_topics(seeded.persona_id, seeded.user_id)}
        assert topics["Optics"].turn_count == 12
        assert topics["Waves"].turn_count == 13
        assert all(t.status == TopicStatus.ARCHIVED for t in topics.values())

        user = await store.get_user(seeded.user_id)
        assert user.occupation == "engineer"
        assert user.birthday.year == datetime.now(UTC).year - 30
        assert await memory.get_user_preferred_name(seeded.persona_id, seeded.user_id) == "Sammy"

        messages = llm.call_reflective.await_args.args[0]
        assert "conversation analysis assistant" in messages[0]["content"]
        assert "[24] user: message 24" in messages[1]["content"]

    async def test_uncovered_turns_go_to_catch_all_topic(self, memory, store, seeded):
        await _fill(memory, seeded, 25)
        reply = json.dumps({"topics": [{"title": "Start", "startIndex": 0, "endIndex": 9}]})

        result = await memory.compress(
            seeded.persona_id, seeded.user_id, _llm(reply), context_size=1000, threshold_ratio=0.7, min_turns=20
        )

        assert result.archived_turns == 25
        topics = {t.title: t for t in await store.list_topics(seeded.persona_id, seeded.user_id)}
        assert topics["Start"].turn_count == 10
        assert topics[FALLBACK_TOPIC_TITLE].turn_count == 15

    async def test_unparsable_output_falls_back(self, memory, store, seeded):
        await _fill(memory, seeded, 25)
        result = await memory.compress(
            seeded.persona_id,
            seeded.user_id,
            _llm("I cannot do that."),
            context_size=1000,
            threshold_ratio=0.7,
            min_turns=20,
        )

        assert result.used_fallback is True
        assert len(result.topic_ids) == 1
        [topic] = await store.list_topics(seeded.persona_id, seeded.user_id)
        assert topic.title == FALLBACK_TOPIC_TITLE
        assert topic.description == FALLBACK_TOPIC_SUMMARY
        assert topic.turn_count == 25

    async def test_llm_failure_falls_back(self, memory, seeded):
        await _fill(memory, seeded, 25)
        error = LLMCallError("LLM call failed after 3 attempts: down", attempts=3, errors=[])
        result = await memory.compress(
            seeded.persona_id, seeded.user_id, _llm(error), context_size=1000, threshold_ratio=0.7, min_turns=20
        )
        assert result.compressed is True
        assert result.used_fallback is True
        assert await memory.count_unarchived(seeded.persona_id, seeded.user_id) == 0

    async def test_out_of_range_partitions_are_clamped(self, memory, store, seeded):
        await _fill(memory, seeded, 25)
        reply = json.dumps(
            {
                "topics": [
                    {"title": "Late", "startIndex": 10, "endIndex": 99},
                    {"title": "Bogus", "startIndex": 40, "endIndex": 50},
                    {"title": "Early", "startIndex": 0, "endIndex": 9},
                ]
            }
        )
        result = await memory.compress(
            seeded.persona_id, seeded.user_id, _llm(reply), context_size=1000, threshold_ratio=0.7, min_turns=20
        )

        assert result.archived_turns == 25
        titles = {t.title: t.turn_count for t in await store.list_topics(seeded.persona_id, seeded.user_id)}
        assert titles == {"Early": 10, "Late": 15}

    async def test_not_needed_does_not_call_model(self, memory, seeded):
        await _fill(memory, seeded, 5)
        llm = _llm("{}")
        result = await memory.compress(
            seeded.persona_id, seeded.user_id, llm, context_size=1000, threshold_ratio=0.7, min_turns=20
        )
        assert result.compressed is False
        llm.call_reflective.assert_not_awaited()

    async def test_compressed_turns_leave_working_set(self, memory, store, seeded):
        await _fill(memory, seeded, 25)
        await memory.compress(
            seeded.persona_id, seeded.user_id, _llm("{}"), context_size=1000, threshold_ratio=0.7, min_turns=20
        )
        await memory.add_turn(seeded.persona_id, seeded.user_id, TurnRole.USER, "after")

        remaining = await memory.get_unarchived_turns(seeded.persona_id, seeded.user_id)
        assert [t.content for t in remaining] == ["after"]


# ── User info ────────────────────────────────────────────────────────


class TestUserInfo:
    async def test_preferred_name_chain(self, memory, store, seeded):
        assert await memory.get_user_preferred_name(seeded.persona_id, seeded.user_id) == "sam"
        await store.upsert_user_profile(seeded.persona_id, seeded.user_id, preferred_name="Dr. Sam")
        assert await memory.get_user_preferred_name(seeded.persona_id, seeded.user_id) == "Dr. Sam"
        assert await memory.get_user_preferred_name(seeded.persona_id, "missing-user") == "missing-user"

    async def test_update_user_info_only_writes_stated_fields(self, memory, store, seeded):
        await memory.update_user_info(seeded.persona_id, seeded.user_id, UserInfo(location="Lisbon"))

        info = await memory.get_user_info(seeded.persona_id, seeded.user_id)
        assert info["location"] == "Lisbon"
        assert info["occupation"] is None
        assert info["preferred_name"] is None
        assert await store.get_user_profile(seeded.persona_id, seeded.user_id) is None

    def test_user_info_age_coercion(self):
        assert UserInfo.model_validate({"age": "41"}).age == 41
        assert UserInfo.model_validate({"age": "forty"}).age is None
        assert UserInfo.model_validate({"age": 500}).age is None
        assert UserInfo().is_empty()


# ── Inner voices ─────────────────────────────────────────────────────


class TestInnerVoices:
    async def test_round_trip_newest_first(self, memory, store, seeded):
        turns = await _fill(memory, seeded, 4)
        await memory.save_inner_voice(turns[1].id, InnerVoice(score=6, advice="slow down"))
        await memory.save_inner_voice(turns[3].id, InnerVoice(score=9, advice="keep going"))
        await store.set_self_reflection(turns[2].id, {"score": 1})  # user turn, ignored

        voices = await memory.get_recent_inner_voices(seeded.persona_id, seeded.user_id)
        assert [v.advice for v in voices] == ["keep going", "slow down"]

    async def test_invalid_payloads_are_skipped(self, memory, store, seeded):
        turns = await _fill(memory, seeded, 2)
        await store.set_self_reflection(turns[1].id, {"unexpected": True})
        assert await memory.get_recent_inner_voices(seeded.persona_id, seeded.user_id) == []
