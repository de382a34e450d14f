"""Tests for the LLM client: retries, streaming, request shape, truncation."""

from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest

from expert_chat.core.llm_client import (
    LLMCallError,
    LLMClient,
    backoff_delay,
    is_retryable_error,
    parse_json_object,
)
from expert_chat.schemas.persona import ModelConfig
from fakes import FakeOpenAI, FakeStream, StatusError, completion, text_chunk, tool_chunk, usage_chunk


def _model(model_id: str = "m1", **overrides) -> ModelConfig:
    data = {
        "model_id": model_id,
        "model_name": f"{model_id}-name",
        "provider_name": "local",
        "base_url": "http://llm.test/v1",
        "api_key": "sk",
        "max_tokens": 512,
        "context_size": 1000,
        "timeout_seconds": 30,
    }
    data.update(overrides)
    return ModelConfig(**data)


class _Sleeper:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _client(settings, fake: FakeOpenAI, *, reflective: ModelConfig | None = None, sleep=None) -> LLMClient:
    return LLMClient(
        _model(),
        reflective,
        settings=settings,
        client_factory=fake.factory,
        sleep=sleep or _Sleeper(),
    )


# ── Backoff & classification ────────────────────────────────────────


class TestBackoff:
    def test_sequence_doubles_and_caps(self):
        assert [backoff_delay(k) for k in range(1, 7)] == [10, 20, 40, 80, 120, 120]

    def test_custom_base_and_cap(self):
        assert backoff_delay(1, base=1, cap=3) == 1
        assert backoff_delay(3, base=1, cap=3) == 3


class TestIsRetryableError:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        assert is_retryable_error(StatusError(status))

    @pytest.mark.parametrize("status", [400, 401, 404, 422])
    def test_client_errors_are_not_retryable(self, status):
        assert not is_retryable_error(StatusError(status))

    def test_network_errors(self):
        assert is_retryable_error(ConnectionError("boom"))
        assert is_retryable_error(TimeoutError())
        assert is_retryable_error(httpx.ConnectError("refused"))

    def test_message_markers(self):
        assert is_retryable_error(RuntimeError("Request timed out"))
        assert is_retryable_error(RuntimeError("ECONNRESET while reading"))
        assert is_retryable_error(RuntimeError("upstream said HTTP 503"))

    def test_plain_errors(self):
        assert not is_retryable_error(ValueError("invalid model name"))


class TestParseJsonObject:
    def test_extracts_from_fenced_block(self):
        assert parse_json_object('Sure!\n```json\n{"a": 1}\n```') == {"a": 1}

    def test_invalid_or_missing(self):
        assert parse_json_object("no json here") is None
        assert parse_json_object("{not json}") is None
        assert parse_json_object(None) is None


# ── Non-streaming calls ─────────────────────────────────────────────


class TestCall:
    async def test_request_shape_and_response(self, settings):
        fake = FakeOpenAI(lambda request: "hello")
        client = _client(settings, fake)

        response = await client.call([{"role": "user", "content": "hi"}])

        assert response.content == "hello"
        assert response.usage == {"prompt_tokens": 12, "completion_tokens": 8, "total_tokens": 20}
        request = fake.completions.requests[0]
        assert request["model"] == "m1-name"
        assert request["temperature"] == 0.7
        assert request["max_tokens"] == 512
        assert "tools" not in request
        assert "stream" not in request

    async def test_tool_calls_are_normalized(self, settings):
        call = SimpleNamespace(id="c1", function=SimpleNamespace(name="lookup", arguments='{"q": 1}'))
        fake = FakeOpenAI(lambda request: completion("", tool_calls=[call]))
        response = await _client(settings, fake).call([{"role": "user", "content": "hi"}])

        assert response.tool_calls == [
            {"id": "c1", "type": "function", "function": {"name": "lookup", "arguments": '{"q": 1}'}}
        ]

    async def test_no_choices_raises(self, settings):
        fake = FakeOpenAI(lambda request: SimpleNamespace(choices=[], usage=None, model="x"))
        with pytest.raises(LLMCallError, match="no choices"):
            await _client(settings, fake).call([{"role": "user", "content": "hi"}])

    async def test_reflective_falls_back_to_expressive(self, settings):
        fake = FakeOpenAI(lambda request: "ok")
        client = _client(settings, fake)
        await client.call_reflective([{"role": "user", "content": "x"}])
        assert fake.completions.requests[0]["model"] == "m1-name"

    async def test_reflective_defaults(self, settings):
        fake = FakeOpenAI(lambda request: "ok")
        client = _client(settings, fake, reflective=_model("r1", timeout_seconds=20))
        await client.call_reflective([{"role": "user", "content": "x"}])

        request = fake.completions.requests[0]
        assert request["model"] == "r1-name"
        assert request["temperature"] == 0.3
        assert request["timeout"] == 90

    async def test_expressive_with_tools_sets_auto_choice(self, settings):
        fake = FakeOpenAI(lambda request: "ok")
        tools = [{"type": "function", "function": {"name": "t", "parameters": {}}}]
        await _client(settings, fake).call_expressive_with_tools([{"role": "user", "content": "x"}], tools)

        request = fake.completions.requests[0]
        assert request["tools"] == tools
        assert request["tool_choice"] == "auto"


# ── Retry ────────────────────────────────────────────────────────────


class TestCallWithRetry:
    async def test_retries_transient_failures_then_succeeds(self, settings):
        outcomes = [StatusError(503), StatusError(429), "finally"]
        fake = FakeOpenAI(lambda request: outcomes.pop(0))
        sleeper = _Sleeper()
        client = _client(settings, fake, sleep=sleeper)

        response = await client.call_with_retry([{"role": "user", "content": "x"}])

        assert response.content == "finally"
        assert len(fake.completions.requests) == 3
        assert sleeper.delays == [
            backoff_delay(1, settings.llm_backoff_base_seconds, settings.llm_backoff_cap_seconds),
            backoff_delay(2, settings.llm_backoff_base_seconds, settings.llm_backoff_cap_seconds),
        ]

    async def test_non_retryable_raises_immediately(self, settings):
        fake = FakeOpenAI(lambda request: StatusError(400, "bad request"))
        sleeper = _Sleeper()

        with pytest.raises(LLMCallError) as exc_info:
            await _client(settings, fake, sleep=sleeper).call_with_retry([{"role": "user", "content": "x"}])

        assert exc_info.value.attempts == 1
        assert len(fake.completions.requests) == 1
        assert sleeper.delays == []

    async def test_exhaustion_message_and_errors(self, settings):
        fake = FakeOpenAI(lambda request: StatusError(502, "bad gateway"))
        with pytest.raises(LLMCallError) as exc_info:
            await _client(settings, fake).call_with_retry([{"role": "user", "content": "x"}], max_retries=3)

        err = exc_info.value
        assert str(err) == "LLM call failed after 3 attempts: bad gateway"
        assert err.attempts == 3
        assert len(err.errors) == 3

    async def test_default_backoff_schedule(self, settings):
        fake = FakeOpenAI(lambda request: TimeoutError("timed out"))
        sleeper = _Sleeper()
        client = LLMClient(
            _model(),
            settings=settings.model_copy(update={"llm_backoff_base_seconds": 10, "llm_backoff_cap_seconds": 120}),
            client_factory=fake.factory,
            sleep=sleeper,
        )
        with pytest.raises(LLMCallError):
            await client.call_with_retry([{"role": "user", "content": "x"}], max_retries=4)
        assert sleeper.delays == [10, 20, 40]


# ── Streaming ────────────────────────────────────────────────────────


async def _collect(client: LLMClient, **kwargs) -> list:
    return [event async for event in client.call_stream([{"role": "user", "content": "x"}], **kwargs)]


class TestCallStream:
    async def test_deltas_and_usage(self, settings):
        fake = FakeOpenAI()
        fake.completions.streams.append([text_chunk("Hel"), text_chunk("lo"), usage_chunk(7, 3)])
        events = await _collect(_client(settings, fake))

        assert [(e.kind, e.data) for e in events] == [
            ("delta", "Hel"),
            ("delta", "lo"),
            ("usage", {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}),
        ]
        request = fake.completions.requests[0]
        assert request["stream"] is True
        assert request["stream_options"] == {"include_usage": True}

    async def test_tool_call_fragments_accumulate_by_index(self, settings):
        fake = FakeOpenAI()
        fake.completions.streams.append(
            [
                tool_chunk(1, id="call_b", name="second", arguments='{"x"'),
                tool_chunk(0, id="call_a", name="first", arguments="{}"),
                tool_chunk(1, arguments=": 2}"),
                tool_chunk(2, arguments='{"orphan": true}'),  # never gets id/name
            ]
        )
        tools = [{"type": "function", "function": {"name": "first", "parameters": {}}}]
        events = await _collect(_client(settings, fake), tools=tools)

        assert len(events) == 1
        assert events[0].kind == "tool_calls"
        assert events[0].data == [
            {"id": "call_a", "type": "function", "function": {"name": "first", "arguments": "{}"}},
            {"id": "call_b", "type": "function", "function": {"name": "second", "arguments": '{"x": 2}'}},
        ]
        assert fake.completions.requests[0]["tool_choice"] == "auto"

    async def test_stream_is_closed(self, settings):
        fake = FakeOpenAI()
        stream = FakeStream([text_chunk("a")])
        fake.completions.streams.append(stream)
        await _collect(_client(settings, fake))
        assert stream.closed

    async def test_opening_the_stream_is_retried(self, settings):
        fake = FakeOpenAI()
        fake.completions.streams.extend([ConnectionError("reset"), [text_chunk("ok")]])
        events = await _collect(_client(settings, fake))
        assert [e.data for e in events] == ["ok"]
        assert len(fake.completions.requests) == 2

    async def test_failure_mid_stream_propagates(self, settings):
        fake = FakeOpenAI()
        stream = FakeStream([text_chunk("a"), text_chunk("b")], fail_after=1)
        fake.completions.streams.append(stream)

        with pytest.raises(RuntimeError, match="stream broke"):
            await _collect(_client(settings, fake))
        assert len(fake.completions.requests) == 1
        assert stream.closed


# ── Truncation ───────────────────────────────────────────────────────


class TestTruncateMessages:
    def test_under_budget_is_untouched(self, settings):
        client = _client(settings, FakeOpenAI())
        messages = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]
        assert client.truncate_messages(messages) is messages

    def test_keeps_system_and_newest(self, settings):
        client = _client(settings, FakeOpenAI())
        messages = [{"role": "system", "content": "rules"}]
        messages += [{"role": "user", "content": f"{i} " + "x" * 396} for i in range(10)]

        # context 1000 -> budget 800, each message ~104 tokens
        kept = client.truncate_messages(messages)

        assert kept[0] == messages[0]
        assert kept[-1] == messages[-1]
        assert len(kept) < len(messages)
        assert client.estimate_tokens(kept) <= 800
        contents = [m["content"] for m in kept[1:]]
        assert contents == [m["content"] for m in messages[-len(contents):]]

    def test_always_keeps_latest_message(self, settings):
        client = _client(settings, FakeOpenAI())
        huge = {"role": "user", "content": "x" * 10_000}
        kept = client.truncate_messages([{"role": "system", "content": "s"}, huge])
        assert kept[-1] is huge
