"""HTTP tests for the expert endpoints (SSE and JSON)."""

from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from expert_chat.deps import build_app_context
from expert_chat.main import create_app
from fakes import StatusError, text_chunk, usage_chunk


def _parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = block.split("\n")
        event = lines[0].removeprefix("event: ")
        data = "\n".join(line.removeprefix("data: ") for line in lines[1:])
        events.append((event, json.loads(data)))
    return events


@pytest.fixture
async def ctx(settings, session_maker, fake_openai):
    context = build_app_context(settings, session_maker, client_factory=fake_openai.factory)
    yield context
    await context.orchestrator.shutdown()


@pytest.fixture
async def client(settings, ctx):
    app = create_app(settings, context=ctx)
    # ASGITransport does not run the lifespan
    app.state.context = ctx
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


# ── Streaming ────────────────────────────────────────────────────────


class TestStreamEndpoint:
    async def test_sse_event_sequence(self, client, fake_openai, seeded):
        fake_openai.completions.streams.append([text_chunk("Hel"), text_chunk("lo"), usage_chunk(5, 2)])

        response = await client.post(
            f"/api/v1/experts/{seeded.persona_id}/stream",
            json={"user_id": seeded.user_id, "content": "Hi"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert "x-request-id" in response.headers

        events = _parse_sse(response.text)
        assert [name for name, _ in events] == ["start", "delta", "delta", "complete"]
        assert events[1][1] == {"content": "Hel"}
        assert events[-1][1]["content"] == "Hello"
        assert events[-1][1]["message_id"] == events[0][1]["message_id"]

    async def test_model_error_is_an_sse_error_event(self, client, fake_openai, seeded):
        fake_openai.completions.streams.append(StatusError(400, "context too long"))

        response = await client.post(
            f"/api/v1/experts/{seeded.persona_id}/stream",
            json={"user_id": seeded.user_id, "content": "Hi"},
        )

        events = _parse_sse(response.text)
        assert [name for name, _ in events] == ["start", "error"]
        assert "context too long" in events[-1][1]["message"]

    async def test_unknown_persona_is_404(self, client, seeded):
        response = await client.post(
            "/api/v1/experts/missing/stream",
            json={"user_id": seeded.user_id, "content": "Hi"},
        )
        assert response.status_code == 404
        assert "Persona not found" in response.json()["detail"]

    async def test_unknown_override_model_is_422(self, client, seeded):
        response = await client.post(
            f"/api/v1/experts/{seeded.persona_id}/stream",
            json={"user_id": seeded.user_id, "content": "Hi", "model_id": "nope"},
        )
        assert response.status_code == 422
        assert "Model not found" in response.json()["detail"]

    async def test_request_validation(self, client, seeded):
        response = await client.post(
            f"/api/v1/experts/{seeded.persona_id}/stream",
            json={"user_id": seeded.user_id, "content": ""},
        )
        assert response.status_code == 422


# ── JSON endpoints ───────────────────────────────────────────────────


class TestMessageEndpoint:
    async def test_returns_reply(self, client, fake_openai, seeded):
        fake_openai.completions.streams.append([text_chunk("Answer."), usage_chunk(7, 3)])

        response = await client.post(
            f"/api/v1/experts/{seeded.persona_id}/messages",
            json={"user_id": seeded.user_id, "content": "Question?"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["content"] == "Answer."
        assert body["is_new_topic"] is True
        assert body["usage"] == {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}
        assert body["model"] == "chat-model"

    async def test_model_failure_is_502(self, client, fake_openai, seeded):
        fake_openai.completions.streams.append(StatusError(401, "bad key"))

        response = await client.post(
            f"/api/v1/experts/{seeded.persona_id}/messages",
            json={"user_id": seeded.user_id, "content": "Question?"},
        )

        assert response.status_code == 502
        assert "bad key" in response.json()["detail"]

    async def test_unknown_persona_is_404(self, client, seeded):
        response = await client.post(
            "/api/v1/experts/missing/messages",
            json={"user_id": seeded.user_id, "content": "Question?"},
        )
        assert response.status_code == 404


class TestTopicsAndCache:
    async def test_end_topic(self, client, ctx, seeded):
        await client.post(
            f"/api/v1/experts/{seeded.persona_id}/messages",
            json={"user_id": seeded.user_id, "content": "Question?"},
        )
        await ctx.orchestrator.shutdown()

        response = await client.post(
            f"/api/v1/experts/{seeded.persona_id}/topics/end",
            json={"user_id": seeded.user_id},
        )

        assert response.status_code == 204
        assert await ctx.store.get_active_topic(seeded.persona_id, seeded.user_id) is None

    async def test_clear_cache(self, client, ctx, seeded):
        first = await ctx.orchestrator.get_session(seeded.persona_id)

        response = await client.delete(f"/api/v1/experts/{seeded.persona_id}/cache")

        assert response.status_code == 204
        assert await ctx.orchestrator.get_session(seeded.persona_id) is not first


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "background_tasks": 0}
