"""LLM client for OpenAI-compatible chat completion endpoints.

Serves two roles, each possibly bound to a different provider:
- expressive: the persona's conversational voice (streaming, tool calls)
- reflective: self-evaluation, topic analysis, compression (non-streaming)

Retries are owned here rather than by the SDK (which is built with
``max_retries=0``) so the backoff schedule stays long and predictable:
attempt k waits ``min(base * 2**(k-1), cap)`` seconds.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar

import httpx
from openai import APIConnectionError, AsyncOpenAI

from expert_chat.config import Settings, get_settings
from expert_chat.core.logging import get_logger
from expert_chat.core.tokens import HeuristicTokenEstimator, TokenEstimator
from expert_chat.schemas.persona import ModelConfig

logger = get_logger(__name__)

T = TypeVar("T")

Role = Literal["expressive", "reflective"]

CONTEXT_USAGE_RATIO = 0.8

_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "econnreset",
    "etimedout",
    "econnrefused",
    "enotfound",
    "epipe",
    "econnaborted",
    "socket hang up",
    "connection reset",
    "connection refused",
    "broken pipe",
    "too many requests",
)
_HTTP_5XX_RE = re.compile(r"\bhttp 5\d\d\b")
_RETRYABLE_STATUS = {429, 502, 503, 504}


class LLMCallError(Exception):
    """Raised when an LLM call fails for good."""

    def __init__(self, message: str, *, attempts: int, errors: list[BaseException]) -> None:
        self.attempts = attempts
        self.errors = errors
        super().__init__(message)


@dataclass
class LLMResponse:
    content: str
    tool_calls: list[dict] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    model: str = ""
    finish_reason: str | None = None


@dataclass
class StreamEvent:
    """One piece of information decoded from a streaming response."""

    kind: str  # "delta", "tool_calls", "usage"
    data: Any = None


ClientFactory = Callable[[ModelConfig], Any]


def is_retryable_error(exc: BaseException) -> bool:
    """Classify transient upstream failures (network, throttling, 5xx, timeouts)."""
    if isinstance(exc, (APIConnectionError, httpx.TransportError, ConnectionError, TimeoutError)):
        return True

    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status in _RETRYABLE_STATUS or status >= 500

    code = getattr(exc, "code", None)
    message = f"{code or ''} {exc}".lower()
    if any(marker in message for marker in _RETRYABLE_MARKERS):
        return True
    return bool(_HTTP_5XX_RE.search(message))


def backoff_delay(attempt: int, base: float = 10.0, cap: float = 120.0) -> float:
    """Delay in seconds before retrying after failed attempt ``attempt`` (1-based)."""
    return min(base * 2 ** (attempt - 1), cap)


_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def parse_json_object(raw: str | None) -> dict | None:
    """Extract the outermost JSON object from model output (code fences, prose around it)."""
    if not raw:
        return None
    match = _JSON_OBJECT_RE.search(raw)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _default_client_factory(model: ModelConfig) -> AsyncOpenAI:
    return AsyncOpenAI(
        api_key=model.api_key,
        base_url=model.base_url,
        timeout=httpx.Timeout(model.timeout_seconds, connect=10.0),
        max_retries=0,
    )


def _usage_dict(usage: Any) -> dict[str, int]:
    if usage is None:
        return {}
    prompt = getattr(usage, "prompt_tokens", 0) or 0
    completion = getattr(usage, "completion_tokens", 0) or 0
    total = getattr(usage, "total_tokens", 0) or prompt + completion
    return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": total}


class LLMClient:
    """Talks to the expressive and reflective models of one persona."""

    def __init__(
        self,
        expressive: ModelConfig,
        reflective: ModelConfig | None = None,
        *,
        settings: Settings | None = None,
        estimator: TokenEstimator | None = None,
        client_factory: ClientFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.expressive = expressive
        self.reflective = reflective
        self.settings = settings or get_settings()
        self.estimator = estimator or HeuristicTokenEstimator()
        self._client_factory = client_factory or _default_client_factory
        self._clients: dict[str, Any] = {}
        self._sleep = sleep

    # ── Model resolution ─────────────────────────────────────────

    def model_for(self, role: Role) -> ModelConfig:
        if role == "reflective" and self.reflective is not None:
            return self.reflective
        return self.expressive

    def with_expressive(self, model: ModelConfig) -> LLMClient:
        """Copy of this client with a different expressive model (per-turn override)."""
        clone = LLMClient(
            model,
            self.reflective,
            settings=self.settings,
            estimator=self.estimator,
            client_factory=self._client_factory,
            sleep=self._sleep,
        )
        clone._clients = self._clients
        return clone

    def _client(self, model: ModelConfig) -> Any:
        client = self._clients.get(model.model_id)
        if client is None:
            client = self._client_factory(model)
            self._clients[model.model_id] = client
        return client

    def _build_request(
        self,
        model: ModelConfig,
        messages: list[dict],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        tools: list[dict] | None = None,
        tool_choice: str | dict | None = None,
        stream: bool = False,
        timeout: float | None = None,
    ) -> dict:
        request: dict[str, Any] = {
            "model": model.model_name,
            "messages": messages,
            "temperature": (
                temperature if temperature is not None else self.settings.llm_default_temperature
            ),
            "max_tokens": max_tokens or model.max_tokens or self.settings.llm_default_max_tokens,
        }
        if tools:
            request["tools"] = tools
            if tool_choice is not None:
                request["tool_choice"] = tool_choice
        if stream:
            request["stream"] = True
            request["stream_options"] = {"include_usage": True}
        if timeout is not None:
            request["timeout"] = timeout
        return request

    # ── Non-streaming ────────────────────────────────────────────

    async def call(
        self,
        messages: list[dict],
        *,
        role: Role = "expressive",
        temperature: float | None = None,
        max_tokens: int | None = None,
        tools: list[dict] | None = None,
        tool_choice: str | dict | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        """Single non-streaming completion. No retries."""
        model = self.model_for(role)
        request = self._build_request(
            model,
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            tools=tools,
            tool_choice=tool_choice,
            timeout=timeout,
        )
        completion = await self._client(model).chat.completions.create(**request)

        if not completion.choices:
            raise LLMCallError(
                f"Malformed response from {model.model_name}: no choices",
                attempts=1,
                errors=[],
            )
        message = completion.choices[0].message
        tool_calls = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.function.name, "arguments": tc.function.arguments or ""},
            }
            for tc in (message.tool_calls or [])
        ]
        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            usage=_usage_dict(getattr(completion, "usage", None)),
            model=getattr(completion, "model", None) or model.model_name,
            finish_reason=completion.choices[0].finish_reason,
        )

    async def _retrying(self, operation: Callable[[], Awaitable[T]], max_retries: int | None = None) -> T:
        max_retries = max_retries or self.settings.llm_max_retries
        errors: list[BaseException] = []

        for attempt in range(1, max_retries + 1):
            try:
                return await operation()
            except LLMCallError:
                raise
            except Exception as e:
                errors.append(e)
                if not is_retryable_error(e):
                    logger.warning("llm_call_failed", attempt=attempt, error=str(e), retryable=False)
                    raise LLMCallError(
                        f"LLM call failed after {attempt} attempts: {e}",
                        attempts=attempt,
                        errors=errors,
                    ) from e
                if attempt == max_retries:
                    break
                delay = backoff_delay(
                    attempt,
                    self.settings.llm_backoff_base_seconds,
                    self.settings.llm_backoff_cap_seconds,
                )
                logger.warning(
                    "llm_call_retry",
                    attempt=attempt,
                    max_retries=max_retries,
                    delay_seconds=delay,
                    error=str(e),
                )
                await self._sleep(delay)

        last = errors[-1]
        logger.error("llm_call_exhausted", attempts=max_retries, error=str(last))
        raise LLMCallError(
            f"LLM call failed after {max_retries} attempts: {last}",
            attempts=max_retries,
            errors=errors,
        ) from last

    async def call_with_retry(
        self,
        messages: list[dict],
        *,
        max_retries: int | None = None,
        **options: Any,
    ) -> LLMResponse:
        return await self._retrying(lambda: self.call(messages, **options), max_retries)

    async def call_expressive(self, messages: list[dict], **options: Any) -> LLMResponse:
        return await self.call_with_retry(messages, role="expressive", **options)

    async def call_reflective(self, messages: list[dict], **options: Any) -> LLMResponse:
        """Reflective call: low temperature, generous timeout."""
        model = self.model_for("reflective")
        options.setdefault("temperature", 0.3)
        options.setdefault(
            "timeout",
            max(model.timeout_seconds, self.settings.reflective_min_timeout_seconds),
        )
        return await self.call_with_retry(messages, role="reflective", **options)

    async def call_expressive_with_tools(
        self,
        messages: list[dict],
        tools: list[dict],
        **options: Any,
    ) -> LLMResponse:
        return await self.call_with_retry(
            messages,
            role="expressive",
            tools=tools,
            tool_choice="auto" if tools else None,
            **options,
        )

    # ── Streaming ────────────────────────────────────────────────

    async def call_stream(
        self,
        messages: list[dict],
        *,
        role: Role = "expressive",
        temperature: float | None = None,
        max_tokens: int | None = None,
        tools: list[dict] | None = None,
        tool_choice: str | dict | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as delta / tool_calls / usage events.

        Opening the stream is retried like ``call_with_retry``; once chunks
        flow, failures propagate to the caller. Tool-call fragments are
        accumulated by index and emitted once, sorted, when the stream ends.
        """
        model = self.model_for(role)
        if tools and tool_choice is None:
            tool_choice = "auto"
        request = self._build_request(
            model,
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            tools=tools,
            tool_choice=tool_choice,
            stream=True,
        )
        client = self._client(model)
        stream = await self._retrying(lambda: client.chat.completions.create(**request))

        tool_calls_acc: dict[int, dict] = {}
        try:
            async for chunk in stream:
                usage = getattr(chunk, "usage", None)
                if usage:
                    yield StreamEvent("usage", _usage_dict(usage))

                choice = chunk.choices[0] if chunk.choices else None
                if not choice:
                    continue
                delta = choice.delta

                if delta.content:
                    yield StreamEvent("delta", delta.content)

                if delta.tool_calls:
                    for tc in delta.tool_calls:
                        idx = tc.index
                        if idx not in tool_calls_acc:
                            tool_calls_acc[idx] = {"id": "", "name": "", "arguments": ""}
                        if tc.id:
                            tool_calls_acc[idx]["id"] = tc.id
                        if tc.function and tc.function.name:
                            tool_calls_acc[idx]["name"] = tc.function.name
                        if tc.function and tc.function.arguments:
                            tool_calls_acc[idx]["arguments"] += tc.function.arguments
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

        calls = [
            {
                "id": acc["id"],
                "type": "function",
                "function": {"name": acc["name"], "arguments": acc["arguments"]},
            }
            for _, acc in sorted(tool_calls_acc.items())
            if acc["id"] and acc["name"]
        ]
        if calls:
            yield StreamEvent("tool_calls", calls)

    # ── Token budget ─────────────────────────────────────────────

    def estimate_tokens(self, messages: list[dict]) -> int:
        return self.estimator.estimate_messages(messages)

    def truncate_messages(self, messages: list[dict], max_tokens: int | None = None) -> list[dict]:
        """Keep system messages plus the newest others within 80% of the context window."""
        context = max_tokens or self.expressive.context_size or self.settings.default_context_size
        budget = int(context * CONTEXT_USAGE_RATIO)

        if self.estimate_tokens(messages) <= budget:
            return messages

        system = [m for m in messages if m.get("role") == "system"]
        others = [m for m in messages if m.get("role") != "system"]
        remaining = budget - self.estimate_tokens(system)

        kept: list[dict] = []
        for msg in reversed(others):
            cost = self.estimate_tokens([msg])
            if kept and cost > remaining:
                break
            kept.append(msg)
            remaining -= cost
        kept.reverse()

        logger.info(
            "context_truncated",
            original_messages=len(messages),
            kept_messages=len(system) + len(kept),
            budget_tokens=budget,
        )
        return system + kept
