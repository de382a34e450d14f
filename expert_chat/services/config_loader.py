"""Persona config loader: validated, TTL-cached PersonaConfig aggregates."""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from expert_chat.config import Settings, get_settings
from expert_chat.core.logging import get_logger
from expert_chat.models.persona import Persona
from expert_chat.models.provider import AIModel
from expert_chat.schemas.persona import ModelConfig, PersonaConfig, Soul
from expert_chat.services.store import ConversationStore

logger = get_logger(__name__)

DEFAULT_EMOTIONAL_TONE = "warm, sincere"


class PersonaConfigError(Exception):
    """A persona (or one of its models) is missing or malformed."""

    def __init__(self, persona_id: str, message: str) -> None:
        self.persona_id = persona_id
        super().__init__(message)


class PersonaNotFoundError(PersonaConfigError):
    pass


@dataclass
class _CacheEntry:
    config: PersonaConfig
    loaded_at: float


def _as_list(value: list | str | None) -> tuple[str, ...]:
    """Soul lists may be JSON lists, JSON-encoded strings or newline-separated text."""
    if value is None:
        return ()
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return ()
        if stripped.startswith("["):
            try:
                value = json.loads(stripped)
            except json.JSONDecodeError:
                value = stripped.splitlines()
        else:
            value = stripped.splitlines()
    return tuple(str(item).strip() for item in value if str(item).strip())


def extract_soul(persona: Persona) -> Soul:
    return Soul(
        core_values=_as_list(persona.core_values),
        behavioral_guidelines=_as_list(persona.behavioral_guidelines),
        taboos=_as_list(persona.taboos),
        emotional_tone=persona.emotional_tone or DEFAULT_EMOTIONAL_TONE,
        speaking_style=persona.speaking_style or None,
    )


def _validate_base_url(persona_id: str, base_url: str) -> None:
    try:
        url = httpx.URL(base_url)
    except httpx.InvalidURL as e:
        raise PersonaConfigError(persona_id, f"Invalid base_url {base_url!r}: {e}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise PersonaConfigError(persona_id, f"Invalid base_url {base_url!r}")


class PersonaConfigLoader:
    """Loads PersonaConfig aggregates and caches them with a TTL."""

    def __init__(
        self,
        store: ConversationStore,
        *,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.ttl = self.settings.persona_config_ttl_seconds
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}

    async def load(self, persona_id: str) -> PersonaConfig:
        entry = self._cache.get(persona_id)
        if entry and self._clock() - entry.loaded_at < self.ttl:
            return entry.config

        config = await self._load_from_store(persona_id)
        self._cache[persona_id] = _CacheEntry(config=config, loaded_at=self._clock())
        logger.info(
            "persona_config_loaded",
            persona_id=persona_id,
            expressive_model=config.expressive.model_name,
            reflective_model=config.reflective.model_name if config.reflective else None,
        )
        return config

    async def get_model_config(self, model_id: str, *, persona_id: str = "") -> ModelConfig:
        model = await self.store.get_model(model_id)
        if model is None:
            raise PersonaConfigError(persona_id, f"Model not found: {model_id}")
        return self._model_config(persona_id, model)

    def clear_cache(self, persona_id: str | None = None) -> None:
        if persona_id is None:
            self._cache.clear()
        else:
            self._cache.pop(persona_id, None)
        logger.info("persona_config_cache_cleared", persona_id=persona_id)

    def cache_stats(self) -> dict:
        now = self._clock()
        return {
            "size": len(self._cache),
            "ttl_seconds": self.ttl,
            "entries": [
                {"persona_id": pid, "age_seconds": round(now - entry.loaded_at, 1)}
                for pid, entry in self._cache.items()
            ],
        }

    # ── Internals ────────────────────────────────────────────────

    async def _load_from_store(self, persona_id: str) -> PersonaConfig:
        persona = await self.store.get_persona(persona_id)
        if persona is None:
            raise PersonaNotFoundError(persona_id, f"Persona not found: {persona_id}")
        if not persona.is_active:
            raise PersonaNotFoundError(persona_id, f"Persona is inactive: {persona_id}")

        missing = [
            name for name in ("id", "name", "expressive_model_id") if not getattr(persona, name)
        ]
        if missing:
            raise PersonaConfigError(
                persona_id,
                f"Persona {persona_id} is missing required fields: {', '.join(missing)}",
            )

        expressive = await self.get_model_config(persona.expressive_model_id, persona_id=persona_id)

        reflective = None
        if persona.reflective_model_id:
            reflective = await self.get_model_config(persona.reflective_model_id, persona_id=persona_id)

        return PersonaConfig(
            id=persona.id,
            name=persona.name,
            introduction=persona.introduction,
            prompt_template=persona.prompt_template,
            soul=extract_soul(persona),
            expressive=expressive,
            reflective=reflective,
            context_threshold=persona.context_threshold or self.settings.compression_threshold_ratio,
            temperature=persona.temperature if persona.temperature is not None else 0.7,
        )

    def _model_config(self, persona_id: str, model: AIModel) -> ModelConfig:
        provider = model.provider
        if provider is None:
            raise PersonaConfigError(persona_id, f"Model {model.id} has no provider")
        if not model.is_active:
            raise PersonaConfigError(persona_id, f"Model {model.id} is inactive")
        if not provider.is_active:
            raise PersonaConfigError(persona_id, f"Provider {provider.name} of model {model.id} is inactive")

        missing = [
            name
            for name, value in (
                ("base_url", provider.base_url),
                ("api_key", provider.api_key),
                ("model_name", model.model_name),
            )
            if not value
        ]
        if missing:
            raise PersonaConfigError(
                persona_id,
                f"Model {model.id} is missing required fields: {', '.join(missing)}",
            )
        _validate_base_url(persona_id, provider.base_url)

        return ModelConfig(
            model_id=model.id,
            model_name=model.model_name,
            provider_name=provider.name,
            base_url=provider.base_url.rstrip("/"),
            api_key=provider.api_key,
            max_tokens=model.max_tokens or self.settings.llm_default_max_tokens,
            context_size=model.context_size or self.settings.default_context_size,
            timeout_seconds=provider.timeout_seconds or self.settings.llm_timeout_seconds,
        )
