"""Persona configuration schemas (immutable per load)."""

from pydantic import BaseModel, ConfigDict, Field


class ModelConfig(BaseModel):
    """Everything the LLM client needs to reach one model."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str
    model_name: str
    provider_name: str = ""
    base_url: str
    api_key: str
    max_tokens: int = 4096
    context_size: int = 128_000
    timeout_seconds: float = 60.0


class Soul(BaseModel):
    model_config = ConfigDict(frozen=True)

    core_values: tuple[str, ...] = ()
    behavioral_guidelines: tuple[str, ...] = ()
    taboos: tuple[str, ...] = ()
    emotional_tone: str = "warm, sincere"
    speaking_style: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.core_values or self.behavioral_guidelines or self.taboos)


class PersonaConfig(BaseModel):
    """Persona + soul + model bindings, as loaded by the config loader."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    introduction: str | None = None
    prompt_template: str | None = None
    soul: Soul = Field(default_factory=Soul)
    expressive: ModelConfig
    reflective: ModelConfig | None = None
    context_threshold: float = 0.7
    temperature: float = 0.7

    def base_template(self) -> str:
        return self.prompt_template or self.introduction or f"You are {self.name}."
