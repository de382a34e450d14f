"""Chat request/response schemas."""

from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    user_id: str = Field(min_length=1, max_length=32)
    content: str = Field(min_length=1, max_length=20_000)
    model_id: str | None = None  # Overrides the persona's expressive model


class TokenUsageRead(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatResponse(BaseModel):
    message_id: str
    topic_id: str | None = None
    is_new_topic: bool = False
    content: str
    usage: TokenUsageRead
    latency_ms: int
    model: str


class TopicEndRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=32)
