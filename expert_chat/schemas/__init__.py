"""Pydantic schemas for configuration, memory and API validation."""

from expert_chat.schemas.chat import ChatRequest, ChatResponse, TokenUsageRead, TopicEndRequest
from expert_chat.schemas.memory import (
    CompressionCheck,
    CompressionResult,
    InnerVoice,
    ScoreBreakdown,
    TopicPartition,
    TopicShift,
    UserInfo,
)
from expert_chat.schemas.persona import ModelConfig, PersonaConfig, Soul

__all__ = [
    "ChatRequest",
    "ChatResponse",
    "TokenUsageRead",
    "TopicEndRequest",
    "CompressionCheck",
    "CompressionResult",
    "InnerVoice",
    "ScoreBreakdown",
    "TopicPartition",
    "TopicShift",
    "UserInfo",
    "ModelConfig",
    "PersonaConfig",
    "Soul",
]
