"""Memory schemas: compression, topic partitions, self-reflection, topic shifts."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ── Compression ──────────────────────────────────────────────────────


class CompressionCheck(BaseModel):
    need_compress: bool
    reason: str
    token_count: int = 0
    turn_count: int = 0
    threshold: int = 0


class TopicPartition(BaseModel):
    """One topic as returned by the partitioning model call."""

    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    summary: str | None = ""
    start_index: int = Field(alias="startIndex", ge=0)
    end_index: int = Field(alias="endIndex", ge=0)
    keywords: list[str] | None = None
    category: str | None = "other"


class UserInfo(BaseModel):
    """User attributes stated explicitly in a transcript."""

    model_config = ConfigDict(populate_by_name=True)

    gender: str | None = None
    age: int | None = None
    occupation: str | None = None
    preferred_name: str | None = Field(default=None, alias="preferredName")
    location: str | None = None

    @field_validator("age", mode="before")
    @classmethod
    def _coerce_age(cls, value):
        if value in (None, ""):
            return None
        try:
            age = int(value)
        except (TypeError, ValueError):
            return None
        return age if 0 < age < 130 else None

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())


class CompressionResult(BaseModel):
    compressed: bool
    reason: str = ""
    topic_ids: list[str] = Field(default_factory=list)
    archived_turns: int = 0
    used_fallback: bool = False


# ── Self-reflection ──────────────────────────────────────────────────


class ScoreBreakdown(BaseModel):
    value_alignment: float = 7
    behavior_adherence: float = 7
    taboo_avoidance: float = 10
    tone: float = 7


class InnerVoice(BaseModel):
    """Self-evaluation of one assistant response."""

    score: float
    breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    rationale: str = ""
    advice: str = ""
    monologue: str = ""
    error: str | None = None


# ── Topic shift ──────────────────────────────────────────────────────


class TopicShift(BaseModel):
    should_switch: bool = False
    is_new_topic: bool = False
    confidence: float = 0.0
    reason: str = ""
    suggested_title: str | None = None
