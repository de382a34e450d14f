"""Token estimation strategies.

Compression thresholds and context truncation only depend on the
``TokenEstimator`` protocol, so an exact tokenizer can replace the heuristic
without touching them.
"""

from __future__ import annotations

import json
import math
import re
from typing import Protocol, runtime_checkable

# CJK unified ideographs, extension A, compatibility ideographs, kana, hangul, CJK punctuation
_CJK_RE = re.compile(
    "[\u3000-\u303f\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff\uff00-\uffef]"
)

MESSAGE_OVERHEAD_TOKENS = 4


@runtime_checkable
class TokenEstimator(Protocol):
    def estimate_text(self, text: str) -> int: ...

    def estimate_messages(self, messages: list[dict]) -> int: ...


class HeuristicTokenEstimator:
    """~1 token per 1.5 CJK chars, ~1 per 4 other chars, 4 tokens per message."""

    def __init__(
        self,
        *,
        cjk_chars_per_token: float = 1.5,
        other_chars_per_token: float = 4.0,
        message_overhead: int = MESSAGE_OVERHEAD_TOKENS,
    ) -> None:
        self.cjk_chars_per_token = cjk_chars_per_token
        self.other_chars_per_token = other_chars_per_token
        self.message_overhead = message_overhead

    def estimate_text(self, text: str) -> int:
        if not text:
            return 0
        cjk = len(_CJK_RE.findall(text))
        other = len(text) - cjk
        return math.ceil(cjk / self.cjk_chars_per_token + other / self.other_chars_per_token)

    def estimate_messages(self, messages: list[dict]) -> int:
        total = 0
        for msg in messages:
            total += self.message_overhead
            content = msg.get("content")
            if isinstance(content, str):
                total += self.estimate_text(content)
            elif content:
                total += self.estimate_text(json.dumps(content, ensure_ascii=False))
            if msg.get("name"):
                total += self.estimate_text(msg["name"])
            if msg.get("tool_calls"):
                total += self.estimate_text(json.dumps(msg["tool_calls"], ensure_ascii=False))
        return total
