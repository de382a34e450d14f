"""Chat events emitted by the orchestrator and their SSE encoding."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

EVENT_START = "start"
EVENT_DELTA = "delta"
EVENT_TOOL_CALL = "tool_call"
EVENT_TOOL_RESULTS = "tool_results"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"


@dataclass
class ChatEvent:
    event: str
    data: dict = field(default_factory=dict)

    def to_sse(self) -> str:
        return format_sse(self.event, json.dumps(self.data, ensure_ascii=False, default=str))


def format_sse(event: str, data: str) -> str:
    """Format SSE message with multi-line support."""
    data_lines = "\n".join(f"data: {line}" for line in data.split("\n"))
    return f"event: {event}\n{data_lines}\n\n"
