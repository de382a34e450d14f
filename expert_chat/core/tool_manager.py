"""Tool manager: a persona's skill tools, dispatched by function name.

Execution never raises: unknown tools, bad arguments and sandbox failures
come back as ``ToolCallResult(success=False)`` so the model can read the
error and carry on.
"""

from __future__ import annotations

import json
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from expert_chat.core.logging import get_logger
from expert_chat.skills.loader import LoadedSkill, SkillLoader, SkillToolDefinition

logger = get_logger(__name__)

DEFAULT_RESULT_MAX_CHARS = 4000


class ToolCallResult:
    """Outcome of one tool call, ready to be fed back to the model."""

    __slots__ = ("tool_call_id", "tool_name", "success", "data", "error", "duration_ms", "timestamp")

    def __init__(
        self,
        tool_call_id: str,
        tool_name: str,
        *,
        success: bool = True,
        data: Any = None,
        error: str | None = None,
        duration_ms: int = 0,
    ) -> None:
        self.tool_call_id = tool_call_id
        self.tool_name = tool_name
        self.success = success
        self.data = data
        self.error = error
        self.duration_ms = duration_ms
        self.timestamp = datetime.now(UTC).isoformat()

    def to_content(self) -> str:
        if not self.success:
            return json.dumps({"success": False, "error": self.error}, ensure_ascii=False)
        return json.dumps({"success": True, "data": self.data}, ensure_ascii=False, default=str)

    def to_tool_message(self, max_length: int = DEFAULT_RESULT_MAX_CHARS) -> dict:
        content = self.to_content()
        if len(content) > max_length:
            content = f"{content[:max_length]}\n...[truncated, original {len(content)} chars]"
        return {"role": "tool", "tool_call_id": self.tool_call_id, "name": self.tool_name, "content": content}

    def to_dict(self) -> dict:
        return {
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


def parse_arguments(raw: str | dict | None) -> dict:
    """Tool arguments as produced by the model; malformed JSON becomes ``{}``."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("tool_arguments_invalid", preview=raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def format_tool_results(
    results: Sequence[ToolCallResult],
    max_length: int = DEFAULT_RESULT_MAX_CHARS,
) -> list[dict]:
    return [r.to_tool_message(max_length) for r in results]


class ToolManager:
    def __init__(self, loader: SkillLoader, persona_id: str) -> None:
        self.loader = loader
        self.persona_id = persona_id
        self.skills: list[LoadedSkill] = []
        self._tools: dict[str, tuple[SkillToolDefinition, LoadedSkill]] = {}
        self.initialized = False

    async def initialize(self) -> None:
        if self.initialized:
            return
        self.skills = await self.loader.load_skills_for_persona(self.persona_id)
        self._tools = {tool.id: (tool, skill) for skill in self.skills for tool in skill.tools}
        self.initialized = True
        logger.info("tool_manager_initialized", persona_id=self.persona_id, tools=len(self._tools))

    async def reload(self) -> None:
        for skill in self.skills:
            self.loader.invalidate_cache(skill.id)
        self.initialized = False
        await self.initialize()

    def has_tools(self) -> bool:
        return bool(self._tools)

    def get_tool_definitions(self) -> list[dict]:
        """OpenAI function definitions, without execution metadata."""
        return [tool.openai_schema() for tool, _ in self._tools.values()]

    def get_skill_list(self) -> list[dict]:
        return [
            {
                "id": skill.id,
                "name": skill.name,
                "description": skill.description,
                "tools": [tool.tool_name for tool in skill.tools],
            }
            for skill in self.skills
        ]

    def get_skill_catalog(self) -> list[LoadedSkill]:
        return list(self.skills)

    # ── Execution ────────────────────────────────────────────────

    async def execute_tool(
        self,
        name: str,
        params: dict | None = None,
        context: dict | None = None,
        *,
        tool_call_id: str = "",
    ) -> ToolCallResult:
        entry = self._tools.get(name)
        if entry is None:
            logger.warning("tool_not_found", tool_name=name, persona_id=self.persona_id)
            return ToolCallResult(tool_call_id, name, success=False, error=f"Tool not found: {name}")

        tool, skill = entry
        started = time.perf_counter()
        try:
            data = await self.loader.execute_skill_tool(
                skill.id,
                tool.tool_name,
                params or {},
                context or {},
                config=skill.config,
            )
        except Exception as e:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.warning(
                "tool_execution_error",
                tool_name=tool.tool_name,
                skill_id=skill.id,
                error=str(e),
                duration_ms=duration_ms,
            )
            return ToolCallResult(tool_call_id, name, success=False, error=str(e), duration_ms=duration_ms)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info("tool_executed", tool_name=tool.tool_name, skill_id=skill.id, duration_ms=duration_ms)
        return ToolCallResult(tool_call_id, name, data=data, duration_ms=duration_ms)

    async def execute_tool_calls(self, tool_calls: Sequence[dict], context: dict | None = None) -> list[ToolCallResult]:
        """Run OpenAI-style tool calls one after another."""
        results: list[ToolCallResult] = []
        for call in tool_calls:
            function = call.get("function") or {}
            results.append(
                await self.execute_tool(
                    function.get("name", ""),
                    parse_arguments(function.get("arguments")),
                    context,
                    tool_call_id=call.get("id", ""),
                )
            )
        return results
