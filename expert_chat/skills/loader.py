"""Skill loader: turns enabled skills into model tools and runs them sandboxed.

Each tool call spawns a fresh interpreter running ``runner.py``. The child
gets a minimal environment (allow-listed variables plus ``SKILL_*``), a
wall-clock timeout and an address-space limit, and answers with a single
tagged JSON document on stdout.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from expert_chat.config import Settings, get_settings
from expert_chat.core.logging import get_logger
from expert_chat.models.skill import Skill, SkillTool
from expert_chat.services.store import ConversationStore
from expert_chat.skills.markdown import parse_parameters, parse_skill_md, parse_tools_section

logger = get_logger(__name__)

RUNNER_PATH = Path(__file__).with_name("runner.py")

ENV_ALLOWLIST = ("PATH", "HOME", "TMPDIR", "LANG", "TZ")
RESERVED_ENV_VARS = frozenset({"SKILL_ID", "SKILL_PATH", "SKILL_CONFIG", "SKILL_MEMORY_LIMIT_MB"})

STDERR_PREVIEW_CHARS = 2000


class SkillExecutionError(Exception):
    """Raised when a sandboxed skill call fails (spawn, timeout, crash, error result)."""

    def __init__(self, skill_id: str, tool_name: str, message: str) -> None:
        self.skill_id = skill_id
        self.tool_name = tool_name
        super().__init__(message)


# ── Definitions ──────────────────────────────────────────────────────


class SkillToolDefinition(BaseModel):
    """A tool as the model sees it, plus the metadata needed to run it."""

    id: str  # function name sent to the model
    skill_id: str
    skill_name: str
    tool_name: str
    description: str = ""
    parameters: dict = Field(default_factory=lambda: {"type": "object", "properties": {}, "required": []})

    def openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def meta(self) -> dict:
        return {
            "tool_id": self.id,
            "skill_id": self.skill_id,
            "skill_name": self.skill_name,
            "tool_name": self.tool_name,
        }

    def with_meta(self) -> dict:
        return {**self.openai_schema(), "_meta": self.meta()}


class LoadedSkill(BaseModel):
    id: str
    name: str
    description: str = ""
    source_path: str | None = None
    config: dict = Field(default_factory=dict)
    tools: list[SkillToolDefinition] = Field(default_factory=list)


def normalize_parameters(raw: Any) -> dict:
    """Coerce stored parameter definitions into a JSON-schema object."""
    empty = {"type": "object", "properties": {}, "required": []}
    if not raw:
        return empty
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return empty
    if not isinstance(raw, dict):
        return empty

    if isinstance(raw.get("parameters"), dict):
        return normalize_parameters(raw["parameters"])
    if isinstance(raw.get("properties"), dict):
        return {
            "type": "object",
            "properties": raw["properties"],
            "required": list(raw.get("required") or []),
        }
    if raw.get("type") == "object":
        return {**empty, **raw}
    return empty


# ── Loader ───────────────────────────────────────────────────────────


class SkillLoader:
    def __init__(
        self,
        store: ConversationStore,
        *,
        settings: Settings | None = None,
        runner_path: Path | str = RUNNER_PATH,
        python: str | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.runner_path = str(runner_path)
        self.python = python or sys.executable
        self._tool_cache: dict[tuple[str, datetime | None], list[SkillToolDefinition]] = {}
        self._source_paths: dict[str, str | None] = {}

    # ── Loading ──────────────────────────────────────────────────

    async def load_skills_for_persona(self, persona_id: str) -> list[LoadedSkill]:
        """Enabled, active skills of a persona with their tool definitions."""
        skills: list[LoadedSkill] = []
        for skill, persona_config in await self.store.list_enabled_skills(persona_id):
            try:
                tools = await self._tools_for(skill)
                config = await self.get_skill_config(skill.id, persona_config)
            except Exception as e:
                logger.warning("skill_load_failed", skill_id=skill.id, error=str(e))
                continue

            self._source_paths[skill.id] = skill.source_path
            skills.append(
                LoadedSkill(
                    id=skill.id,
                    name=skill.name,
                    description=skill.description or parse_skill_md(skill.skill_md).description,
                    source_path=skill.source_path,
                    config=config,
                    tools=tools,
                )
            )

        logger.info(
            "skills_loaded",
            persona_id=persona_id,
            skills=len(skills),
            tools=sum(len(s.tools) for s in skills),
        )
        return skills

    async def _tools_for(self, skill: Skill) -> list[SkillToolDefinition]:
        key = (skill.id, skill.updated_at)
        cached = self._tool_cache.get(key)
        if cached is not None:
            return cached

        rows = await self.store.list_skill_tools(skill.id)
        if rows:
            tools = [self.convert_tool(row, skill) for row in rows]
        else:
            tools = [
                SkillToolDefinition(
                    id=f"{skill.id}_{md_tool.name}",
                    skill_id=skill.id,
                    skill_name=skill.name,
                    tool_name=md_tool.name,
                    description=md_tool.description,
                    parameters=md_tool.parameters,
                )
                for md_tool in parse_tools_section(skill.skill_md)
            ]

        # Drop entries of older revisions of this skill
        for stale in [k for k in self._tool_cache if k[0] == skill.id]:
            del self._tool_cache[stale]
        self._tool_cache[key] = tools
        return tools

    @staticmethod
    def convert_tool(row: SkillTool, skill: Skill) -> SkillToolDefinition:
        parameters = normalize_parameters(row.parameters)
        if not parameters["properties"] and row.description:
            parsed = parse_parameters(row.description)
            if parsed["properties"]:
                parameters = parsed
        return SkillToolDefinition(
            id=row.id,
            skill_id=skill.id,
            skill_name=skill.name,
            tool_name=row.name,
            description=row.description or "",
            parameters=parameters,
        )

    async def get_skill_config(self, skill_id: str, persona_config: dict | None = None) -> dict:
        """Skill parameters overlaid with the persona-level config."""
        config: dict[str, Any] = {
            name: value for name, value in (await self.store.get_skill_parameters(skill_id)).items() if value is not None
        }
        if isinstance(persona_config, dict):
            config.update(persona_config)
        return config

    def invalidate_cache(self, skill_id: str | None = None) -> None:
        if skill_id is None:
            self._tool_cache.clear()
            self._source_paths.clear()
            return
        for key in [k for k in self._tool_cache if k[0] == skill_id]:
            del self._tool_cache[key]
        self._source_paths.pop(skill_id, None)

    def scan_skills_directory(self) -> list[dict]:
        """Skill directories under the base path that contain a ``skill.py``."""
        base = Path(self.settings.skills_base_path)
        if not base.is_dir():
            return []

        found: list[dict] = []
        for entry in sorted(base.iterdir()):
            if not (entry / "skill.py").is_file():
                continue
            md_file = entry / "SKILL.md"
            info = parse_skill_md(md_file.read_text(encoding="utf-8") if md_file.is_file() else None)
            found.append(
                {
                    "id": entry.name,
                    "path": str(entry),
                    "name": info.name or entry.name,
                    "description": info.description,
                    "version": info.version,
                }
            )
        return found

    # ── Execution ────────────────────────────────────────────────

    def resolve_skill_path(self, skill_id: str, source_path: str | None = None) -> str:
        base = Path(self.settings.skills_base_path)
        if source_path:
            path = Path(source_path)
            return str(path if path.is_absolute() else (base / path).resolve())
        return str((base / skill_id).resolve())

    def build_environment(self, skill_id: str, config: dict, skill_path: str) -> dict[str, str]:
        env = {key: os.environ[key] for key in ENV_ALLOWLIST if key in os.environ}
        env.update(
            {
                "SKILL_ID": skill_id,
                "SKILL_PATH": skill_path,
                "SKILL_CONFIG": json.dumps(config, default=str),
                "SKILL_MEMORY_LIMIT_MB": str(self.settings.skill_memory_limit_mb),
            }
        )
        for key, value in config.items():
            env_key = f"SKILL_{str(key).upper()}"
            if env_key in RESERVED_ENV_VARS:
                logger.warning("skill_env_reserved", skill_id=skill_id, key=str(key))
                continue
            env[env_key] = value if isinstance(value, str) else json.dumps(value, default=str)
        return env

    async def execute_skill_tool(
        self,
        skill_id: str,
        tool_name: str,
        params: dict | None = None,
        context: dict | None = None,
        *,
        config: dict | None = None,
    ) -> Any:
        """Run one tool in a fresh subprocess and return its ``data`` payload."""
        if config is None:
            config = await self.get_skill_config(skill_id)
        if skill_id not in self._source_paths:
            skill = await self.store.get_skill(skill_id)
            self._source_paths[skill_id] = skill.source_path if skill else None
        skill_path = self.resolve_skill_path(skill_id, self._source_paths.get(skill_id))
        env = self.build_environment(skill_id, config, skill_path)
        payload = json.dumps({"params": params or {}, "context": context or {}}, default=str).encode()

        logger.info("skill_execution_started", skill_id=skill_id, tool_name=tool_name, skill_path=skill_path)
        started = time.perf_counter()

        try:
            proc = await asyncio.create_subprocess_exec(
                self.python,
                "-I",
                self.runner_path,
                skill_id,
                tool_name,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise SkillExecutionError(skill_id, tool_name, f"Failed to spawn skill process: {e}") from e

        timeout = self.settings.skill_timeout_seconds
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("skill_timeout", skill_id=skill_id, tool_name=tool_name, timeout=timeout)
            raise SkillExecutionError(
                skill_id, tool_name, f"Skill {skill_id}.{tool_name} timed out after {timeout}s"
            ) from None
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        duration_ms = int((time.perf_counter() - started) * 1000)
        err_text = stderr.decode(errors="replace")
        if err_text:
            logger.debug("skill_stderr", skill_id=skill_id, stderr=err_text[:STDERR_PREVIEW_CHARS])

        try:
            result = json.loads(stdout.decode(errors="replace"))
        except json.JSONDecodeError as e:
            if proc.returncode != 0:
                raise SkillExecutionError(
                    skill_id,
                    tool_name,
                    f"Skill {skill_id} exited with code {proc.returncode}: {err_text[:STDERR_PREVIEW_CHARS]}",
                ) from e
            raise SkillExecutionError(skill_id, tool_name, f"Failed to parse skill output: {e}") from e

        if not isinstance(result, dict) or not result.get("success"):
            error = (result.get("error") if isinstance(result, dict) else None) or "Skill execution failed"
            logger.error(
                "skill_execution_failed",
                skill_id=skill_id,
                tool_name=tool_name,
                error=error,
                stack=(result.get("stack") if isinstance(result, dict) else None),
                duration_ms=duration_ms,
            )
            raise SkillExecutionError(skill_id, tool_name, f"{skill_id}.{tool_name}: {error}")

        logger.info("skill_execution_completed", skill_id=skill_id, tool_name=tool_name, duration_ms=duration_ms)
        return result.get("data")