"""SKILL.md parsing: metadata, tool sections and parameter lists.

Parameter lists use the form::

    - `city` (string, required): City to look up
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_DESCRIPTION_RE = re.compile(r"##\s*Description\s*\n+([^#]+)", re.IGNORECASE)
_FRONTMATTER_RE = re.compile(r"^---\s*\n([\s\S]*?)\n---")
_TOOLS_SECTION_RE = re.compile(r"^##\s+(?:Tools|Commands)[^\n]*\n([\s\S]*?)(?=^##\s|\Z)", re.IGNORECASE | re.MULTILINE)
_TOOL_RE = re.compile(r"^###\s+(\w+)\s*\n([\s\S]*?)(?=^###\s|\Z)", re.MULTILINE)
_PARAM_RE = re.compile(r"[-*]\s+`(\w+)`\s*\(([^)]+)\):\s*(.+)")

FIRST_LINE_MAX_CHARS = 100


class SkillInfo(BaseModel):
    name: str = ""
    description: str = ""
    version: str = ""
    author: str = ""
    tags: list[str] = Field(default_factory=list)


class MarkdownTool(BaseModel):
    name: str
    description: str
    parameters: dict


def _frontmatter_value(block: str, key: str) -> str | None:
    match = re.search(rf"^{key}:\s*(.+)$", block, re.MULTILINE)
    return match.group(1).strip().strip("\"'") if match else None


def parse_skill_md(content: str | None) -> SkillInfo:
    info = SkillInfo()
    if not content:
        return info

    if title := _TITLE_RE.search(content):
        info.name = title.group(1).strip()
    if desc := _DESCRIPTION_RE.search(content):
        info.description = desc.group(1).strip()

    if fm := _FRONTMATTER_RE.match(content):
        block = fm.group(1)
        info.name = _frontmatter_value(block, "name") or info.name
        info.description = _frontmatter_value(block, "description") or info.description
        info.version = _frontmatter_value(block, "version") or ""
        info.author = _frontmatter_value(block, "author") or ""
        tags = _frontmatter_value(block, "tags")
        if tags:
            info.tags = [t.strip().strip("\"'") for t in tags.strip("[]").split(",") if t.strip()]
    return info


def parse_parameters(description: str) -> dict:
    """JSON-schema object built from a backtick parameter list."""
    properties: dict[str, dict] = {}
    required: list[str] = []
    for match in _PARAM_RE.finditer(description or ""):
        name, type_info, desc = match.groups()
        parts = [p.strip() for p in type_info.split(",")]
        properties[name] = {"type": parts[0] or "string", "description": desc.strip()}
        if "required" in parts:
            required.append(name)
    return {"type": "object", "properties": properties, "required": required}


def first_line(text: str) -> str:
    line = text.strip().split("\n", 1)[0].strip()
    if len(line) > FIRST_LINE_MAX_CHARS:
        return line[:FIRST_LINE_MAX_CHARS] + "..."
    return line


def parse_tools_section(markdown: str | None) -> list[MarkdownTool]:
    """Tools declared as ``### name`` entries under a ``## Tools`` heading."""
    if not markdown:
        return []
    section = _TOOLS_SECTION_RE.search(markdown)
    if not section:
        return []
    return [
        MarkdownTool(
            name=match.group(1),
            description=first_line(match.group(2)),
            parameters=parse_parameters(match.group(2)),
        )
        for match in _TOOL_RE.finditer(section.group(1))
    ]
