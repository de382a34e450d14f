"""Skill runner: executed in a fresh child process for every tool call.

Usage: python -I runner.py <skill_id> <tool_name>

Reads ``{"params": ..., "context": ...}`` from stdin, imports ``skill.py``
from ``SKILL_PATH`` and calls ``execute(tool_name, params, context)``
(sync or async). Writes exactly one JSON document to stdout:
``{"success": true, "data": ...}`` or ``{"success": false, "error": ...,
"stack": ...}`` (exit code 1). Anything the skill prints goes to stderr.

Standard library only: this file must not import the application.
"""

import asyncio
import importlib.util
import inspect
import json
import os
import sys
import traceback

SKILL_MODULE_FILE = "skill.py"


def _apply_memory_limit() -> None:
    raw = os.environ.get("SKILL_MEMORY_LIMIT_MB")
    if not raw:
        return
    try:
        import resource
    except ImportError:  # not available on Windows
        return
    limit = int(raw) * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError) as e:
        print(f"[skill-runner] could not apply memory limit: {e}", file=sys.stderr)


def _load_skill_module(skill_id: str):
    skill_path = os.environ.get("SKILL_PATH", "")
    module_file = os.path.join(skill_path, SKILL_MODULE_FILE)
    if not os.path.isfile(module_file):
        raise FileNotFoundError(f"Skill not found: {module_file}")

    spec = importlib.util.spec_from_file_location(f"skill_{skill_id}", module_file)
    module = importlib.util.module_from_spec(spec)
    sys.path.insert(0, skill_path)
    spec.loader.exec_module(module)
    return module


def _run(skill_id: str, tool_name: str, payload: dict):
    module = _load_skill_module(skill_id)
    execute = getattr(module, "execute", None)
    if not callable(execute):
        raise AttributeError("Skill does not define an execute(tool_name, params, context) function")

    result = execute(tool_name, payload.get("params") or {}, payload.get("context") or {})
    if inspect.isawaitable(result):
        result = asyncio.run(_await(result))
    return result


async def _await(awaitable):
    return await awaitable


def main(argv: list[str]) -> int:
    if len(argv) < 3:
        print("Usage: runner.py <skill_id> <tool_name>", file=sys.stderr)
        return 2

    skill_id, tool_name = argv[1], argv[2]
    out = sys.stdout
    # Keep stdout for the single result document
    sys.stdout = sys.stderr

    try:
        _apply_memory_limit()
        raw = sys.stdin.read()
        payload = json.loads(raw) if raw.strip() else {}
        data = _run(skill_id, tool_name, payload)
        out.write(json.dumps({"success": True, "data": data}, default=str))
        out.flush()
        return 0
    except BaseException as e:  # report MemoryError and SystemExit from skills too
        out.write(
            json.dumps(
                {
                    "success": False,
                    "error": str(e) or type(e).__name__,
                    "stack": traceback.format_exc(),
                }
            )
        )
        out.flush()
        return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv))
