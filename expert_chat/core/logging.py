"""structlog configuration for the chat service.

Every log line carries whichever of request_id, persona_id, user_id and
turn_id are bound in the current context, so one turn can be followed
across the orchestrator, the LLM client and the background tasks it
spawns. Provider credentials never reach the output.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

import structlog

from expert_chat.config import Settings, get_settings

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
persona_id_var: ContextVar[str | None] = ContextVar("persona_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
turn_id_var: ContextVar[str | None] = ContextVar("turn_id", default=None)

_CONTEXT_FIELDS: tuple[tuple[str, ContextVar[str | None]], ...] = (
    ("request_id", request_id_var),
    ("persona_id", persona_id_var),
    ("user_id", user_id_var),
    ("turn_id", turn_id_var),
)

_SECRET_KEYS = frozenset({"api_key", "authorization", "password"})

_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "uvicorn.access", "sqlalchemy.engine", "aiosqlite")


def add_chat_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Copy bound context vars into the event; explicit kwargs win."""
    for key, var in _CONTEXT_FIELDS:
        value = var.get()
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


def redact_secrets(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    for key in event_dict.keys() & _SECRET_KEYS:
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


@contextmanager
def bound_turn(persona_id: str, user_id: str, turn_id: str | None = None) -> Iterator[None]:
    """Bind turn identifiers for the duration of the block, then restore."""
    tokens: list[tuple[ContextVar[str | None], Token]] = [
        (persona_id_var, persona_id_var.set(persona_id)),
        (user_id_var, user_id_var.set(user_id)),
    ]
    if turn_id is not None:
        tokens.append((turn_id_var, turn_id_var.set(turn_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def setup_logging(settings: Settings | None = None) -> None:
    """Route structlog and stdlib logging through one handler on stdout."""
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        add_chat_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if settings.debug:
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
