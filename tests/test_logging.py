"""Tests for the logging processors and turn context binding."""

import pytest

from expert_chat.core.logging import (
    add_chat_context,
    bound_turn,
    persona_id_var,
    redact_secrets,
    turn_id_var,
    user_id_var,
)


class TestProcessors:
    def test_context_vars_are_added(self):
        with bound_turn("p1", "u1", "t1"):
            event = add_chat_context(None, "info", {"event": "x"})
        assert event == {"event": "x", "persona_id": "p1", "user_id": "u1", "turn_id": "t1"}

    def test_explicit_fields_win(self):
        with bound_turn("p1", "u1"):
            event = add_chat_context(None, "info", {"event": "x", "user_id": "other"})
        assert event["user_id"] == "other"
        assert "turn_id" not in event

    def test_secrets_are_redacted(self):
        event = redact_secrets(None, "info", {"event": "x", "api_key": "sk-live", "password": "", "model": "m"})
        assert event == {"event": "x", "api_key": "***", "password": "", "model": "m"}


class TestBoundTurn:
    def test_restores_previous_values(self):
        token = persona_id_var.set("outer")
        try:
            with bound_turn("inner", "u1", "t1"):
                assert persona_id_var.get() == "inner"
            assert persona_id_var.get() == "outer"
            assert user_id_var.get() is None
            assert turn_id_var.get() is None
        finally:
            persona_id_var.reset(token)

    def test_restores_on_error(self):
        with pytest.raises(RuntimeError), bound_turn("p1", "u1"):
            raise RuntimeError("boom")
        assert persona_id_var.get() is None
