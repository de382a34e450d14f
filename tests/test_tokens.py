"""Tests for token estimation strategies."""

from __future__ import annotations

from expert_chat.core.tokens import HeuristicTokenEstimator, TokenEstimator

# ── HeuristicTokenEstimator ──────────────────────────────────────────


class TestHeuristicTokenEstimator:
    def test_empty_text_is_zero(self):
        assert HeuristicTokenEstimator().estimate_text("") == 0

    def test_latin_text_four_chars_per_token(self):
        est = HeuristicTokenEstimator()
        assert est.estimate_text("abcd") == 1
        assert est.estimate_text("abcde") == 2
        assert est.estimate_text("a" * 400) == 100

    def test_cjk_text_one_and_a_half_chars_per_token(self):
        est = HeuristicTokenEstimator()
        assert est.estimate_text("你好吗") == 2
        assert est.estimate_text("你" * 30) == 20

    def test_mixed_text(self):
        # 2 CJK chars -> 1.33, 4 latin -> 1.0, ceil(2.33) = 3
        assert HeuristicTokenEstimator().estimate_text("你好abcd") == 3

    def test_message_overhead(self):
        est = HeuristicTokenEstimator()
        assert est.estimate_messages([{"role": "user", "content": ""}]) == 4
        assert est.estimate_messages([{"role": "user", "content": "abcd"}]) == 5

    def test_tool_calls_and_name_are_counted(self):
        est = HeuristicTokenEstimator()
        plain = est.estimate_messages([{"role": "assistant", "content": None}])
        with_calls = est.estimate_messages(
            [
                {
                    "role": "assistant",
                    "content": None,
                    "name": "helper",
                    "tool_calls": [{"id": "c1", "function": {"name": "lookup", "arguments": "{}"}}],
                }
            ]
        )
        assert with_calls > plain

    def test_non_string_content_is_serialized(self):
        est = HeuristicTokenEstimator()
        count = est.estimate_messages([{"role": "user", "content": [{"type": "text", "text": "hello"}]}])
        assert count > 4

    def test_appending_never_decreases_estimate(self):
        est = HeuristicTokenEstimator()
        messages: list[dict] = []
        previous = est.estimate_messages(messages)
        for text in ["hi", "", "你好", "a longer English sentence", "x" * 100]:
            messages.append({"role": "user", "content": text})
            current = est.estimate_messages(messages)
            assert current >= previous
            previous = current

    def test_custom_ratios(self):
        est = HeuristicTokenEstimator(other_chars_per_token=2.0, message_overhead=0)
        assert est.estimate_messages([{"role": "user", "content": "abcd"}]) == 2


# ── Protocol ─────────────────────────────────────────────────────────


class TestTokenEstimatorProtocol:
    def test_heuristic_satisfies_protocol(self):
        assert isinstance(HeuristicTokenEstimator(), TokenEstimator)

    def test_any_object_with_both_methods_satisfies_protocol(self):
        class Fixed:
            def estimate_text(self, text: str) -> int:
                return 1

            def estimate_messages(self, messages: list[dict]) -> int:
                return len(messages)

        assert isinstance(Fixed(), TokenEstimator)

    def test_object_missing_a_method_does_not(self):
        class Partial:
            def estimate_text(self, text: str) -> int:
                return 1

        assert not isinstance(Partial(), TokenEstimator)
