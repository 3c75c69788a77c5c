"""
Tests for per-chat conversation histories.

Tokenization is replaced by a whitespace encoder so overflow thresholds are
predictable.
"""

from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest

from chat_cost_guard.core.conversation import ConversationStore, Role, Turn
from chat_cost_guard.core.errors import SummarizationFailed, UnsupportedModel


class WhitespaceEncoding:
    """Encodes one token per whitespace separated word."""

    def encode(self, text):
        return text.split()


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self):
        self.now = datetime(2024, 3, 15, 12, 0)

    def __call__(self):
        return self.now

    def advance(self, minutes):
        self.now += timedelta(minutes=minutes)


@pytest.fixture(autouse=True)
def whitespace_encoding():
    with patch(
        'chat_cost_guard.core.token_counter._get_encoding',
        return_value=WhitespaceEncoding()
    ):
        yield


def make_store(clock, model="gpt-3.5-turbo", max_history_size=15, max_tokens=100):
    return ConversationStore(
        model=model,
        assistant_prompt="You are a helpful assistant.",
        max_history_size=max_history_size,
        max_conversation_age_minutes=180,
        max_tokens=max_tokens,
        clock=clock,
    )


class TestHistoryLifecycle:
    """Test seeding, appending and resetting histories."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = make_store(self.clock)

    def test_new_chat_starts_with_system_prompt(self):
        history = self.store.ensure_active("1")
        assert history.turns == [Turn(Role.SYSTEM, "You are a helpful assistant.")]

    def test_ensure_active_is_idempotent(self):
        first = self.store.ensure_active("1")
        second = self.store.ensure_active("1")
        assert first is second
        assert len(second.turns) == 1

    def test_append_turn(self):
        self.store.append_turn("1", Role.USER, "hello")
        self.store.append_turn("1", Role.ASSISTANT, "hi there")

        assert self.store.messages("1") == [
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
        ]

    def test_named_turn(self):
        self.store.append_turn("1", Role.USER, "hello", name="bob")
        assert self.store.messages("1")[-1] == {"role": "user", "content": "hello", "name": "bob"}

    def test_chats_are_independent(self):
        self.store.append_turn("1", Role.USER, "hello")
        assert len(self.store.ensure_active("2").turns) == 1
        assert len(self.store.ensure_active(1).turns) == 2

    def test_reset_with_custom_prompt(self):
        self.store.append_turn("1", Role.USER, "hello")
        self.store.reset("1", "You are a pirate.")
        assert self.store.messages("1") == [{"role": "system", "content": "You are a pirate."}]

    def test_stale_chat_is_reset(self):
        """Chats idle for longer than the maximum age start over."""
        self.store.append_turn("1", Role.USER, "hello")
        self.clock.advance(181)

        assert self.store.max_age_reached("1")
        assert len(self.store.ensure_active("1").turns) == 1
        assert not self.store.max_age_reached("1")

    def test_recent_chat_is_kept(self):
        self.store.append_turn("1", Role.USER, "hello")
        self.clock.advance(180)

        assert not self.store.max_age_reached("1")
        assert len(self.store.ensure_active("1").turns) == 2

    def test_append_refreshes_age(self):
        self.store.append_turn("1", Role.USER, "hello")
        self.clock.advance(120)
        self.store.append_turn("1", Role.ASSISTANT, "hi")
        self.clock.advance(120)

        assert not self.store.max_age_reached("1")

    def test_age_at_given_time(self):
        self.store.append_turn("1", Role.USER, "hello")
        later = self.clock.now + timedelta(minutes=181)

        assert self.store.max_age_reached("1", now=later)
        assert not self.store.max_age_reached("1")

    def test_unknown_chat_is_not_stale(self):
        assert not self.store.max_age_reached("404")


class TestHistoryStats:
    """Test turn and token counts."""

    def test_stats(self):
        store = make_store(FakeClock())
        store.append_turn("1", Role.USER, "hello there")
        # system: 4 + 1 + 5, user: 4 + 1 + 2, priming: 3
        assert store.stats("1") == (2, 20)

    def test_unsupported_model(self):
        store = make_store(FakeClock(), model="llama-2")
        with pytest.raises(UnsupportedModel):
            store.count_tokens("1")


class TestOverflowPolicy:
    """Test shrinking histories that grew too large."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = make_store(self.clock, max_history_size=3)
        self.store.append_turn("1", Role.USER, "first question")
        self.store.append_turn("1", Role.ASSISTANT, "first answer")

    def test_small_history_untouched(self):
        summarize = Mock()

        assert not self.store.apply_overflow_policy("1", summarize)
        summarize.assert_not_called()
        assert len(self.store.ensure_active("1").turns) == 3

    def test_history_size_overflow_summarizes_once(self):
        """Everything but the newest turn becomes a system summary."""
        self.store.append_turn("1", Role.USER, "second question")
        summarize = Mock(return_value="The user asked a question.")

        assert self.store.apply_overflow_policy("1", summarize)

        summarize.assert_called_once_with([
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": "first question"},
            {"role": "assistant", "content": "first answer"},
        ])
        assert self.store.messages("1") == [
            {"role": "system", "content": "The user asked a question."},
            {"role": "user", "content": "second question"},
        ]

    def test_failed_summary_keeps_newest_turns(self):
        """Without a summary the history is cut to max_history_size turns."""
        self.store.append_turn("1", Role.USER, "second question")
        self.store.append_turn("1", Role.ASSISTANT, "second answer")
        self.store.append_turn("1", Role.USER, "third question")
        summarize = Mock(side_effect=SummarizationFailed("service unavailable"))

        assert self.store.apply_overflow_policy("1", summarize)

        summarize.assert_called_once()
        assert [m["content"] for m in self.store.messages("1")] == [
            "second question", "second answer", "third question"
        ]

    def test_token_overflow(self):
        """Histories leaving no room for the completion are shrunk too."""
        store = make_store(self.clock, max_history_size=15, max_tokens=4080)
        store.append_turn("1", Role.USER, "one two three four five six seven eight nine ten")
        summarize = Mock(return_value="Summary.")

        assert store.needs_overflow("1")
        assert store.apply_overflow_policy("1", summarize)
        assert store.messages("1")[0] == {"role": "system", "content": "Summary."}
        assert store.messages("1")[-1]["content"].startswith("one two")

    def test_other_summary_errors_propagate(self):
        self.store.append_turn("1", Role.USER, "second question")
        summarize = Mock(side_effect=RuntimeError("bug"))

        with pytest.raises(RuntimeError):
            self.store.apply_overflow_policy("1", summarize)
