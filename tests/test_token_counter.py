"""
Unit tests for token counting.

Tokenization is replaced by a whitespace encoder so counts are predictable.
"""

from unittest.mock import Mock, patch

import pytest

from chat_cost_guard.core import token_counter
from chat_cost_guard.core.errors import UnsupportedModel
from chat_cost_guard.core.token_counter import count_message_tokens, max_model_tokens


class WhitespaceEncoding:
    """Encodes one token per whitespace separated word."""

    def encode(self, text):
        return text.split()


@pytest.fixture
def whitespace_encoding():
    with patch(
        'chat_cost_guard.core.token_counter._get_encoding',
        return_value=WhitespaceEncoding()
    ) as mock_encoding:
        yield mock_encoding


class TestCountMessageTokens:
    """Test per-model message overhead."""

    def test_gpt_35_overhead(self, whitespace_encoding):
        """gpt-3.5 messages cost 4 tokens plus role and content."""
        messages = [{"role": "system", "content": "be nice"}]
        # 4 overhead + 1 role + 2 content + 3 priming
        assert count_message_tokens(messages, "gpt-3.5-turbo") == 10

    def test_gpt_4_overhead(self, whitespace_encoding):
        """gpt-4 messages cost 3 tokens plus role and content."""
        messages = [{"role": "system", "content": "be nice"}]
        assert count_message_tokens(messages, "gpt-4") == 9

    def test_gpt_35_name_adjustment(self, whitespace_encoding):
        """A name replaces the role on gpt-3.5 (-1)."""
        messages = [{"role": "user", "content": "hi", "name": "bob"}]
        # 4 + 1 role + 1 content + 1 name - 1 + 3
        assert count_message_tokens(messages, "gpt-3.5-turbo-16k") == 9

    def test_gpt_4_name_adjustment(self, whitespace_encoding):
        """A name costs one extra token on gpt-4 (+1)."""
        messages = [{"role": "user", "content": "hi", "name": "bob"}]
        assert count_message_tokens(messages, "gpt-4-32k") == 10

    def test_multiple_messages(self, whitespace_encoding):
        messages = [
            {"role": "system", "content": "be nice"},
            {"role": "user", "content": "hello there friend"},
        ]
        # (4 + 1 + 2) + (4 + 1 + 3) + 3
        assert count_message_tokens(messages, "gpt-3.5-turbo") == 18

    def test_empty_history_counts_priming_only(self, whitespace_encoding):
        assert count_message_tokens([], "gpt-4") == 3

    def test_unsupported_model_raises_error(self, whitespace_encoding):
        """Unknown model families cannot be sized."""
        with pytest.raises(UnsupportedModel, match="not implemented for model llama-2"):
            count_message_tokens([{"role": "user", "content": "hi"}], "llama-2")

    def test_unsupported_model_is_value_error(self, whitespace_encoding):
        with pytest.raises(ValueError):
            count_message_tokens([], "text-davinci-003")


class TestEncodingLookup:
    """Test tiktoken encoding resolution."""

    def setup_method(self):
        token_counter._get_encoding.cache_clear()

    def teardown_method(self):
        token_counter._get_encoding.cache_clear()

    @patch('chat_cost_guard.core.token_counter.tiktoken')
    def test_known_model_encoding(self, mock_tiktoken):
        encoding = Mock()
        mock_tiktoken.encoding_for_model.return_value = encoding

        assert token_counter._get_encoding("gpt-4") is encoding
        mock_tiktoken.encoding_for_model.assert_called_once_with("gpt-4")

    @patch('chat_cost_guard.core.token_counter.tiktoken')
    def test_unknown_model_falls_back(self, mock_tiktoken):
        """Models tiktoken doesn't know use the cl100k_base encoding."""
        fallback = Mock()
        mock_tiktoken.encoding_for_model.side_effect = KeyError("gpt-4-turbo")
        mock_tiktoken.get_encoding.return_value = fallback

        assert token_counter._get_encoding("gpt-4-turbo") is fallback
        mock_tiktoken.get_encoding.assert_called_once_with("cl100k_base")


class TestMaxModelTokens:
    """Test context window sizes."""

    def test_context_sizes(self):
        assert max_model_tokens("gpt-3.5-turbo") == 4096
        assert max_model_tokens("gpt-3.5-turbo-16k") == 16384
        assert max_model_tokens("gpt-4") == 8192
        assert max_model_tokens("gpt-4-32k-0613") == 32768

    def test_unknown_model_default(self):
        assert max_model_tokens("something-else") == 4096
