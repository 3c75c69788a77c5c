"""
Token counting and usage tracking.

Manages token calculations for the supported chat model families.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List

import tiktoken

from .errors import UnsupportedModel


GPT_3_MODELS = ("gpt-3.5-turbo", "gpt-3.5-turbo-0301", "gpt-3.5-turbo-0613")
GPT_3_16K_MODELS = ("gpt-3.5-turbo-16k", "gpt-3.5-turbo-16k-0613")
GPT_4_MODELS = ("gpt-4", "gpt-4-0314", "gpt-4-0613", "gpt-4-turbo", "gpt-4o")
GPT_4_32K_MODELS = ("gpt-4-32k", "gpt-4-32k-0314", "gpt-4-32k-0613")

FALLBACK_ENCODING = "cl100k_base"

# Every reply is primed with <|start|>assistant<|message|>
REPLY_PRIMING_TOKENS = 3


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported for one completion call."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


@lru_cache(maxsize=None)
def _get_encoding(model: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(FALLBACK_ENCODING)


def max_model_tokens(model: str) -> int:
    """Context window size for a model."""
    base = 4096
    if model in GPT_3_MODELS:
        return base
    if model in GPT_3_16K_MODELS:
        return base * 4
    if model in GPT_4_MODELS:
        return base * 2
    if model in GPT_4_32K_MODELS:
        return base * 8
    return base


def count_message_tokens(messages: List[Dict[str, str]], model: str) -> int:
    """Count the prompt tokens a list of chat messages will consume.

    Follows the per-message overhead of each model family: gpt-3.5 messages
    cost 4 extra tokens and a name replaces the role (-1), gpt-4 messages
    cost 3 extra tokens and a name costs one more (+1).

    Args:
        messages: Messages with "role", "content" and optional "name"
        model: Model identifier

    Returns:
        Number of tokens including reply priming

    Raises:
        UnsupportedModel: If the model family is unknown
    """
    if model in GPT_3_MODELS or model in GPT_3_16K_MODELS:
        tokens_per_message = 4  # {role/name}\n{content}\n
        tokens_per_name = -1
    elif model in GPT_4_MODELS or model in GPT_4_32K_MODELS:
        tokens_per_message = 3
        tokens_per_name = 1
    else:
        raise UnsupportedModel(model)

    encoding = _get_encoding(model)
    num_tokens = 0
    for message in messages:
        num_tokens += tokens_per_message
        for key, value in message.items():
            num_tokens += len(encoding.encode(value))
            if key == "name":
                num_tokens += tokens_per_name
    num_tokens += REPLY_PRIMING_TOKENS
    return num_tokens
