"""
SDK for Chat Cost Guard.

Provides the OpenAI-backed completion capability.
"""

from .openai_client import Completion, OpenAICompletionClient

__all__ = ["Completion", "OpenAICompletionClient"]
