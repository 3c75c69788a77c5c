"""
Per-chat conversation history.

Keeps the turns of every chat, resets stale chats and shrinks histories
that outgrow the model context or the configured history size.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .errors import SummarizationFailed
from .token_counter import count_message_tokens, max_model_tokens

logger = logging.getLogger(__name__)


class Role(Enum):
    """Speaker of a conversation turn."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    """One message of a conversation."""
    role: Role
    content: str
    name: Optional[str] = None

    def to_message(self) -> Dict[str, str]:
        message = {"role": self.role.value, "content": self.content}
        if self.name:
            message["name"] = self.name
        return message


@dataclass
class ConversationHistory:
    """Ordered turns of one chat. The first turn holds the system prompt."""
    turns: List[Turn] = field(default_factory=list)
    last_updated: datetime = field(default_factory=datetime.now)


Summarizer = Callable[[List[Dict[str, str]]], str]


class ConversationStore:
    """Conversation histories keyed by chat ID.

    Callers must not run two requests for the same chat at once; the store
    itself only protects its map.
    """

    def __init__(
        self,
        model: str,
        assistant_prompt: str,
        max_history_size: int,
        max_conversation_age_minutes: int,
        max_tokens: int,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.model = model
        self.assistant_prompt = assistant_prompt
        self.max_history_size = max_history_size
        self.max_age = timedelta(minutes=max_conversation_age_minutes)
        self.max_tokens = max_tokens
        self._clock = clock
        self._histories: Dict[str, ConversationHistory] = {}
        self._lock = threading.Lock()

    def reset(self, chat_id: str, content: Optional[str] = None) -> ConversationHistory:
        """Replace the history with a single system turn.

        Args:
            chat_id: Chat identifier
            content: System prompt override, defaults to the assistant prompt
        """
        history = ConversationHistory(
            turns=[Turn(Role.SYSTEM, content or self.assistant_prompt)],
            last_updated=self._clock(),
        )
        with self._lock:
            self._histories[str(chat_id)] = history
        return history

    def get(self, chat_id: str) -> Optional[ConversationHistory]:
        with self._lock:
            return self._histories.get(str(chat_id))

    def max_age_reached(self, chat_id: str, now: Optional[datetime] = None) -> bool:
        """Check whether the chat has been idle for longer than allowed."""
        history = self.get(chat_id)
        if history is None:
            return False
        return (now or self._clock()) - history.last_updated > self.max_age

    def ensure_active(self, chat_id: str) -> ConversationHistory:
        """Return the chat history, seeding it when absent or stale."""
        history = self.get(chat_id)
        if history is None:
            return self.reset(chat_id)
        if self.max_age_reached(chat_id):
            logger.info("Conversation of chat %s is stale, starting over", chat_id)
            return self.reset(chat_id)
        return history

    def append_turn(self, chat_id: str, role: Role, content: str, name: Optional[str] = None) -> None:
        """Append a turn and refresh the last update time."""
        history = self.ensure_active(chat_id)
        history.turns.append(Turn(role, content, name))
        history.last_updated = self._clock()

    def messages(self, chat_id: str) -> List[Dict[str, str]]:
        """The history in the message format of the completion API."""
        return [turn.to_message() for turn in self.ensure_active(chat_id).turns]

    def count_tokens(self, chat_id: str, pending: Optional[Turn] = None) -> int:
        """Token count of the full history.

        Args:
            chat_id: Chat identifier
            pending: Turn counted as if it were already appended

        Raises:
            UnsupportedModel: If the model cannot be tokenized
        """
        messages = self.messages(chat_id)
        if pending is not None:
            messages.append(pending.to_message())
        return count_message_tokens(messages, self.model)

    def stats(self, chat_id: str) -> Tuple[int, int]:
        """Number of turns and tokens in the chat history.

        Raises:
            UnsupportedModel: If the model cannot be tokenized
        """
        history = self.ensure_active(chat_id)
        return len(history.turns), self.count_tokens(chat_id)

    def needs_overflow(self, chat_id: str) -> bool:
        """Check whether the history exceeds the context or the history size."""
        turn_count, token_count = self.stats(chat_id)
        exceeded_max_tokens = token_count + self.max_tokens > max_model_tokens(self.model)
        exceeded_max_history_size = turn_count > self.max_history_size
        return exceeded_max_tokens or exceeded_max_history_size

    def apply_overflow_policy(self, chat_id: str, summarize: Summarizer) -> bool:
        """Shrink an overflowing history before the next completion.

        Everything but the newest turn is summarized into a new system turn.
        If summarizing fails only the newest max_history_size turns are kept.

        Args:
            chat_id: Chat identifier
            summarize: Capability turning messages into a summary

        Returns:
            True if the history was shrunk

        Raises:
            UnsupportedModel: If the model cannot be tokenized
        """
        if not self.needs_overflow(chat_id):
            return False

        history = self.ensure_active(chat_id)
        logger.info("Chat history for chat ID %s is too long. Summarising...", chat_id)
        last_turn = history.turns[-1]
        earlier = [turn.to_message() for turn in history.turns[:-1]]
        try:
            summary = summarize(earlier)
        except SummarizationFailed as e:
            logger.warning(
                "Error while summarising chat history: %s. Popping elements instead...", e
            )
            history.turns = history.turns[-self.max_history_size:]
            return True

        self.reset(chat_id, summary)
        self.append_turn(chat_id, last_turn.role, last_turn.content, last_turn.name)
        return True
