"""
Chat session orchestration.

Drives one request end to end: budget gate, conversation upkeep, the remote
call and usage recording.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

from .budget import check_budget, is_guest, remaining_budget
from .conversation import ConversationStore, Role, Turn
from .ledger import LedgerStore, UsageLedger
from .streaming import SnapshotStream
from ..config.loader import BotConfig
from ..sdk.openai_client import OpenAICompletionClient
from ..storage.repository import UsageRepository

logger = logging.getLogger(__name__)

USAGE_SEPARATOR = "\n\n---\n"
CHOICE_MARKER = "⃣"


@dataclass(frozen=True)
class ChatResponse:
    """Answer of a single-shot chat request."""
    answer: str
    total_tokens: int


@dataclass(frozen=True)
class ImageResult:
    """A generated image."""
    url: str
    size: str


class ChatSession:
    """Coordinates conversations, the completion API and the usage ledger.

    Only one request per chat ID runs at a time; requests for different
    chats may run in parallel threads.
    """

    def __init__(
        self,
        config: BotConfig,
        client: OpenAICompletionClient,
        conversations: ConversationStore,
        ledgers: LedgerStore,
    ):
        self.config = config
        self.client = client
        self.conversations = conversations
        self.ledgers = ledgers
        self._chat_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @classmethod
    def from_config(cls, config: BotConfig, client: Optional[OpenAICompletionClient] = None) -> "ChatSession":
        """Build a session with SQLite-backed ledgers and an OpenAI client."""
        conversation = config.conversation
        pricing = config.pricing
        return cls(
            config=config,
            client=client or OpenAICompletionClient(config.openai.model),
            conversations=ConversationStore(
                model=config.openai.model,
                assistant_prompt=conversation.assistant_prompt,
                max_history_size=conversation.max_history_size,
                max_conversation_age_minutes=conversation.max_conversation_age_minutes,
                max_tokens=config.openai.max_tokens,
            ),
            ledgers=LedgerStore(
                UsageRepository(config.storage.db_path),
                token_price=pricing.token_price,
                image_prices=pricing.image_prices,
                transcription_price=pricing.transcription_price,
            ),
        )

    def chat_lock(self, chat_id: str) -> threading.Lock:
        with self._guard:
            return self._chat_locks.setdefault(str(chat_id), threading.Lock())

    def remaining_budget(self, user_id: str, user_name: Optional[str] = None) -> float:
        """Budget the user has left in the configured period."""
        ledger = self.ledgers.get(user_id, user_name)
        return remaining_budget(user_id, ledger, self.config.budget)

    def reset_chat(self, chat_id: str, content: Optional[str] = None) -> None:
        """Start the conversation of a chat over."""
        with self.chat_lock(chat_id):
            self.conversations.reset(chat_id, content)

    def get_chat_response(
        self,
        chat_id: str,
        user_id: str,
        query: str,
        user_name: Optional[str] = None,
    ) -> ChatResponse:
        """Answer a message with a single completion call.

        Raises:
            BudgetExceeded: If the user has no budget left
            UnsupportedModel: If the configured model cannot be tokenized
            RemoteCallFailed: If the completion call fails
            PersistenceFailed: If usage cannot be recorded
        """
        self._check_budget(user_id, user_name)
        options = self.config.openai

        with self.chat_lock(chat_id):
            self._add_user_turn(chat_id, query)
            completion = self.client.complete(
                self.conversations.messages(chat_id),
                max_tokens=options.max_tokens,
                n=options.n_choices,
                temperature=options.temperature,
                presence_penalty=options.presence_penalty,
                frequency_penalty=options.frequency_penalty,
            )

            if len(completion.choices) > 1 and options.n_choices > 1:
                answer = ""
                for index, content in enumerate(completion.choices):
                    answer += f"{index + 1}{CHOICE_MARKER}\n{content}\n\n"
                answer = answer.rstrip()
            else:
                answer = completion.choices[0]

            # The first choice only joins the history once its usage is recorded
            usage = completion.usage
            self._record_chat_usage(user_id, user_name, usage.total_tokens)
            self.conversations.append_turn(chat_id, Role.ASSISTANT, completion.choices[0])

        if self.config.conversation.show_usage:
            answer += (
                f"{USAGE_SEPARATOR}💰 {usage.total_tokens} tokens"
                f" ({usage.prompt_tokens} prompt, {usage.completion_tokens} completion)"
            )
        return ChatResponse(answer=answer, total_tokens=usage.total_tokens)

    def get_chat_response_stream(
        self,
        chat_id: str,
        user_id: str,
        query: str,
        user_name: Optional[str] = None,
    ) -> Iterator[str]:
        """Answer a message as a sequence of growing snapshots.

        The budget is checked right away; everything else happens while the
        returned iterator is consumed. The last snapshot is the complete,
        trimmed answer (with the usage footer when enabled).

        Raises:
            BudgetExceeded: If the user has no budget left
        """
        self._check_budget(user_id, user_name)
        return self._stream(chat_id, user_id, query, user_name)

    def generate_image(self, user_id: str, prompt: str, user_name: Optional[str] = None) -> ImageResult:
        """Generate an image and charge it to the user.

        Raises:
            BudgetExceeded: If the user has no budget left
            RemoteCallFailed: If image generation fails
            PersistenceFailed: If usage cannot be recorded
        """
        self._check_budget(user_id, user_name)
        size = self.config.openai.image_size
        url = self.client.generate_image(prompt, size)
        self.ledgers.record_image_request(
            user_id, size, user_name=user_name, track_guest=self._is_guest(user_id)
        )
        return ImageResult(url=url, size=size)

    def transcribe(
        self,
        user_id: str,
        audio_path: str,
        duration_seconds: float,
        user_name: Optional[str] = None,
    ) -> str:
        """Transcribe an audio file and charge its duration to the user.

        Raises:
            BudgetExceeded: If the user has no budget left
            RemoteCallFailed: If transcription fails
            PersistenceFailed: If usage cannot be recorded
        """
        self._check_budget(user_id, user_name)
        text = self.client.transcribe(audio_path)
        self.ledgers.record_transcription_seconds(
            user_id, duration_seconds, user_name=user_name, track_guest=self._is_guest(user_id)
        )
        return text

    def _stream(self, chat_id: str, user_id: str, query: str, user_name: Optional[str]) -> Iterator[str]:
        options = self.config.openai

        with self.chat_lock(chat_id):
            self._add_user_turn(chat_id, query)
            messages = self.conversations.messages(chat_id)
            stream = SnapshotStream(
                lambda: self.client.stream(
                    messages,
                    max_tokens=options.max_tokens,
                    n=options.n_choices,
                    temperature=options.temperature,
                    presence_penalty=options.presence_penalty,
                    frequency_penalty=options.frequency_penalty,
                ),
                timeout=self.config.conversation.stream_timeout_seconds,
            )
            yield from stream

            answer = (stream.answer or "").strip()
            reply = Turn(Role.ASSISTANT, answer)
            tokens_used = self.conversations.count_tokens(chat_id, pending=reply)
            self._record_chat_usage(user_id, user_name, tokens_used)
            self.conversations.append_turn(chat_id, reply.role, reply.content)

        if self.config.conversation.show_usage:
            yield f"{answer}{USAGE_SEPARATOR}💰 {tokens_used} tokens"
        else:
            yield answer

    def _check_budget(self, user_id: str, user_name: Optional[str]) -> UsageLedger:
        ledger = self.ledgers.get(user_id, user_name)
        check_budget(user_id, ledger, self.config.budget)
        return ledger

    def _add_user_turn(self, chat_id: str, query: str) -> None:
        self.conversations.ensure_active(chat_id)
        self.conversations.append_turn(chat_id, Role.USER, query)
        self.conversations.apply_overflow_policy(chat_id, self.client.summarize)

    def _is_guest(self, user_id: str) -> bool:
        return is_guest(user_id, self.config.budget)

    def _record_chat_usage(self, user_id: str, user_name: Optional[str], tokens: int) -> None:
        guest = self._is_guest(user_id)
        if guest:
            logger.debug("Recording usage of guest %s", user_id)
        self.ledgers.record_chat_tokens(user_id, tokens, user_name=user_name, track_guest=guest)
