"""
OpenAI client wrapper.

Exposes the completion, summarization, image and transcription calls the
chat session relies on. All API failures surface as Chat Cost Guard errors.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from openai import OpenAI, OpenAIError

from ..core.errors import InvalidArgument, RemoteCallFailed, SummarizationFailed
from ..core.token_counter import TokenUsage

SUMMARY_PROMPT = "Summarize this conversation in 700 characters or less"
SUMMARY_TEMPERATURE = 0.4
TRANSCRIPTION_MODEL = "whisper-1"


@dataclass(frozen=True)
class Completion:
    """Answer choices and token usage of one completion call."""
    choices: List[str]
    usage: TokenUsage


class OpenAICompletionClient:
    """Thin wrapper around the OpenAI SDK.

    Failures are loud: API errors and empty results raise instead of
    returning partial data.
    """

    def __init__(self, model: str, api_key: Optional[str] = None):
        """Initialize the client.

        Args:
            model: Chat model used for completions and summaries (required)
            api_key: API key, defaults to the OPENAI_API_KEY environment variable

        Raises:
            ValueError: If model is missing/empty
            RemoteCallFailed: If the OpenAI client cannot be created (e.g. no API key)
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        try:
            self.client = OpenAI(api_key=api_key) if api_key else OpenAI()
        except OpenAIError as e:
            raise RemoteCallFailed(f"Cannot create OpenAI client: {e}") from e

    def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        n: int = 1,
        temperature: Optional[float] = None,
        presence_penalty: Optional[float] = None,
        frequency_penalty: Optional[float] = None,
    ) -> Completion:
        """Create a chat completion.

        Args:
            messages: Conversation messages (required)
            max_tokens: Maximum tokens to generate
            n: Number of answer choices
            temperature: Sampling temperature
            presence_penalty: Presence penalty
            frequency_penalty: Frequency penalty

        Returns:
            Stripped answer choices and token usage

        Raises:
            ValueError: If messages is empty
            RemoteCallFailed: If the API call fails or returns nothing
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                **self._request_options(max_tokens, n, temperature, presence_penalty, frequency_penalty),
            )
        except OpenAIError as e:
            raise RemoteCallFailed(f"Chat completion failed: {e}") from e

        if not response.choices:
            raise RemoteCallFailed("Chat completion returned no choices")
        usage = response.usage
        if not usage:
            raise RemoteCallFailed("Chat completion response missing usage information")

        return Completion(
            choices=[(choice.message.content or "").strip() for choice in response.choices],
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            ),
        )

    def stream(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        n: int = 1,
        temperature: Optional[float] = None,
        presence_penalty: Optional[float] = None,
        frequency_penalty: Optional[float] = None,
    ) -> Iterator[str]:
        """Stream a chat completion as content deltas of the first choice.

        Raises:
            ValueError: If messages is empty
            RemoteCallFailed: If opening or reading the stream fails
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                **self._request_options(max_tokens, n, temperature, presence_penalty, frequency_penalty),
            )
        except OpenAIError as e:
            raise RemoteCallFailed(f"Chat completion stream failed: {e}") from e

        try:
            for chunk in response:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.index != 0:
                    continue
                if choice.delta and choice.delta.content:
                    yield choice.delta.content
                if choice.finish_reason:
                    break
        except OpenAIError as e:
            raise RemoteCallFailed(f"Chat completion stream failed: {e}") from e
        finally:
            response.close()

    def summarize(self, messages: List[Dict[str, str]]) -> str:
        """Summarize a conversation.

        Raises:
            SummarizationFailed: If the API call fails or returns nothing
        """
        request = [
            {"role": "assistant", "content": SUMMARY_PROMPT},
            {"role": "user", "content": json.dumps(messages, ensure_ascii=False)},
        ]
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=request,
                temperature=SUMMARY_TEMPERATURE,
            )
        except OpenAIError as e:
            raise SummarizationFailed(f"Summary request failed: {e}") from e

        if not response.choices or not response.choices[0].message.content:
            raise SummarizationFailed("Summary request returned no content")
        return response.choices[0].message.content

    def generate_image(self, prompt: str, size: str) -> str:
        """Generate one image and return its URL.

        Raises:
            RemoteCallFailed: If the API call fails or returns no image
        """
        try:
            response = self.client.images.generate(prompt=prompt, n=1, size=size)
        except OpenAIError as e:
            raise RemoteCallFailed(f"Image generation failed: {e}") from e

        if not response.data or not response.data[0].url:
            raise RemoteCallFailed("Image generation returned no image")
        return response.data[0].url

    def transcribe(self, audio_path: str) -> str:
        """Transcribe an audio file.

        Raises:
            InvalidArgument: If the audio file cannot be read
            RemoteCallFailed: If the API call fails or returns no text
        """
        try:
            audio = open(audio_path, "rb")
        except OSError as e:
            raise InvalidArgument(f"Cannot read audio file {audio_path}: {e}") from e

        try:
            with audio:
                response = self.client.audio.transcriptions.create(
                    model=TRANSCRIPTION_MODEL,
                    file=audio,
                )
        except OpenAIError as e:
            raise RemoteCallFailed(f"Transcription failed: {e}") from e

        if not response.text:
            raise RemoteCallFailed("Transcription returned no text")
        return response.text

    @staticmethod
    def _request_options(
        max_tokens: Optional[int],
        n: int,
        temperature: Optional[float],
        presence_penalty: Optional[float],
        frequency_penalty: Optional[float],
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {"n": n}
        if max_tokens is not None:
            options["max_tokens"] = max_tokens
        if temperature is not None:
            options["temperature"] = temperature
        if presence_penalty is not None:
            options["presence_penalty"] = presence_penalty
        if frequency_penalty is not None:
            options["frequency_penalty"] = frequency_penalty
        return options
