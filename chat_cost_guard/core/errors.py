"""
Error taxonomy for Chat Cost Guard.

Every failure the core surfaces to its callers derives from ChatCostGuardError.
"""


class ChatCostGuardError(Exception):
    """Base class for all Chat Cost Guard errors."""


class UnsupportedModel(ChatCostGuardError, ValueError):
    """Raised when the tokenizer cannot size messages for a model."""

    def __init__(self, model: str):
        super().__init__(f"Token counting is not implemented for model {model}")
        self.model = model


class InvalidArgument(ChatCostGuardError, ValueError):
    """Raised for arguments outside the accepted domain (e.g. image size)."""


class BudgetExceeded(ChatCostGuardError):
    """Raised when a user has no remaining budget for the current period."""

    def __init__(self, user_id: str, remaining: float):
        super().__init__(
            f"User {user_id} has reached the usage limit "
            f"(remaining budget: ${remaining:.2f})"
        )
        self.user_id = user_id
        self.remaining = remaining


class SummarizationFailed(ChatCostGuardError):
    """Raised when a conversation could not be summarized."""


class RemoteCallFailed(ChatCostGuardError):
    """Raised when the completion, image or transcription API call fails."""


class PersistenceFailed(ChatCostGuardError):
    """Raised when a usage record cannot be read or written."""
