"""
Data models for storage layer.

Defines the per-user usage record and its validated serialized form.
"""

import copy
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional


IMAGE_COUNT_SLOTS = 3


@dataclass
class CostSnapshot:
    """Running cost totals per accounting window.

    all_time is None only for legacy records that predate all-time tracking;
    the ledger backfills it from the usage history on load.
    """
    day: float = 0.0
    month: float = 0.0
    all_time: Optional[float] = 0.0
    last_update: date = field(default_factory=date.today)


@dataclass
class UsageHistory:
    """Usage counters keyed by ISO date (YYYY-MM-DD)."""
    chat_tokens: Dict[str, int] = field(default_factory=dict)
    transcription_seconds: Dict[str, float] = field(default_factory=dict)
    number_images: Dict[str, List[int]] = field(default_factory=dict)


@dataclass
class UsageRecord:
    """Durable usage and cost record of a single user.

    The record is rewritten as a whole on every change.
    """
    user_id: str
    user_name: str
    current_cost: CostSnapshot = field(default_factory=CostSnapshot)
    usage_history: UsageHistory = field(default_factory=UsageHistory)

    def copy(self) -> "UsageRecord":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted document shape."""
        return {
            "user_name": self.user_name,
            "current_cost": {
                "day": self.current_cost.day,
                "month": self.current_cost.month,
                "all_time": self.current_cost.all_time,
                "last_update": self.current_cost.last_update.isoformat(),
            },
            "usage_history": {
                "chat_tokens": dict(self.usage_history.chat_tokens),
                "transcription_seconds": dict(self.usage_history.transcription_seconds),
                "number_images": {
                    day: list(counts)
                    for day, counts in self.usage_history.number_images.items()
                },
            },
        }

    @classmethod
    def from_dict(cls, user_id: str, data: Any) -> "UsageRecord":
        """Build a record from a persisted document, validating its shape.

        Args:
            user_id: Owner of the record
            data: Decoded JSON document

        Returns:
            Validated UsageRecord

        Raises:
            ValueError: If the document does not match the schema
        """
        if not isinstance(data, dict):
            raise ValueError("usage record must be an object")

        allowed_keys = {"user_name", "current_cost", "usage_history"}
        unknown_keys = set(data.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown usage record keys: {unknown_keys}")

        user_name = data.get("user_name")
        if not isinstance(user_name, str):
            raise ValueError("'user_name' must be a string")

        return cls(
            user_id=user_id,
            user_name=user_name,
            current_cost=_parse_cost(data.get("current_cost")),
            usage_history=_parse_history(data.get("usage_history")),
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_date_key(key: Any, path: str) -> str:
    if not isinstance(key, str):
        raise ValueError(f"Date key in {path} must be a string")
    try:
        date.fromisoformat(key)
    except ValueError:
        raise ValueError(f"Invalid date '{key}' in {path}")
    return key


def _parse_cost(data: Any) -> CostSnapshot:
    if not isinstance(data, dict):
        raise ValueError("'current_cost' must be an object")

    allowed_keys = {"day", "month", "all_time", "last_update"}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown current_cost keys: {unknown_keys}")

    for key in ("day", "month"):
        if not _is_number(data.get(key)):
            raise ValueError(f"'current_cost.{key}' must be a number")

    all_time = data.get("all_time")
    if all_time is not None and not _is_number(all_time):
        raise ValueError("'current_cost.all_time' must be a number")

    last_update = data.get("last_update")
    if not isinstance(last_update, str):
        raise ValueError("'current_cost.last_update' must be a date string")
    try:
        last_update_date = date.fromisoformat(last_update)
    except ValueError:
        raise ValueError(f"Invalid 'current_cost.last_update': {last_update}")

    return CostSnapshot(
        day=float(data["day"]),
        month=float(data["month"]),
        all_time=float(all_time) if all_time is not None else None,
        last_update=last_update_date,
    )


def _parse_history(data: Any) -> UsageHistory:
    if not isinstance(data, dict):
        raise ValueError("'usage_history' must be an object")

    allowed_keys = {"chat_tokens", "transcription_seconds", "number_images"}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown usage_history keys: {unknown_keys}")

    history = UsageHistory()

    chat_tokens = data.get("chat_tokens", {})
    if not isinstance(chat_tokens, dict):
        raise ValueError("'usage_history.chat_tokens' must be an object")
    for key, tokens in chat_tokens.items():
        day = _parse_date_key(key, "chat_tokens")
        if not isinstance(tokens, int) or isinstance(tokens, bool) or tokens < 0:
            raise ValueError(f"Token count for {day} must be a non-negative integer")
        history.chat_tokens[day] = tokens

    seconds_by_day = data.get("transcription_seconds", {})
    if not isinstance(seconds_by_day, dict):
        raise ValueError("'usage_history.transcription_seconds' must be an object")
    for key, seconds in seconds_by_day.items():
        day = _parse_date_key(key, "transcription_seconds")
        if not _is_number(seconds) or seconds < 0:
            raise ValueError(f"Transcription seconds for {day} must be a non-negative number")
        history.transcription_seconds[day] = seconds

    images = data.get("number_images", {})
    if not isinstance(images, dict):
        raise ValueError("'usage_history.number_images' must be an object")
    for key, counts in images.items():
        day = _parse_date_key(key, "number_images")
        if (
            not isinstance(counts, list)
            or len(counts) != IMAGE_COUNT_SLOTS
            or not all(isinstance(c, int) and not isinstance(c, bool) and c >= 0 for c in counts)
        ):
            raise ValueError(
                f"Image counts for {day} must be {IMAGE_COUNT_SLOTS} non-negative integers"
            )
        history.number_images[day] = list(counts)

    return history
