"""
Per-user usage ledger.

Tracks token, transcription and image usage of each user together with the
resulting cost per day, month and all time.

Accumulation rule applied to every recorded cost:
1. all_time always grows by the request cost
2. Same day as the last update - day and month grow by the request cost
3. Otherwise day restarts at the request cost, month restarts too when the
   calendar month changed (else it grows), and last_update moves to today
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional, Sequence, Tuple

from .errors import InvalidArgument, PersistenceFailed
from .pricing import (
    IMAGE_SIZES,
    chat_token_cost,
    image_cost,
    image_size_index,
    round_cost,
    transcription_cost,
)
from ..storage.models import UsageRecord
from ..storage.repository import UsageRepository

logger = logging.getLogger(__name__)

GUESTS_USER_ID = "guests"
GUESTS_USER_NAME = "Guests"


@dataclass(frozen=True)
class CurrentCost:
    """Cost per accounting window as seen on a given day."""
    today: float
    month: float
    all_time: float


@dataclass(frozen=True)
class TranscriptionDuration:
    """Transcribed audio split into whole minutes and remaining seconds."""
    today_minutes: int
    today_seconds: float
    month_minutes: int
    month_seconds: float


def _month_key(day: date) -> str:
    return day.strftime("%Y-%m")


class UsageLedger:
    """Usage ledger of a single user.

    Mutations are not thread-safe on their own; LedgerStore serializes them
    per user.
    """

    def __init__(
        self,
        record: UsageRecord,
        repository: UsageRepository,
        today: Callable[[], date] = date.today,
    ):
        self.record = record
        self.repository = repository
        self._today = today

    @property
    def user_id(self) -> str:
        return self.record.user_id

    @property
    def user_name(self) -> str:
        return self.record.user_name

    def record_chat_tokens(self, tokens: int, price_per_1k: float) -> float:
        """Add used chat tokens and their cost.

        Args:
            tokens: Number of tokens used by the request
            price_per_1k: Price per 1000 tokens

        Returns:
            Cost of the request

        Raises:
            InvalidArgument: If tokens is not a non-negative integer
            PersistenceFailed: If the record cannot be written
        """
        if not isinstance(tokens, int) or isinstance(tokens, bool) or tokens < 0:
            raise InvalidArgument(f"Token count must be a non-negative integer, got {tokens!r}")
        cost = chat_token_cost(tokens, price_per_1k)
        today = self._today().isoformat()

        def apply(record: UsageRecord) -> None:
            history = record.usage_history.chat_tokens
            history[today] = history.get(today, 0) + tokens

        self._commit(cost, apply)
        return cost

    def record_transcription_seconds(self, seconds: float, price_per_minute: float) -> float:
        """Add transcribed seconds and their cost.

        Args:
            seconds: Duration of the transcribed audio
            price_per_minute: Price per minute of audio

        Returns:
            Cost of the request

        Raises:
            InvalidArgument: If seconds is not a non-negative number
            PersistenceFailed: If the record cannot be written
        """
        if not isinstance(seconds, (int, float)) or isinstance(seconds, bool) or not seconds >= 0:
            raise InvalidArgument(f"Transcription seconds must be a non-negative number, got {seconds!r}")
        cost = transcription_cost(seconds, price_per_minute)
        today = self._today().isoformat()

        def apply(record: UsageRecord) -> None:
            history = record.usage_history.transcription_seconds
            history[today] = history.get(today, 0) + seconds

        self._commit(cost, apply)
        return cost

    def record_image_request(self, image_size: str, image_prices: Sequence[float]) -> float:
        """Add one generated image and its cost.

        Args:
            image_size: One of IMAGE_SIZES
            image_prices: Prices aligned with IMAGE_SIZES

        Returns:
            Cost of the request

        Raises:
            InvalidArgument: If the image size is unknown
            PersistenceFailed: If the record cannot be written
        """
        index = image_size_index(image_size)
        cost = image_cost(image_size, image_prices)
        today = self._today().isoformat()

        def apply(record: UsageRecord) -> None:
            counts = record.usage_history.number_images.setdefault(
                today, [0] * len(IMAGE_SIZES)
            )
            counts[index] += 1

        self._commit(cost, apply)
        return cost

    def current_cost(self) -> CurrentCost:
        """Cost of today, this month and all time.

        The stored day and month totals belong to last_update. When that
        date is in the past they are projected onto today without writing
        anything back.
        """
        snapshot = self.record.current_cost
        today = self._today()

        if snapshot.last_update == today:
            cost_day = snapshot.day
            cost_month = snapshot.month
        else:
            cost_day = 0.0
            if _month_key(snapshot.last_update) == _month_key(today):
                cost_month = snapshot.month
            else:
                cost_month = 0.0

        return CurrentCost(
            today=cost_day,
            month=cost_month,
            all_time=snapshot.all_time or 0.0,
        )

    def token_usage(self) -> Tuple[int, int]:
        """Tokens used today and this month."""
        return self._aggregate(self.record.usage_history.chat_tokens.items(), int)

    def image_usage(self) -> Tuple[int, int]:
        """Images generated today and this month."""
        counts = self.record.usage_history.number_images
        return self._aggregate(((day, sum(c)) for day, c in counts.items()), int)

    def image_usage_by_size(self) -> Dict[str, Tuple[int, int]]:
        """Images generated today and this month, per image size."""
        counts = self.record.usage_history.number_images
        return {
            size: self._aggregate(((day, c[index]) for day, c in counts.items()), int)
            for index, size in enumerate(IMAGE_SIZES)
        }

    def transcription_duration(self) -> TranscriptionDuration:
        """Transcribed audio today and this month as minutes and seconds."""
        seconds_today, seconds_month = self._aggregate(
            self.record.usage_history.transcription_seconds.items(), float
        )
        minutes_today, remainder_today = divmod(seconds_today, 60)
        minutes_month, remainder_month = divmod(seconds_month, 60)
        return TranscriptionDuration(
            today_minutes=int(minutes_today),
            today_seconds=round(remainder_today, 2),
            month_minutes=int(minutes_month),
            month_seconds=round(remainder_month, 2),
        )

    def all_time_cost(
        self,
        token_price: float,
        image_prices: Sequence[float],
        minute_price: float,
    ) -> float:
        """Recompute the total cost of the whole usage history.

        Used to backfill records that predate all-time cost tracking.
        """
        history = self.record.usage_history

        total_tokens = sum(history.chat_tokens.values())
        token_total = chat_token_cost(total_tokens, token_price)

        total_images = [0] * len(IMAGE_SIZES)
        for counts in history.number_images.values():
            for index, count in enumerate(counts):
                total_images[index] += count
        image_total = sum(
            Decimal(count) * Decimal(str(price))
            for count, price in zip(total_images, image_prices)
        )

        total_seconds = sum(history.transcription_seconds.values())
        transcription_total = transcription_cost(total_seconds, minute_price)

        total = Decimal(str(token_total)) + Decimal(str(transcription_total)) + Decimal(image_total)
        return round_cost(total, 6)

    def initialize_all_time_cost(
        self,
        token_price: float,
        image_prices: Sequence[float],
        minute_price: float,
    ) -> float:
        """Set all_time from the usage history and persist it."""
        previous = self.record.current_cost.all_time
        self.record.current_cost.all_time = self.all_time_cost(
            token_price, image_prices, minute_price
        )
        try:
            self.repository.save(self.record)
        except PersistenceFailed:
            self.record.current_cost.all_time = previous
            raise
        logger.info(
            "Backfilled all-time cost of user %s: $%.6f",
            self.user_id,
            self.record.current_cost.all_time,
        )
        return self.record.current_cost.all_time

    def _aggregate(self, entries: Iterable[Tuple[str, float]], kind: type) -> Tuple:
        today = self._today()
        today_key = today.isoformat()
        month_prefix = _month_key(today)
        usage_day = kind(0)
        usage_month = kind(0)
        for day, value in entries:
            if day == today_key:
                usage_day += value
            if day.startswith(month_prefix):
                usage_month += value
        return usage_day, usage_month

    def _add_current_cost(self, record: UsageRecord, request_cost: float) -> None:
        snapshot = record.current_cost
        today = self._today()
        cost = Decimal(str(request_cost))

        snapshot.all_time = float(Decimal(str(snapshot.all_time or 0.0)) + cost)
        if snapshot.last_update == today:
            snapshot.day = float(Decimal(str(snapshot.day)) + cost)
            snapshot.month = float(Decimal(str(snapshot.month)) + cost)
        else:
            if _month_key(snapshot.last_update) == _month_key(today):
                snapshot.month = float(Decimal(str(snapshot.month)) + cost)
            else:
                snapshot.month = request_cost
            snapshot.day = request_cost
            snapshot.last_update = today

    def _commit(self, request_cost: float, apply: Callable[[UsageRecord], None]) -> None:
        updated = self.record.copy()
        self._add_current_cost(updated, request_cost)
        apply(updated)
        # Swap in the new state only once it is durable
        self.repository.save(updated)
        self.record = updated


class LedgerStore:
    """Keyed store of usage ledgers backed by a repository.

    Ledgers are loaded lazily and cached. Writes to the same user are
    serialized with a per-user lock; different users never share state.
    """

    def __init__(
        self,
        repository: UsageRepository,
        token_price: float = 0.0,
        image_prices: Sequence[float] = (0.0, 0.0, 0.0),
        transcription_price: float = 0.0,
        today: Callable[[], date] = date.today,
    ):
        self.repository = repository
        self.token_price = token_price
        self.image_prices = tuple(image_prices)
        self.transcription_price = transcription_price
        self._today = today
        self._ledgers: Dict[str, UsageLedger] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock(self, user_id: str) -> threading.Lock:
        """Lock serializing all writes to one user's ledger."""
        with self._guard:
            return self._locks.setdefault(str(user_id), threading.Lock())

    def get(self, user_id: str, user_name: Optional[str] = None) -> UsageLedger:
        """Return the ledger of a user, loading or creating it on first use.

        Raises:
            PersistenceFailed: If the stored record cannot be read or migrated
        """
        user_id = str(user_id)
        with self.lock(user_id):
            ledger = self._ledgers.get(user_id)
            if ledger is None:
                ledger = self._load(user_id, user_name)
                self._ledgers[user_id] = ledger
            return ledger

    def record_chat_tokens(
        self,
        user_id: str,
        tokens: int,
        user_name: Optional[str] = None,
        track_guest: bool = False,
    ) -> float:
        """Record chat tokens for a user (and the guests ledger if asked)."""
        cost = self._record(
            user_id,
            user_name,
            lambda ledger: ledger.record_chat_tokens(tokens, self.token_price),
        )
        if track_guest:
            self._record(
                GUESTS_USER_ID,
                GUESTS_USER_NAME,
                lambda ledger: ledger.record_chat_tokens(tokens, self.token_price),
            )
        return cost

    def record_transcription_seconds(
        self,
        user_id: str,
        seconds: float,
        user_name: Optional[str] = None,
        track_guest: bool = False,
    ) -> float:
        """Record transcribed seconds for a user (and the guests ledger if asked)."""
        cost = self._record(
            user_id,
            user_name,
            lambda ledger: ledger.record_transcription_seconds(seconds, self.transcription_price),
        )
        if track_guest:
            self._record(
                GUESTS_USER_ID,
                GUESTS_USER_NAME,
                lambda ledger: ledger.record_transcription_seconds(seconds, self.transcription_price),
            )
        return cost

    def record_image_request(
        self,
        user_id: str,
        image_size: str,
        user_name: Optional[str] = None,
        track_guest: bool = False,
    ) -> float:
        """Record one generated image for a user (and the guests ledger if asked)."""
        cost = self._record(
            user_id,
            user_name,
            lambda ledger: ledger.record_image_request(image_size, self.image_prices),
        )
        if track_guest:
            self._record(
                GUESTS_USER_ID,
                GUESTS_USER_NAME,
                lambda ledger: ledger.record_image_request(image_size, self.image_prices),
            )
        return cost

    def _record(self, user_id: str, user_name: Optional[str], action: Callable[[UsageLedger], float]) -> float:
        ledger = self.get(user_id, user_name)
        with self.lock(ledger.user_id):
            return action(ledger)

    def _load(self, user_id: str, user_name: Optional[str]) -> UsageLedger:
        record = self.repository.load(user_id)
        if record is None:
            logger.info("Creating usage record for user %s", user_id)
            record = UsageRecord(
                user_id=user_id,
                user_name=user_name or f"User {user_id}",
            )
            record.current_cost.last_update = self._today()
            return UsageLedger(record, self.repository, today=self._today)

        ledger = UsageLedger(record, self.repository, today=self._today)
        if record.current_cost.all_time is None:
            ledger.initialize_all_time_cost(
                self.token_price, self.image_prices, self.transcription_price
            )
        return ledger
