"""
Streaming of partial answers.

A producer thread consumes content deltas and publishes growing answer
snapshots over a queue. The consumer iterates the snapshots; the stream ends
with either a completion marker or an error marker.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Iterator, Optional

from .errors import RemoteCallFailed

logger = logging.getLogger(__name__)


class StreamStatus(Enum):
    """Kind of event published by the producer."""
    PARTIAL = "partial"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One item passed from producer to consumer."""
    status: StreamStatus
    text: str = ""
    error: Optional[BaseException] = None


class SnapshotStream:
    """Cancellable producer/consumer channel of answer snapshots.

    Iterating yields every growing snapshot of the answer. After iteration
    finishes normally, ``answer`` holds the complete (untrimmed) answer.
    Producer errors are re-raised in the consumer. A consumer that waits
    longer than ``timeout`` seconds for the next event cancels the stream and
    gets RemoteCallFailed.
    """

    def __init__(
        self,
        open_deltas: Callable[[], Iterable[str]],
        timeout: Optional[float] = None,
    ):
        self._open_deltas = open_deltas
        self.timeout = timeout
        self.answer: Optional[str] = None
        self._events: "queue.Queue[StreamEvent]" = queue.Queue()
        self._cancelled = threading.Event()
        self._worker: Optional[threading.Thread] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Ask the producer to stop at the next delta."""
        self._cancelled.set()

    def __iter__(self) -> Iterator[str]:
        if self._worker is not None:
            raise RuntimeError("SnapshotStream can only be iterated once")
        self._worker = threading.Thread(target=self._produce, name="snapshot-stream", daemon=True)
        self._worker.start()
        try:
            while True:
                try:
                    event = self._events.get(timeout=self.timeout)
                except queue.Empty:
                    raise RemoteCallFailed(
                        f"No response from the completion stream within {self.timeout} seconds"
                    )
                if event.status == StreamStatus.PARTIAL:
                    yield event.text
                elif event.status == StreamStatus.DONE:
                    self.answer = event.text
                    return
                else:
                    raise event.error
        finally:
            # Abandoned, failed or finished: the producer must not keep going
            self.cancel()

    def _produce(self) -> None:
        answer = ""
        deltas = None
        try:
            deltas = self._open_deltas()
            for delta in deltas:
                if self._cancelled.is_set():
                    logger.debug("Stream cancelled by consumer")
                    return
                if not delta:
                    continue
                answer += delta
                self._events.put(StreamEvent(StreamStatus.PARTIAL, text=answer))
            self._events.put(StreamEvent(StreamStatus.DONE, text=answer))
        except Exception as e:
            logger.warning("Completion stream failed: %s", e)
            self._events.put(StreamEvent(StreamStatus.ERROR, error=e))
        finally:
            close = getattr(deltas, "close", None)
            if close is not None:
                close()
