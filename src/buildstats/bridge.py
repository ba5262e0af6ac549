"""Push-to-pull bridge for callback-driven event sources.

A transport delivers items by calling back into a listener, possibly from a
background thread. The bridge lets a single consumer thread read those items
as an ordinary iterable, in arrival order, until the producer closes it.

Usage:
    bridge: EventSourceBridge[str] = EventSourceBridge()

    # producer side (any thread)
    bridge.put("build-1")
    bridge.close()

    # consumer side
    for build_id in bridge:
        ...
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Generic, Iterator, TypeVar

T = TypeVar("T")


class BridgeClosedError(RuntimeError):
    """Raised when an item is put into a bridge that was already closed."""


class ProducerInterruptedError(RuntimeError):
    """Raised on the consumer side when the producer failed or was interrupted."""


@dataclass(frozen=True)
class Item(Generic[T]):
    """A value produced into the bridge."""

    value: T


class EndOfStream:
    """Marker returned once the bridge is closed and fully drained."""

    _instance: EndOfStream | None = None

    def __new__(cls) -> EndOfStream:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = EndOfStream()


class EventSourceBridge(Generic[T]):
    """Thread-safe channel with an explicit end-of-stream marker.

    The bridge is unbounded unless ``maxsize`` is positive, in which case
    ``put`` blocks while the bridge is full.
    """

    def __init__(self, maxsize: int = 0):
        """Initialize the bridge.

        Args:
            maxsize: Maximum number of queued items. Zero or negative means
                unbounded.
        """
        self.maxsize = maxsize
        self._entries: deque[Item[T]] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._closed = False
        self._failure: BaseException | None = None

    @property
    def closed(self) -> bool:
        """Whether the producer has signalled the end of the stream."""
        with self._lock:
            return self._closed

    def put(self, item: T) -> None:
        """Enqueue an item for the consumer.

        Args:
            item: The value to enqueue.

        Raises:
            BridgeClosedError: If the bridge was already closed or failed.
        """
        with self._not_full:
            try:
                while self.maxsize > 0 and len(self._entries) >= self.maxsize:
                    if self._closed:
                        break
                    self._not_full.wait()
            except BaseException as e:
                # The consumer must not wait forever on an item that never comes
                self._failure = e
                self._closed = True
                self._not_empty.notify_all()
                raise

            if self._closed:
                raise BridgeClosedError("Cannot put into a closed bridge")

            self._entries.append(Item(item))
            self._not_empty.notify()

    def close(self) -> None:
        """Signal that no more items will be produced."""
        with self._lock:
            self._closed = True
            self._not_empty.notify_all()
            self._not_full.notify_all()

    def fail(self, error: BaseException) -> None:
        """Signal that the producer failed.

        Items queued before the failure are still delivered; the consumer then
        raises ProducerInterruptedError.

        Args:
            error: The error that stopped the producer.
        """
        with self._lock:
            if self._failure is None:
                self._failure = error
            self._closed = True
            self._not_empty.notify_all()
            self._not_full.notify_all()

    def get(self, timeout: float | None = None) -> Item[T] | EndOfStream:
        """Take the next entry, blocking until one is available.

        Args:
            timeout: Maximum seconds to wait. None waits indefinitely.

        Returns:
            The next Item, or END_OF_STREAM once the bridge is closed and
            drained. Further reads keep returning END_OF_STREAM.

        Raises:
            ProducerInterruptedError: If the producer failed.
            TimeoutError: If no entry arrived within ``timeout`` seconds.
        """
        with self._not_empty:
            if not self._not_empty.wait_for(
                lambda: self._entries or self._closed, timeout=timeout
            ):
                raise TimeoutError("Timed out waiting for the event source")

            if self._entries:
                entry = self._entries.popleft()
                self._not_full.notify()
                return entry

            if self._failure is not None:
                raise ProducerInterruptedError(
                    f"Event source producer failed: {self._failure}"
                ) from self._failure

            return END_OF_STREAM

    def __iter__(self) -> Iterator[T]:
        """Lazily yield values until the end of the stream."""
        while True:
            entry = self.get()
            if isinstance(entry, EndOfStream):
                return
            yield entry.value
