"""Per-build event processing sessions.

A ProcessingSession listens to one event stream, feeds every decoded event to
an EventProcessor and resolves exactly once: with the processor's result when
the stream completes, or with the error that ended it.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import TYPE_CHECKING, Generic, Protocol, TypeVar

from buildstats.events import Event, decode_event
from buildstats.transport import TransportError

if TYPE_CHECKING:
    from buildstats.transport import EventSource

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)

logger = logging.getLogger(__name__)


class EventProcessor(Protocol[T_co]):
    """Accumulates the events of one stream into a result."""

    def process(self, event: Event) -> None:
        """Fold one event into the processor's state.

        Raises:
            ProtocolError: If the event is unexpected or references unknown state.
        """
        ...

    def complete(self) -> T_co:
        """Return the final result once the stream has completed."""
        ...


class OneShotResult(Generic[T]):
    """A result cell that can be resolved only once.

    Later attempts to resolve it are ignored and reported as such.
    """

    def __init__(self) -> None:
        self._future: Future[T] = Future()
        self._lock = threading.Lock()
        self._resolved = False

    @property
    def done(self) -> bool:
        with self._lock:
            return self._resolved

    def set_result(self, value: T) -> bool:
        """Resolve with a value.

        Returns:
            True if this call resolved the cell, False if it was already resolved.
        """
        with self._lock:
            if self._resolved:
                return False
            self._resolved = True
        self._future.set_result(value)
        return True

    def set_exception(self, error: BaseException) -> bool:
        """Resolve with an error.

        Returns:
            True if this call resolved the cell, False if it was already resolved.
        """
        with self._lock:
            if self._resolved:
                return False
            self._resolved = True
        self._future.set_exception(error)
        return True

    def result(self, timeout: float | None = None) -> T:
        """Wait for the value, raising the error if the cell failed."""
        return self._future.result(timeout=timeout)

    def exception(self, timeout: float | None = None) -> BaseException | None:
        return self._future.exception(timeout=timeout)


class ProcessingSession(Generic[T]):
    """Drives one event stream through an EventProcessor.

    The session is the listener passed to an EventSource. Its callbacks may run
    on the transport's thread; ``result`` may be awaited from any thread.
    """

    def __init__(self, build_id: str, processor: EventProcessor[T]):
        """Initialize the session.

        Args:
            build_id: The build whose events are streamed (used in logs).
            processor: Accumulator fed with every decoded event.
        """
        self.build_id = build_id
        self.processor = processor
        self.result: OneShotResult[T] = OneShotResult()
        self.event_count = 0

    def on_open(self, source: EventSource) -> None:
        logger.debug(f"Streaming events for build {self.build_id}")

    def on_event(
        self,
        source: EventSource,
        event_id: str | None,
        event_type: str | None,
        data: str,
    ) -> None:
        """Decode an event and pass it to the processor."""
        if self.result.done:
            return

        try:
            event = decode_event(data)
            self.processor.process(event)
        except Exception as e:
            if self.result.set_exception(e):
                source.cancel()
            return

        self.event_count += 1

    def on_closed(self, source: EventSource) -> None:
        """Complete the processor after the stream ended normally."""
        if self.result.done:
            return

        try:
            value = self.processor.complete()
        except Exception as e:
            self.result.set_exception(e)
            return

        self.result.set_result(value)

    def on_failure(self, source: EventSource, error: BaseException | None) -> None:
        """Fail the session with the transport error."""
        if error is None:
            error = TransportError(f"Event stream for build {self.build_id} failed")
        self.result.set_exception(error)

    def run(self, source: EventSource) -> T:
        """Stream the source in the calling thread and return the result.

        Args:
            source: An event source created with this session as its listener.

        Returns:
            The processor's result.

        Raises:
            Exception: Whatever error ended the stream.
        """
        source.run()
        if not self.result.done:
            self.result.set_exception(
                TransportError(
                    f"Event stream for build {self.build_id} ended without completion"
                )
            )
        return self.result.result()
