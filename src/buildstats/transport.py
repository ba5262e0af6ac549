"""Server-Sent Events transport for the Export API.

The Export API streams builds and build events as Server-Sent Events. An
EventSource performs one streamed GET request and pushes each received event
to a listener, in the style of a browser EventSource::

    listener.on_open(source)
    listener.on_event(source, event_id, event_type, data)   # once per event
    listener.on_closed(source)                              # orderly end
    listener.on_failure(source, error)                      # or on error

Exactly one of ``on_closed`` / ``on_failure`` is called, unless the source is
cancelled first, in which case neither is.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Generator, Iterable, Iterator, Protocol, Sequence

import httpx

DEFAULT_SERVER_URL = "https://ge.gradle.org"

BUILDS_SINCE_PATH = "/build-export/v2/builds/since/{since}"
BUILD_EVENTS_PATH = "/build-export/v2/build/{build_id}/events"

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when an event stream cannot be opened or breaks off."""


class EventSourceListener(Protocol):
    """Receives the callbacks of an EventSource."""

    def on_open(self, source: EventSource) -> None: ...

    def on_event(
        self,
        source: EventSource,
        event_id: str | None,
        event_type: str | None,
        data: str,
    ) -> None: ...

    def on_closed(self, source: EventSource) -> None: ...

    def on_failure(self, source: EventSource, error: BaseException | None) -> None: ...


@dataclass(frozen=True)
class ServerSentEvent:
    """A single dispatched Server-Sent Event."""

    data: str
    event: str | None = None
    id: str | None = None
    retry: int | None = None


def iter_sse(lines: Iterable[str]) -> Iterator[ServerSentEvent]:
    """Parse an event stream into events.

    Args:
        lines: Lines of the stream, without line terminators.

    Yields:
        Each event terminated by a blank line. A trailing event without a
        terminating blank line is discarded.
    """
    data: list[str] = []
    event: str | None = None
    last_id: str | None = None
    retry: int | None = None

    for line in lines:
        if not line:
            if data:
                yield ServerSentEvent(
                    data="\n".join(data), event=event, id=last_id, retry=retry
                )
            data = []
            event = None
            retry = None
            continue

        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            data.append(value)
        elif name == "event":
            event = value
        elif name == "id":
            if "\0" not in value:
                last_id = value
        elif name == "retry":
            if value.isdigit():
                retry = int(value)


class BearerAuth(httpx.Auth):
    """Sends the Export API access key as a bearer token."""

    def __init__(self, token: str):
        self.token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self.token}"
        yield request


class EventSource:
    """One streamed request whose events are pushed to a listener."""

    def __init__(
        self,
        client: httpx.Client,
        url: str,
        listener: EventSourceListener,
        params: dict[str, str] | None = None,
    ):
        """Initialize the event source.

        Args:
            client: The shared HTTP client.
            url: Request URL, relative to the client's base URL.
            listener: Receives the stream callbacks.
            params: Optional query parameters.
        """
        self.client = client
        self.url = url
        self.listener = listener
        self.params = params
        self._cancelled = threading.Event()
        self._response: httpx.Response | None = None
        self._thread: threading.Thread | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop delivering events. Safe to call from any thread."""
        self._cancelled.set()
        response = self._response
        if response is not None and threading.current_thread() is not self._thread:
            response.close()

    def start(self) -> threading.Thread:
        """Stream the request on a background thread.

        Returns:
            The started daemon thread.
        """
        thread = threading.Thread(
            target=self.run, name=f"event-source {self.url}", daemon=True
        )
        thread.start()
        return thread

    def run(self) -> None:
        """Stream the request in the calling thread until it ends."""
        self._thread = threading.current_thread()
        try:
            self._stream()
        except TransportError as e:
            self._fail(e)
            return
        except (httpx.HTTPError, httpx.StreamError) as e:
            self._fail(TransportError(f"Streaming {self.url} failed: {e}"))
            return
        except Exception as e:
            # Listeners waiting on this source must hear about it even when the
            # source runs on its own thread.
            logger.error(f"Event source {self.url} crashed: {e}", exc_info=True)
            self._fail(e)
            return

        if not self.cancelled:
            self.listener.on_closed(self)

    def _stream(self) -> None:
        with self.client.stream(
            "GET",
            self.url,
            params=self.params,
            headers={"Accept": "text/event-stream"},
        ) as response:
            self._response = response
            if not response.is_success:
                raise TransportError(
                    f"Streaming {self.url} failed with HTTP {response.status_code}"
                )

            self.listener.on_open(self)
            for sse in iter_sse(response.iter_lines()):
                if self.cancelled:
                    return
                self.listener.on_event(self, sse.id, sse.event, sse.data)

    def _fail(self, error: Exception) -> None:
        if self.cancelled:
            logger.debug(f"Ignoring error after cancel of {self.url}: {error}")
            return
        self.listener.on_failure(self, error)


class ExportApiClient:
    """Client for the build export endpoints.

    Holds one connection pool shared by all concurrently streamed builds.
    """

    def __init__(
        self,
        server_url: str = DEFAULT_SERVER_URL,
        api_key: str | None = None,
        max_concurrency: int = 30,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            server_url: Base URL of the server.
            api_key: Export API access key, sent as a bearer token.
            max_concurrency: Maximum number of simultaneously open streams.
            transport: Optional httpx transport (used by tests).
        """
        self.server_url = server_url.rstrip("/")
        self.max_concurrency = max_concurrency
        self._client = httpx.Client(
            base_url=self.server_url,
            auth=BearerAuth(api_key) if api_key else None,
            timeout=httpx.Timeout(None),
            limits=httpx.Limits(
                max_connections=max_concurrency,
                max_keepalive_connections=max_concurrency,
                keepalive_expiry=30,
            ),
            transport=transport,
        )

    def new_event_source(
        self,
        url: str,
        listener: EventSourceListener,
        params: dict[str, str] | None = None,
    ) -> EventSource:
        """Create an event source for a path on the server."""
        return EventSource(self._client, url, listener, params=params)

    def builds_since(self, since: datetime, listener: EventSourceListener) -> EventSource:
        """Create an event source streaming the builds that started after ``since``."""
        since_ms = int(since.timestamp() * 1000)
        return self.new_event_source(BUILDS_SINCE_PATH.format(since=since_ms), listener)

    def build_events(
        self,
        build_id: str,
        event_types: Sequence[str],
        listener: EventSourceListener,
    ) -> EventSource:
        """Create an event source streaming the given event types of one build."""
        return self.new_event_source(
            BUILD_EVENTS_PATH.format(build_id=build_id),
            listener,
            params={"eventTypes": ",".join(event_types)},
        )

    def close(self) -> None:
        """Close the connection pool."""
        self._client.close()

    def __enter__(self) -> ExportApiClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
