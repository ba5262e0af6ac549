"""Concurrent analysis of many builds.

For every build ID the analyzer streams the build's metadata events, checks
them against the build filters and, for matching builds, streams the task
events and computes the build's statistics. Builds run concurrently on a
bounded thread pool. A build that fails is logged and counts as empty; it
never stops the other builds.

Architecture:
    build IDs (list / file / live query)
            |
            v
    ThreadPoolExecutor (max_concurrency workers)
            | per build
            v
    metadata stream -> BuildInfoProcessor -> filters match?
            | yes                               | no
            v                                   v
    task stream -> TaskEventsProcessor        EMPTY
            |
            v
    BuildStatistics.merge (calling thread, in completion order)
"""

from __future__ import annotations

import logging
from concurrent.futures import (
    FIRST_COMPLETED,
    Future,
    ThreadPoolExecutor,
    as_completed,
    wait,
)
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Protocol, Sequence, TypeVar

from buildstats.bridge import EventSourceBridge
from buildstats.build_ids import load_build_ids
from buildstats.events import BUILD_INFO_EVENT_TYPES, TASK_EVENT_TYPES, decode_json
from buildstats.filters import BuildFilters
from buildstats.processors import (
    BuildInfoProcessor,
    BuildMetadataResult,
    TaskEventsProcessor,
)
from buildstats.session import EventProcessor, ProcessingSession
from buildstats.statistics import EMPTY, BuildStatistics
from buildstats.transport import TransportError

if TYPE_CHECKING:
    from buildstats.transport import EventSource, EventSourceListener

T = TypeVar("T")

logger = logging.getLogger(__name__)

GRADLE_TOOL_TYPE = "gradle"


class BuildEventClient(Protocol):
    """The part of ExportApiClient the analyzer depends on."""

    def builds_since(self, since: datetime, listener: EventSourceListener) -> EventSource: ...

    def build_events(
        self,
        build_id: str,
        event_types: Sequence[str],
        listener: EventSourceListener,
    ) -> EventSource: ...


class GradleBuildCollector:
    """Listener for the builds query that forwards Gradle build IDs to a bridge."""

    def __init__(self, bridge: EventSourceBridge[str]):
        self.bridge = bridge
        self.build_count = 0

    def on_open(self, source: EventSource) -> None:
        logger.info("Streaming builds...")

    def on_event(
        self,
        source: EventSource,
        event_id: str | None,
        event_type: str | None,
        data: str,
    ) -> None:
        try:
            build = decode_json(data)
            if build.get("toolType") != GRADLE_TOOL_TYPE:
                return
            build_id = build["buildId"]
            self.bridge.put(str(build_id))
        except Exception as e:
            source.cancel()
            self.bridge.fail(e)
            return

        self.build_count += 1

    def on_closed(self, source: EventSource) -> None:
        logger.info(f"Finished querying builds, found {self.build_count}")
        self.bridge.close()

    def on_failure(self, source: EventSource, error: BaseException | None) -> None:
        logger.error(f"Querying builds failed: {error}")
        self.bridge.fail(error or TransportError("Querying builds failed"))


@dataclass(frozen=True)
class BuildOutcome:
    """Result of analyzing a single build.

    Attributes:
        build_id: The analyzed build.
        statistics: The build's statistics; EMPTY if it did not match or failed.
        matched: Whether the build passed the build-level filters.
        error: The error that failed the build, if any.
    """

    build_id: str
    statistics: BuildStatistics = EMPTY
    matched: bool = False
    error: BaseException | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class AnalysisSummary:
    """Counters over all analyzed builds."""

    processed: int = 0
    matched: int = 0
    failed: int = 0

    def add(self, outcome: BuildOutcome) -> None:
        self.processed += 1
        if outcome.failed:
            self.failed += 1
        elif outcome.matched:
            self.matched += 1


class BuildAnalyzer:
    """Analyzes builds concurrently and merges their statistics."""

    def __init__(
        self,
        client: BuildEventClient,
        filters: BuildFilters | None = None,
        max_concurrency: int = 30,
    ):
        """Initialize the analyzer.

        Args:
            client: Source of build and event streams.
            filters: Build and task filters. Defaults to matching everything.
            max_concurrency: Maximum number of builds processed at once.

        Raises:
            ValueError: If max_concurrency is not positive.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.client = client
        self.filters = filters or BuildFilters()
        self.max_concurrency = max_concurrency
        self.summary = AnalysisSummary()

    def resolve_build_ids(
        self,
        builds: Sequence[str] | None = None,
        build_file: Path | None = None,
        since: timedelta = timedelta(hours=2),
    ) -> Iterable[str]:
        """Pick the build ID source.

        An explicit list wins over a file, which wins over a live query.

        Args:
            builds: Explicit build IDs.
            build_file: File with one build ID per line.
            since: Window for the live query, counted back from now.

        Returns:
            The build IDs; lazily produced when querying the server.
        """
        if builds is not None:
            return list(builds)
        if build_file is not None:
            logger.info(f"Fetching build IDs from {build_file}")
            return load_build_ids(build_file)
        return self.query_builds_since(datetime.now(timezone.utc) - since)

    def query_builds_since(self, since: datetime) -> EventSourceBridge[str]:
        """Start streaming the IDs of Gradle builds started after ``since``.

        Returns:
            A bridge yielding build IDs as the server reports them.
        """
        logger.info(f"Querying builds since {since.astimezone():%Y-%m-%d %H:%M:%S %Z}")
        bridge: EventSourceBridge[str] = EventSourceBridge()
        source = self.client.builds_since(since, GradleBuildCollector(bridge))
        source.start()
        return bridge

    def fetch_build_info(self, build_id: str) -> BuildMetadataResult:
        """Stream a build's metadata and evaluate the build filters."""
        processor = BuildInfoProcessor(build_id, filters=self.filters)
        return self._process_events(build_id, BUILD_INFO_EVENT_TYPES, processor)

    def fetch_build_statistics(self, build_id: str, max_workers: int) -> BuildStatistics:
        """Stream a build's task events and compute its statistics."""
        processor = TaskEventsProcessor(
            build_id, max_workers=max_workers, filters=self.filters
        )
        return self._process_events(build_id, TASK_EVENT_TYPES, processor)

    def analyze_build(self, build_id: str) -> BuildOutcome:
        """Analyze one build.

        Errors are not caught here; see ``analyze`` for failure isolation.
        """
        info = self.fetch_build_info(build_id)
        if not info.matches:
            logger.debug(f"Build {build_id} does not match the filters")
            return BuildOutcome(build_id)

        statistics = self.fetch_build_statistics(build_id, info.max_workers)
        return BuildOutcome(build_id, statistics=statistics, matched=True)

    def analyze(self, build_ids: Iterable[str]) -> BuildStatistics:
        """Analyze all builds and merge their statistics.

        Args:
            build_ids: The builds to analyze; may be produced lazily.

        Returns:
            The merged statistics of all matching builds, or EMPTY.

        Raises:
            ProducerInterruptedError: If the build ID source failed.
        """
        self.summary = AnalysisSummary()
        logger.debug(f"Active filters: {self.filters.describe() or 'none'}")
        executor = ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="buildstats"
        )
        total = EMPTY
        pending: set[Future[BuildOutcome]] = set()
        try:
            for build_id in build_ids:
                pending.add(executor.submit(self._analyze_build_isolated, build_id))
                # At most max_concurrency builds are in flight; the rest of the
                # source is not pulled until a slot frees up.
                if len(pending) >= self.max_concurrency:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                else:
                    done = {future for future in pending if future.done()}
                    pending -= done
                total = self._reduce(total, done)

            for future in as_completed(pending):
                total = self._reduce(total, (future,))
        except BaseException:
            executor.shutdown(wait=False, cancel_futures=True)
            raise

        executor.shutdown(wait=True)
        logger.info(
            f"Processed {self.summary.processed} builds: "
            f"{self.summary.matched} matched, {self.summary.failed} failed"
        )
        return total

    def _reduce(
        self, total: BuildStatistics, done: Iterable[Future[BuildOutcome]]
    ) -> BuildStatistics:
        for future in done:
            outcome = future.result()
            self.summary.add(outcome)
            total = total.merge(outcome.statistics)
        return total

    def _analyze_build_isolated(self, build_id: str) -> BuildOutcome:
        try:
            return self.analyze_build(build_id)
        except Exception as e:
            logger.error(f"Failed to process build {build_id}: {e}", exc_info=True)
            return BuildOutcome(build_id, error=e)

    def _process_events(
        self,
        build_id: str,
        event_types: Sequence[str],
        processor: EventProcessor[T],
    ) -> T:
        session: ProcessingSession[T] = ProcessingSession(build_id, processor)
        source = self.client.build_events(build_id, event_types, session)
        return session.run(source)
