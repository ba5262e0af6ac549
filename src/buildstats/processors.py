"""Event processors for the two per-build streams.

BuildInfoProcessor reads a build's metadata events and decides whether the
build passes the build-level filters. TaskEventsProcessor tracks the build's
task lifecycle and turns it into BuildStatistics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from buildstats.events import Event, EventType, ProtocolError
from buildstats.filters import BuildFilters
from buildstats.statistics import BuildStatistics, TaskRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildMetadataResult:
    """Outcome of evaluating a build's metadata.

    Attributes:
        build_id: The evaluated build.
        matches: Whether the build passes all build-level filters.
        max_workers: The build's configured maximum worker count.
    """

    build_id: str
    matches: bool
    max_workers: int = 0


@dataclass
class BuildInfoProcessor:
    """Collects project, tag, worker and requested-task metadata of a build."""

    build_id: str
    filters: BuildFilters = field(default_factory=BuildFilters)
    root_projects: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    requested_tasks: list[str] = field(default_factory=list)
    max_workers: int = 0

    def process(self, event: Event) -> None:
        if event.event_type == EventType.PROJECT_STRUCTURE:
            self.root_projects.append(str(event.get("rootProjectName")))
        elif event.event_type == EventType.USER_TAG:
            self.tags.append(str(event.get("tag")))
        elif event.event_type == EventType.BUILD_MODES:
            self.max_workers = int(event.get("maxWorkers"))
        elif event.event_type == EventType.BUILD_REQUESTED_TASKS:
            self.requested_tasks = [str(task) for task in event.get("requested")]
        else:
            raise ProtocolError(f"Unknown event type: {event.event_type}")

    def complete(self) -> BuildMetadataResult:
        matches = self.filters.matches_build(
            self.root_projects, self.tags, self.requested_tasks
        )
        return BuildMetadataResult(
            build_id=self.build_id,
            matches=matches,
            max_workers=self.max_workers,
        )


@dataclass
class TaskEventsProcessor:
    """Tracks task start and finish events of a build."""

    build_id: str
    max_workers: int = 0
    filters: BuildFilters = field(default_factory=BuildFilters)
    tasks: dict[int, TaskRecord] = field(default_factory=dict)

    def process(self, event: Event) -> None:
        if event.event_type == EventType.TASK_STARTED:
            task_id = int(event.get("id"))
            if task_id in self.tasks:
                raise ProtocolError(
                    f"Build {self.build_id}: task {task_id} started twice"
                )
            self.tasks[task_id] = TaskRecord(
                type=str(event.get("className")),
                path=str(event.get("path")),
                start_time=event.timestamp,
            )
        elif event.event_type == EventType.TASK_FINISHED:
            task_id = int(event.get("id"))
            task = self.tasks.get(task_id)
            if task is None:
                raise ProtocolError(
                    f"Build {self.build_id}: task {task_id} finished but never started"
                )
            if task.finished:
                raise ProtocolError(
                    f"Build {self.build_id}: task {task_id} finished twice"
                )
            task.finish_time = event.timestamp
            task.outcome = str(event.get("outcome"))
        else:
            raise ProtocolError(f"Unknown event type: {event.event_type}")

    def complete(self) -> BuildStatistics:
        logger.info(f"Finished processing build {self.build_id}")
        return BuildStatistics.from_tasks(
            self.build_id,
            self.tasks.values(),
            self.max_workers,
            task_types=self.filters.task_types,
        )
