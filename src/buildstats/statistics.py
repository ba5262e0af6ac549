"""Mergeable build statistics.

BuildStatistics is an immutable value computed for one build from its task
records, and combined across builds with ``merge``. Merging is associative
and commutative (apart from the order of ``build_ids``), with EMPTY as the
identity, so per-build results can be folded in whatever order they finish.

Usage:
    from buildstats.statistics import EMPTY, BuildStatistics

    stats = BuildStatistics.from_tasks("abc123", tasks, max_workers=8)
    total = BuildStatistics.combine([stats, other_stats])
    print(total.render())
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, TypeVar

from buildstats.filters import Filter

K = TypeVar("K")

# Outcomes of tasks that actually executed work
COUNTED_OUTCOMES = frozenset({"success", "failed"})

NO_MATCHING_BUILDS = "No matching builds found"


@dataclass
class TaskRecord:
    """Lifecycle of a single task within a build.

    Attributes:
        type: Fully qualified class name of the task implementation.
        path: Task path within the build (e.g. ``:core:compileJava``).
        start_time: Start timestamp in milliseconds.
        finish_time: Finish timestamp in milliseconds, once finished.
        outcome: Task outcome (success, failed, skipped, up-to-date, ...).
    """

    type: str
    path: str
    start_time: int
    finish_time: int | None = None
    outcome: str | None = None

    @property
    def finished(self) -> bool:
        return self.finish_time is not None

    @property
    def duration(self) -> int:
        """Duration in milliseconds (0 while unfinished)."""
        if self.finish_time is None:
            return 0
        return self.finish_time - self.start_time


def _frozen(items: Mapping[K, int]) -> Mapping[K, int]:
    return MappingProxyType(dict(sorted(items.items())))


def _add(target: dict[K, int], key: K, delta: int) -> None:
    target[key] = target.get(key, 0) + delta


def _merge_maps(a: Mapping[K, int], b: Mapping[K, int]) -> dict[K, int]:
    merged = dict(a)
    for key, value in b.items():
        _add(merged, key, value)
    return merged


def concurrency_histogram(intervals: Iterable[tuple[int, int]]) -> dict[int, int]:
    """Compute how long each number of tasks was running at the same time.

    Args:
        intervals: (start, finish) pairs in milliseconds.

    Returns:
        Mapping of concurrency level to milliseconds spent at that level.
        Periods where nothing runs are not counted.
    """
    # Deltas at the same instant must cancel before the sweep, otherwise a task
    # finishing exactly when another starts shows up as a zero-length dip.
    deltas: dict[int, int] = {}
    for start, finish in intervals:
        _add(deltas, start, 1)
        _add(deltas, finish, -1)

    histogram: dict[int, int] = {}
    level = 0
    last_timestamp = 0
    for timestamp in sorted(deltas):
        if level != 0:
            _add(histogram, level, timestamp - last_timestamp)
        level += deltas[timestamp]
        last_timestamp = timestamp

    return histogram


@dataclass(frozen=True)
class BuildStatistics:
    """Aggregated task statistics over one or more builds.

    Attributes:
        build_ids: IDs of the aggregated builds, in merge order.
        task_count: Number of counted tasks.
        task_type_times: Cumulative task time in ms, keyed by task type.
        task_path_times: Cumulative task time in ms, keyed by task path.
        concurrency_histogram: Milliseconds spent at each concurrency level.
        max_workers_histogram: Number of builds per configured max workers.
    """

    build_ids: tuple[str, ...] = ()
    task_count: int = 0
    task_type_times: Mapping[str, int] = field(default_factory=dict)
    task_path_times: Mapping[str, int] = field(default_factory=dict)
    concurrency_histogram: Mapping[int, int] = field(default_factory=dict)
    max_workers_histogram: Mapping[int, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "build_ids", tuple(self.build_ids))
        for name in (
            "task_type_times",
            "task_path_times",
            "concurrency_histogram",
            "max_workers_histogram",
        ):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

    @property
    def is_empty(self) -> bool:
        """Whether no build contributed to these statistics."""
        return not self.build_ids

    @classmethod
    def from_tasks(
        cls,
        build_id: str,
        tasks: Iterable[TaskRecord],
        max_workers: int,
        task_types: Filter = Filter.ANY,
    ) -> BuildStatistics:
        """Compute the statistics of a single build.

        Only tasks that finished with a counted outcome and pass the task-type
        filter contribute.

        Args:
            build_id: The build the tasks belong to.
            tasks: The build's task records.
            max_workers: The build's configured maximum worker count.
            task_types: Filter applied to each task's type.

        Returns:
            Statistics for the build.
        """
        task_count = 0
        type_times: dict[str, int] = {}
        path_times: dict[str, int] = {}
        intervals: list[tuple[int, int]] = []

        for task in tasks:
            if task.outcome not in COUNTED_OUTCOMES or task.finish_time is None:
                continue
            if not task_types.matches((task.type,)):
                continue

            task_count += 1
            _add(type_times, task.type, task.duration)
            _add(path_times, task.path, task.duration)
            intervals.append((task.start_time, task.finish_time))

        return cls(
            build_ids=(build_id,),
            task_count=task_count,
            task_type_times=type_times,
            task_path_times=path_times,
            concurrency_histogram=concurrency_histogram(intervals),
            max_workers_histogram={max_workers: 1},
        )

    def merge(self, other: BuildStatistics) -> BuildStatistics:
        """Combine these statistics with another set.

        Args:
            other: The statistics to add.

        Returns:
            New statistics; neither operand is modified.
        """
        if other.is_empty:
            return self
        if self.is_empty:
            return other

        return BuildStatistics(
            build_ids=self.build_ids + other.build_ids,
            task_count=self.task_count + other.task_count,
            task_type_times=_merge_maps(self.task_type_times, other.task_type_times),
            task_path_times=_merge_maps(self.task_path_times, other.task_path_times),
            concurrency_histogram=_merge_maps(
                self.concurrency_histogram, other.concurrency_histogram
            ),
            max_workers_histogram=_merge_maps(
                self.max_workers_histogram, other.max_workers_histogram
            ),
        )

    @classmethod
    def combine(cls, results: Iterable[BuildStatistics]) -> BuildStatistics:
        """Merge any number of statistics, starting from EMPTY."""
        total = EMPTY
        for result in results:
            total = total.merge(result)
        return total

    def render(self) -> str:
        """Format the statistics as the plain-text report."""
        if self.is_empty:
            return NO_MATCHING_BUILDS

        lines = [
            f"Statistics for {len(self.build_ids)} builds with {self.task_count} tasks",
            "",
            "Concurrency levels:",
        ]
        max_level = max(self.concurrency_histogram, default=0)
        for level in range(max_level, 0, -1):
            lines.append(f"{level}: {self.concurrency_histogram.get(level, 0)} ms")

        lines += ["", "Task times by type:"]
        lines += [f"{key}: {value}" for key, value in sorted(self.task_type_times.items())]

        lines += ["", "Task times by path:"]
        lines += [f"{key}: {value}" for key, value in sorted(self.task_path_times.items())]

        lines += ["", "Max workers:"]
        most_workers = max(self.max_workers_histogram, default=0)
        for workers in range(most_workers, 0, -1):
            lines.append(
                f"{workers}: {self.max_workers_histogram.get(workers, 0)} builds"
            )

        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "build_ids": list(self.build_ids),
            "task_count": self.task_count,
            "task_type_times": dict(self.task_type_times),
            "task_path_times": dict(self.task_path_times),
            "concurrency_histogram": {
                str(k): v for k, v in self.concurrency_histogram.items()
            },
            "max_workers_histogram": {
                str(k): v for k, v in self.max_workers_histogram.items()
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BuildStatistics:
        """Deserialize from dictionary.

        Args:
            data: Dictionary as produced by ``to_dict``.

        Returns:
            BuildStatistics instance.
        """
        return cls(
            build_ids=tuple(data.get("build_ids", ())),
            task_count=data.get("task_count", 0),
            task_type_times=data.get("task_type_times", {}),
            task_path_times=data.get("task_path_times", {}),
            concurrency_histogram={
                int(k): v for k, v in data.get("concurrency_histogram", {}).items()
            },
            max_workers_histogram={
                int(k): v for k, v in data.get("max_workers_histogram", {}).items()
            },
        )


EMPTY = BuildStatistics()
