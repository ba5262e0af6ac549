"""buildstats - Task performance statistics from build event streams.

Streams build metadata and task events from the Export API, filters builds and
tasks, and aggregates task concurrency, per-type and per-path task times, and
max-worker settings across many builds processed concurrently.
"""

__version__ = "0.1.0"

from buildstats.bridge import EventSourceBridge, ProducerInterruptedError
from buildstats.filters import BuildFilters, Filter
from buildstats.statistics import EMPTY, BuildStatistics, TaskRecord

__all__ = [
    "EventSourceBridge",
    "ProducerInterruptedError",
    "BuildFilters",
    "Filter",
    "EMPTY",
    "BuildStatistics",
    "TaskRecord",
]
