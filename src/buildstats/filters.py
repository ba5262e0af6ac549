"""Include/exclude filters for builds and tasks.

A Filter combines an optional include criterion with an optional exclude
criterion. Candidates are the string values a build or task exposes for one
dimension: root project names, user tags, requested tasks, or the task type.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import ClassVar, Iterable, Protocol


class Criterion(Protocol):
    """A test applied to a single candidate value."""

    def satisfied_by(self, candidate: str) -> bool: ...


@dataclass(frozen=True)
class ValueSet:
    """Satisfied by candidates equal to one of the values."""

    values: frozenset[str]

    def satisfied_by(self, candidate: str) -> bool:
        return candidate in self.values


@dataclass(frozen=True)
class PrefixSet:
    """Satisfied by candidates starting with one of the prefixes."""

    prefixes: tuple[str, ...]

    def satisfied_by(self, candidate: str) -> bool:
        return candidate.startswith(self.prefixes)


@dataclass(frozen=True)
class Pattern:
    """Satisfied by candidates fully matching the regular expression."""

    regex: re.Pattern[str]

    def satisfied_by(self, candidate: str) -> bool:
        return self.regex.fullmatch(candidate) is not None


@dataclass(frozen=True)
class Filter:
    """Include/exclude matcher over a set of candidate strings.

    Attributes:
        include: At least one candidate must satisfy this, if set.
        exclude: No candidate may satisfy this, if set.
    """

    include: Criterion | None = None
    exclude: Criterion | None = None

    ANY: ClassVar[Filter]

    def matches(self, candidates: Iterable[str]) -> bool:
        """Check whether the candidates pass the filter.

        Args:
            candidates: The values to test.

        Returns:
            True if the include criterion (when set) is satisfied by some
            candidate and the exclude criterion (when set) by none.
        """
        values = list(candidates)
        if self.include is not None and not any(
            self.include.satisfied_by(value) for value in values
        ):
            return False
        if self.exclude is not None and any(
            self.exclude.satisfied_by(value) for value in values
        ):
            return False
        return True

    @property
    def is_identity(self) -> bool:
        """Whether the filter accepts everything."""
        return self.include is None and self.exclude is None

    @classmethod
    def of_values(
        cls,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> Filter:
        """Create a filter testing membership in literal value sets.

        Empty or missing lists leave the corresponding side unconfigured.
        """
        return cls(
            include=ValueSet(frozenset(include)) if include else None,
            exclude=ValueSet(frozenset(exclude)) if exclude else None,
        )

    @classmethod
    def of_prefixes(
        cls,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> Filter:
        """Create a filter testing candidates against value prefixes."""
        return cls(
            include=PrefixSet(tuple(include)) if include else None,
            exclude=PrefixSet(tuple(exclude)) if exclude else None,
        )

    @classmethod
    def of_patterns(
        cls,
        include: str | re.Pattern[str] | None = None,
        exclude: str | re.Pattern[str] | None = None,
    ) -> Filter:
        """Create a filter testing candidates against regular expressions.

        Raises:
            re.error: If a pattern does not compile.
        """
        return cls(
            include=Pattern(re.compile(include)) if include else None,
            exclude=Pattern(re.compile(exclude)) if exclude else None,
        )


Filter.ANY = Filter()


@dataclass(frozen=True)
class BuildFilters:
    """The filters applied while analyzing builds.

    Attributes:
        projects: Matched against the build's root project names.
        tags: Matched against the build's user tags.
        requested_tasks: Matched against the tasks requested on the command line.
        task_types: Matched against each task's implementation class name.
    """

    projects: Filter = field(default_factory=Filter)
    tags: Filter = field(default_factory=Filter)
    requested_tasks: Filter = field(default_factory=Filter)
    task_types: Filter = field(default_factory=Filter)

    def matches_build(
        self,
        root_projects: Iterable[str],
        tags: Iterable[str],
        requested_tasks: Iterable[str],
    ) -> bool:
        """Check the build-level filters against a build's metadata."""
        return (
            self.projects.matches(root_projects)
            and self.tags.matches(tags)
            and self.requested_tasks.matches(requested_tasks)
        )

    def matches_task_type(self, task_type: str) -> bool:
        """Check the task-type filter against a single task type."""
        return self.task_types.matches((task_type,))

    def describe(self) -> dict[str, str]:
        """Summarize the configured filters for logging."""
        summary: dict[str, str] = {}
        for name in ("projects", "tags", "requested_tasks", "task_types"):
            current: Filter = getattr(self, name)
            if not current.is_identity:
                summary[name] = repr(current)
        return summary
