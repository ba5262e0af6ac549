"""Configuration parsing for buildstats.

Parses .buildstats/config.toml files for server settings, analysis settings
and default filters. Command-line options override these values.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from buildstats.durations import parse_duration
from buildstats.filters import BuildFilters, Filter
from buildstats.transport import DEFAULT_SERVER_URL

CONFIG_DIR = ".buildstats"
CONFIG_FILE = "config.toml"

DEFAULT_API_KEY_ENV = "EXPORT_API_ACCESS_KEY"
DEFAULT_MAX_CONCURRENCY = 30
DEFAULT_QUERY_SINCE = "PT2H"


def _string_list(section: str, key: str, value: Any) -> list[str]:
    """Accept a single string or a list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return value
    raise ValueError(f"[{section}] '{key}' must be a string or a list of strings")


@dataclass
class ServerConfig:
    """Configuration for the Export API server."""

    url: str = DEFAULT_SERVER_URL
    api_key: str | None = None
    api_key_env: str = DEFAULT_API_KEY_ENV

    def resolve_api_key(self) -> str | None:
        """Get the API key, falling back to the configured environment variable."""
        return self.api_key or os.environ.get(self.api_key_env)


@dataclass
class AnalysisConfig:
    """Configuration for the analysis run."""

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    query_since: str = DEFAULT_QUERY_SINCE  # ISO-8601 duration

    @property
    def query_window(self) -> timedelta:
        return parse_duration(self.query_since)


@dataclass
class FilterConfig:
    """Default include/exclude filters."""

    include_projects: list[str] = field(default_factory=list)
    exclude_projects: list[str] = field(default_factory=list)
    include_tags: list[str] = field(default_factory=list)
    exclude_tags: list[str] = field(default_factory=list)
    include_requested_tasks: str | None = None  # regex
    exclude_requested_tasks: str | None = None  # regex
    include_task_types: list[str] = field(default_factory=list)  # prefixes
    exclude_task_types: list[str] = field(default_factory=list)  # prefixes

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FilterConfig:
        """Create a FilterConfig from the [filters] table.

        Raises:
            ValueError: If a value has the wrong type or an unknown key is present.
        """
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            raise ValueError(
                f"[filters] has unknown keys: {', '.join(sorted(unknown))}. "
                f"Valid keys are: {', '.join(sorted(known))}"
            )

        for key in ("include_requested_tasks", "exclude_requested_tasks"):
            if data.get(key) is not None and not isinstance(data[key], str):
                raise ValueError(f"[filters] '{key}' must be a regular expression string")

        return cls(
            include_projects=_string_list("filters", "include_projects", data.get("include_projects")),
            exclude_projects=_string_list("filters", "exclude_projects", data.get("exclude_projects")),
            include_tags=_string_list("filters", "include_tags", data.get("include_tags")),
            exclude_tags=_string_list("filters", "exclude_tags", data.get("exclude_tags")),
            include_requested_tasks=data.get("include_requested_tasks"),
            exclude_requested_tasks=data.get("exclude_requested_tasks"),
            include_task_types=_string_list("filters", "include_task_types", data.get("include_task_types")),
            exclude_task_types=_string_list("filters", "exclude_task_types", data.get("exclude_task_types")),
        )

    def to_build_filters(self) -> BuildFilters:
        """Compile into BuildFilters.

        Raises:
            re.error: If a requested-task pattern is not a valid regex.
        """
        return BuildFilters(
            projects=Filter.of_values(self.include_projects, self.exclude_projects),
            tags=Filter.of_values(self.include_tags, self.exclude_tags),
            requested_tasks=Filter.of_patterns(
                self.include_requested_tasks, self.exclude_requested_tasks
            ),
            task_types=Filter.of_prefixes(
                self.include_task_types, self.exclude_task_types
            ),
        )


@dataclass
class Config:
    """Main configuration container."""

    server: ServerConfig = field(default_factory=ServerConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    config_path: Path | None = None

    @classmethod
    def load(cls, path: Path | None = None) -> Config:
        """Load configuration from a file.

        Args:
            path: Path to config file. If None, searches for .buildstats/config.toml
                  in current directory and parents.

        Returns:
            Loaded configuration.

        Raises:
            FileNotFoundError: If no config file found.
            ValueError: If config file is invalid.
        """
        if path is None:
            path = cls._find_config()

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "rb") as f:
            data = tomllib.load(f)

        return cls._from_dict(data, path)

    @classmethod
    def load_or_default(cls, path: Path | None = None) -> Config:
        """Load configuration or return default if not found."""
        try:
            return cls.load(path)
        except FileNotFoundError:
            return cls()

    @classmethod
    def _find_config(cls) -> Path:
        """Find config file by searching current directory and parents."""
        cwd = Path.cwd()
        for parent in [cwd, *cwd.parents]:
            config_path = parent / CONFIG_DIR / CONFIG_FILE
            if config_path.exists():
                return config_path

        return cwd / CONFIG_DIR / CONFIG_FILE

    @classmethod
    def _from_dict(cls, data: dict[str, Any], path: Path) -> Config:
        """Create a Config from a dictionary."""
        server_data = data.get("server", {})
        server = ServerConfig(
            url=server_data.get("url", DEFAULT_SERVER_URL),
            api_key=server_data.get("api_key"),
            api_key_env=server_data.get("api_key_env", DEFAULT_API_KEY_ENV),
        )

        analysis_data = data.get("analysis", {})
        analysis = AnalysisConfig(
            max_concurrency=analysis_data.get("max_concurrency", DEFAULT_MAX_CONCURRENCY),
            query_since=analysis_data.get("query_since", DEFAULT_QUERY_SINCE),
        )
        if not isinstance(analysis.max_concurrency, int) or analysis.max_concurrency < 1:
            raise ValueError("[analysis] 'max_concurrency' must be a positive integer")
        # Fail early on a malformed window rather than when querying
        parse_duration(analysis.query_since)

        filters = FilterConfig.from_dict(data.get("filters", {}))

        return cls(
            server=server,
            analysis=analysis,
            filters=filters,
            config_path=path,
        )

    def get_value(self, key_path: str) -> Any:
        """Get a configuration value by dot-separated path.

        Args:
            key_path: Dot-separated path to value (e.g. "analysis.max_concurrency").

        Returns:
            The configuration value.

        Raises:
            KeyError: If path is invalid.
        """
        parts = key_path.split(".")
        current: Any = self
        for part in parts:
            if hasattr(current, part):
                current = getattr(current, part)
            elif isinstance(current, dict) and part in current:
                current = current[part]
            else:
                raise KeyError(f"Invalid config path: {key_path}")
        return current
