"""CLI entry point for buildstats.

Usage:
    python -m buildstats <command> [options]

Commands:
    analyze [--builds IDS | --load-builds-from FILE | --query-since DURATION]
            [--include-project P] [--exclude-project P]
            [--include-tag T] [--exclude-tag T]
            [--include-requested-tasks REGEX] [--exclude-requested-tasks REGEX]
            [--include-task-type PREFIX] [--exclude-task-type PREFIX]
            [--save-builds-to FILE] [--max-concurrency N] [--json]
    config validate
    config get <key>
"""

from __future__ import annotations

import argparse
import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

from buildstats import __version__

if TYPE_CHECKING:
    from buildstats.config import Config

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

logger = logging.getLogger("buildstats")


def comma_separated(value: str) -> list[str]:
    """Split a comma-separated option value, dropping empty entries."""
    return [part.strip() for part in value.split(",") if part.strip()]


def configure_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Set up logging for the buildstats package.

    Args:
        verbose: Log DEBUG messages instead of INFO.
        log_file: Optional file to log to in addition to stderr.
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Avoid adding multiple handlers if re-initialized
    if logger.handlers:
        return

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="buildstats",
        description="Analyze task performance across builds from the Export API",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Config file (default: .buildstats/config.toml in this or a parent directory)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    parser.add_argument("--log-file", type=Path, help="Also write logs to this file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # analyze command
    analyze_parser = subparsers.add_parser(
        "analyze", help="Stream builds and print task statistics"
    )
    analyze_parser.add_argument("--server", help="Server URL")
    analyze_parser.add_argument(
        "--api-key",
        help="Export API access key; defaults to the EXPORT_API_ACCESS_KEY environment variable",
    )
    analyze_parser.add_argument(
        "--max-concurrency",
        type=int,
        help="Maximum number of builds streamed concurrently (default: 30)",
    )

    source = analyze_parser.add_argument_group("build selection")
    source.add_argument(
        "--builds",
        type=comma_separated,
        action="extend",
        help="Comma-separated list of build IDs to process",
    )
    source.add_argument(
        "--load-builds-from",
        type=Path,
        help="File to load build IDs from (one ID per line); ignored when --builds is given",
    )
    source.add_argument(
        "--query-since",
        help="Query builds in the given ISO-8601 timeframe (default: PT2H); "
        "ignored when --builds or --load-builds-from is given",
    )
    analyze_parser.add_argument(
        "--save-builds-to",
        type=Path,
        help="File to save the analyzed build IDs to",
    )

    filters = analyze_parser.add_argument_group("filters")
    filters.add_argument(
        "--include-project",
        type=comma_separated,
        action="extend",
        help="Comma-separated list of root projects to include",
    )
    filters.add_argument(
        "--exclude-project",
        type=comma_separated,
        action="extend",
        help="Comma-separated list of root projects to exclude",
    )
    filters.add_argument(
        "--include-tag",
        type=comma_separated,
        action="extend",
        help="Comma-separated list of tags to include",
    )
    filters.add_argument(
        "--exclude-tag",
        type=comma_separated,
        action="extend",
        help="Comma-separated list of tags to exclude",
    )
    filters.add_argument(
        "--include-requested-tasks",
        help="Include only builds that requested a task matching this regex",
    )
    filters.add_argument(
        "--exclude-requested-tasks",
        help="Exclude builds that requested a task matching this regex",
    )
    filters.add_argument(
        "--include-task-type",
        type=comma_separated,
        action="extend",
        help="Include only tasks whose class name starts with one of these prefixes",
    )
    filters.add_argument(
        "--exclude-task-type",
        type=comma_separated,
        action="extend",
        help="Exclude tasks whose class name starts with one of these prefixes",
    )

    analyze_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the statistics as JSON instead of the text report",
    )

    # config command
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(
        dest="config_command", help="Config subcommands"
    )

    # config validate
    config_subparsers.add_parser("validate", help="Validate configuration")

    # config get
    get_parser = config_subparsers.add_parser("get", help="Get configuration value")
    get_parser.add_argument("key", help="Configuration key (e.g. analysis.max_concurrency)")

    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> None:
    """Apply command-line options on top of the loaded configuration."""
    if args.server:
        config.server.url = args.server
    if args.api_key:
        config.server.api_key = args.api_key
    if args.max_concurrency is not None:
        config.analysis.max_concurrency = args.max_concurrency
    if args.query_since:
        config.analysis.query_since = args.query_since

    filters = config.filters
    if args.include_project:
        filters.include_projects = args.include_project
    if args.exclude_project:
        filters.exclude_projects = args.exclude_project
    if args.include_tag:
        filters.include_tags = args.include_tag
    if args.exclude_tag:
        filters.exclude_tags = args.exclude_tag
    if args.include_requested_tasks:
        filters.include_requested_tasks = args.include_requested_tasks
    if args.exclude_requested_tasks:
        filters.exclude_requested_tasks = args.exclude_requested_tasks
    if args.include_task_type:
        filters.include_task_types = args.include_task_type
    if args.exclude_task_type:
        filters.exclude_task_types = args.exclude_task_type


def cmd_analyze(args: argparse.Namespace) -> int:
    """Handle 'analyze' command."""
    from buildstats.analyzer import BuildAnalyzer
    from buildstats.bridge import ProducerInterruptedError
    from buildstats.build_ids import save_build_ids
    from buildstats.config import Config
    from buildstats.transport import ExportApiClient

    try:
        config = Config.load(args.config) if args.config else Config.load_or_default()
        apply_overrides(config, args)
        build_filters = config.filters.to_build_filters()
        since = config.analysis.query_window
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (ValueError, re.error) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if config.analysis.max_concurrency < 1:
        print("Error: --max-concurrency must be at least 1", file=sys.stderr)
        return 1

    projects = ", ".join(config.filters.include_projects) or "all"
    logger.info(
        f"Connecting to server at {config.server.url}, fetching info about projects: {projects}"
    )

    with ExportApiClient(
        server_url=config.server.url,
        api_key=config.server.resolve_api_key(),
        max_concurrency=config.analysis.max_concurrency,
    ) as client:
        analyzer = BuildAnalyzer(
            client,
            filters=build_filters,
            max_concurrency=config.analysis.max_concurrency,
        )
        try:
            build_ids = analyzer.resolve_build_ids(
                builds=args.builds,
                build_file=args.load_builds_from,
                since=since,
            )
        except OSError as e:
            print(f"Error reading build IDs: {e}", file=sys.stderr)
            return 1

        try:
            statistics = analyzer.analyze(build_ids)
        except ProducerInterruptedError as e:
            print(f"Error querying builds: {e.__cause__ or e}", file=sys.stderr)
            return 1

    print(statistics.to_json() if args.json else statistics.render())

    if args.save_builds_to:
        logger.info(f"Storing build IDs in {args.save_builds_to}")
        save_build_ids(args.save_builds_to, statistics.build_ids)

    return 0


def cmd_config_get(args: argparse.Namespace) -> int:
    """Handle 'config get' command."""
    from buildstats.config import Config

    try:
        config = Config.load(args.config) if args.config else Config.load_or_default()
        value = config.get_value(args.key)
        print(value)
        return 0
    except KeyError:
        print(f"Error: Config key not found: {args.key}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error reading config: {e}", file=sys.stderr)
        return 1


def cmd_config_validate(args: argparse.Namespace) -> int:
    """Handle 'config validate' command."""
    from buildstats.config import Config

    try:
        config = Config.load(args.config)
        config.filters.to_build_filters()
        print(f"Configuration valid: {config.config_path}")
        print(f"  Server: {config.server.url}")
        print(f"  Max concurrency: {config.analysis.max_concurrency}")
        print(f"  Query since: {config.analysis.query_since}")
        active = {
            name: value
            for name, value in vars(config.filters).items()
            if value
        }
        print(f"  Filters: {len(active)}")
        for name, value in active.items():
            print(f"    - {name}: {value}")
        return 0
    except FileNotFoundError as e:
        print(f"No configuration found: {e}", file=sys.stderr)
        return 0  # Missing config is not an error
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


def main() -> NoReturn:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    configure_logging(verbose=args.verbose, log_file=args.log_file)

    if args.command == "analyze":
        sys.exit(cmd_analyze(args))
    elif args.command == "config":
        if args.config_command == "validate":
            sys.exit(cmd_config_validate(args))
        elif args.config_command == "get":
            sys.exit(cmd_config_get(args))
        else:
            parser.parse_args(["config", "--help"])
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
