"""Tests for the command-line interface."""

from __future__ import annotations

import json
import logging
from functools import partial

import httpx
import pytest

import buildstats.transport
from buildstats.__main__ import (
    apply_overrides,
    cmd_analyze,
    cmd_config_get,
    cmd_config_validate,
    comma_separated,
    configure_logging,
    create_parser,
    main,
)
from buildstats.config import Config


def sse_body(*payloads: dict) -> str:
    """Encode payloads as an event stream."""
    return "".join(f"data: {json.dumps(p)}\n\n" for p in payloads)


def build_event(event_type: str, timestamp: int = 0, **data) -> dict:
    return {"timestamp": timestamp, "type": {"eventType": event_type}, "data": data}


BUILDS = {
    "b1": {
        "info": [
            build_event("ProjectStructure", rootProjectName="gradle"),
            build_event("UserTag", tag="CI"),
            build_event("BuildModes", maxWorkers=4),
        ],
        "tasks": [
            build_event("TaskStarted", 0, id=1, className="JavaCompile", path=":compileJava"),
            build_event("TaskFinished", 40, id=1, outcome="success"),
        ],
    },
    "b2": {
        "info": [
            build_event("ProjectStructure", rootProjectName="other"),
            build_event("BuildModes", maxWorkers=2),
        ],
        "tasks": [],
    },
}


def export_api(request: httpx.Request) -> httpx.Response:
    """Mock Export API serving BUILDS."""
    headers = {"Content-Type": "text/event-stream"}
    parts = request.url.path.split("/")
    if request.url.path.startswith("/build-export/v2/builds/since/"):
        body = sse_body(
            {"buildId": "b1", "toolType": "gradle"},
            {"buildId": "m1", "toolType": "maven"},
        )
        return httpx.Response(200, headers=headers, content=body.encode())
    if len(parts) == 6 and parts[4] in BUILDS:
        stream = "tasks" if "TaskStarted" in request.url.params["eventTypes"] else "info"
        body = sse_body(*BUILDS[parts[4]][stream])
        return httpx.Response(200, headers=headers, content=body.encode())
    return httpx.Response(404, content=b"not found")


@pytest.fixture
def mock_server(monkeypatch, tmp_path):
    """Route ExportApiClient through the mock Export API in an empty directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("EXPORT_API_ACCESS_KEY", raising=False)
    monkeypatch.setattr(
        buildstats.transport,
        "ExportApiClient",
        partial(buildstats.transport.ExportApiClient, transport=httpx.MockTransport(export_api)),
    )


def parse(*argv: str):
    return create_parser().parse_args(list(argv))


class TestParser:
    """Tests for argument parsing."""

    def test_comma_separated(self):
        assert comma_separated("a, b,,c ") == ["a", "b", "c"]

    def test_repeated_list_options_extend(self):
        """Test repeated list options accumulate."""
        args = parse("analyze", "--include-tag", "CI,nightly", "--include-tag", "release")
        assert args.include_tag == ["CI", "nightly", "release"]

    def test_defaults(self):
        args = parse("analyze")
        assert args.builds is None
        assert args.load_builds_from is None
        assert args.max_concurrency is None
        assert not args.json

    def test_global_options(self, tmp_path):
        args = parse("-v", "--config", str(tmp_path / "c.toml"), "analyze")
        assert args.verbose
        assert args.config == tmp_path / "c.toml"

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            parse("--version")
        assert exc_info.value.code == 0
        assert "buildstats" in capsys.readouterr().out


class TestApplyOverrides:
    """Tests for layering options over the config file."""

    def test_options_override_config(self):
        config = Config()
        config.filters.include_projects = ["from-file"]
        args = parse(
            "analyze",
            "--server", "https://cli.example.com",
            "--max-concurrency", "5",
            "--include-project", "gradle",
            "--exclude-requested-tasks", "clean",
        )

        apply_overrides(config, args)

        assert config.server.url == "https://cli.example.com"
        assert config.analysis.max_concurrency == 5
        assert config.filters.include_projects == ["gradle"]
        assert config.filters.exclude_requested_tasks == "clean"

    def test_unset_options_keep_config(self):
        config = Config()
        config.filters.exclude_tags = ["LOCAL"]
        apply_overrides(config, parse("analyze"))
        assert config.filters.exclude_tags == ["LOCAL"]


class TestCmdAnalyze:
    """Tests for the analyze command against a mock server."""

    def test_explicit_builds(self, mock_server, capsys):
        """Test explicit build IDs are analyzed and reported."""
        exit_code = cmd_analyze(parse("analyze", "--builds", "b1"))

        out = capsys.readouterr().out
        assert exit_code == 0
        assert out.startswith("Statistics for 1 builds with 1 tasks")
        assert "JavaCompile: 40" in out
        assert "4: 1 builds" in out

    def test_filters_exclude_builds(self, mock_server, capsys):
        """Test builds failing the project filter are left out."""
        exit_code = cmd_analyze(
            parse("analyze", "--builds", "b1,b2", "--include-project", "other")
        )

        assert exit_code == 0
        out = capsys.readouterr().out
        assert out.startswith("Statistics for 1 builds with 0 tasks")
        assert "2: 1 builds" in out

    def test_no_matching_builds(self, mock_server, capsys):
        exit_code = cmd_analyze(parse("analyze", "--builds", "b1", "--exclude-tag", "CI"))

        assert exit_code == 0
        assert capsys.readouterr().out.strip() == "No matching builds found"

    def test_json_output(self, mock_server, capsys):
        """Test --json prints the statistics as JSON."""
        exit_code = cmd_analyze(parse("analyze", "--builds", "b1", "--json"))

        assert exit_code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["build_ids"] == ["b1"]
        assert data["concurrency_histogram"] == {"1": 40}

    def test_query_and_save(self, mock_server, tmp_path, capsys):
        """Test queried Gradle builds are analyzed and their IDs saved."""
        saved = tmp_path / "out" / "builds.txt"
        exit_code = cmd_analyze(
            parse("analyze", "--query-since", "PT1H", "--save-builds-to", str(saved))
        )

        assert exit_code == 0
        assert "Statistics for 1 builds" in capsys.readouterr().out
        assert saved.read_text() == "b1\n"

    def test_load_builds_from_file(self, mock_server, tmp_path, capsys):
        build_file = tmp_path / "ids.txt"
        build_file.write_text("b1\nb2\n")

        exit_code = cmd_analyze(parse("analyze", "--load-builds-from", str(build_file)))

        assert exit_code == 0
        assert "Statistics for 2 builds" in capsys.readouterr().out

    def test_missing_build_file(self, mock_server, tmp_path, capsys):
        exit_code = cmd_analyze(
            parse("analyze", "--load-builds-from", str(tmp_path / "missing.txt"))
        )

        assert exit_code == 1
        assert "Error reading build IDs" in capsys.readouterr().err

    def test_unknown_build_is_skipped(self, mock_server, capsys):
        """Test a build the server rejects does not fail the run."""
        exit_code = cmd_analyze(parse("analyze", "--builds", "b1,unknown"))

        assert exit_code == 0
        assert "Statistics for 1 builds" in capsys.readouterr().out

    def test_query_failure(self, mock_server, monkeypatch, capsys):
        """Test a failing build query aborts the run."""
        monkeypatch.setattr(
            buildstats.transport,
            "ExportApiClient",
            partial(
                buildstats.transport.ExportApiClient.func,
                transport=httpx.MockTransport(lambda request: httpx.Response(503)),
            ),
        )

        exit_code = cmd_analyze(parse("analyze"))

        assert exit_code == 1
        assert "Error querying builds" in capsys.readouterr().err

    def test_invalid_regex(self, mock_server, capsys):
        exit_code = cmd_analyze(parse("analyze", "--include-requested-tasks", "("))

        assert exit_code == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_invalid_duration(self, mock_server, capsys):
        exit_code = cmd_analyze(parse("analyze", "--query-since", "two hours"))

        assert exit_code == 1
        assert "ISO-8601" in capsys.readouterr().err

    def test_invalid_max_concurrency(self, mock_server, capsys):
        exit_code = cmd_analyze(parse("analyze", "--builds", "b1", "--max-concurrency", "0"))

        assert exit_code == 1
        assert "max-concurrency" in capsys.readouterr().err

    def test_missing_explicit_config(self, mock_server, tmp_path, capsys):
        exit_code = cmd_analyze(parse("--config", str(tmp_path / "nope.toml"), "analyze"))

        assert exit_code == 1
        assert "Config file not found" in capsys.readouterr().err

    def test_config_file_filters(self, mock_server, tmp_path, capsys):
        """Test filters from the config file apply when no options are given."""
        config_path = tmp_path / "config.toml"
        config_path.write_text('[filters]\ninclude_projects = ["other"]\n')

        exit_code = cmd_analyze(
            parse("--config", str(config_path), "analyze", "--builds", "b1,b2")
        )

        assert exit_code == 0
        assert "Statistics for 1 builds with 0 tasks" in capsys.readouterr().out


class TestCmdConfig:
    """Tests for the config subcommands."""

    def test_validate(self, tmp_path, capsys):
        config_path = tmp_path / "config.toml"
        config_path.write_text('[analysis]\nmax_concurrency = 4\n\n[filters]\nexclude_tags = ["LOCAL"]\n')

        exit_code = cmd_config_validate(parse("--config", str(config_path), "config", "validate"))

        out = capsys.readouterr().out
        assert exit_code == 0
        assert "Configuration valid" in out
        assert "Max concurrency: 4" in out
        assert "exclude_tags: ['LOCAL']" in out

    def test_validate_invalid(self, tmp_path, capsys):
        config_path = tmp_path / "config.toml"
        config_path.write_text('[filters]\ninclude_requested_tasks = "("\n')

        exit_code = cmd_config_validate(parse("--config", str(config_path), "config", "validate"))

        assert exit_code == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_validate_missing(self, tmp_path, capsys):
        """Test a missing config is reported but not an error."""
        exit_code = cmd_config_validate(
            parse("--config", str(tmp_path / "nope.toml"), "config", "validate")
        )

        assert exit_code == 0
        assert "No configuration found" in capsys.readouterr().err

    def test_get(self, tmp_path, capsys):
        config_path = tmp_path / "config.toml"
        config_path.write_text('[server]\nurl = "https://ge.example.com"\n')

        exit_code = cmd_config_get(parse("--config", str(config_path), "config", "get", "server.url"))

        assert exit_code == 0
        assert capsys.readouterr().out.strip() == "https://ge.example.com"

    def test_get_unknown_key(self, tmp_path, capsys):
        config_path = tmp_path / "config.toml"
        config_path.write_text("")

        exit_code = cmd_config_get(parse("--config", str(config_path), "config", "get", "server.nope"))

        assert exit_code == 1
        assert "Config key not found" in capsys.readouterr().err


class TestMain:
    """Tests for the entry point."""

    def test_no_command_prints_help(self, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["buildstats"])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0
        assert "analyze" in capsys.readouterr().out

    def test_configure_logging_adds_handlers_once(self, tmp_path):
        logger = logging.getLogger("buildstats")
        saved = logger.handlers[:]
        logger.handlers.clear()
        try:
            configure_logging(verbose=True, log_file=tmp_path / "logs" / "run.log")
            configure_logging(verbose=False)

            assert len(logger.handlers) == 2
            assert logger.level == logging.INFO
            assert (tmp_path / "logs" / "run.log").exists()
        finally:
            for handler in logger.handlers:
                handler.close()
            logger.handlers[:] = saved
