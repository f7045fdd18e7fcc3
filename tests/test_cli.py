"""Smoke tests for the CLI.

These tests verify that the CLI modules import correctly, that the
commands are registered, and that ``watch`` and ``status`` report job
outcomes. The job service is replaced by ``httpx.MockTransport``.
"""

import json
import logging

import httpx
import pytest
from click.testing import CliRunner

from tripsync.cli import watch as watch_module
from tripsync.sync.errors import TransientConnectionError
from tripsync.sync.stream import StreamSource

COMPLETED = {
    "status": "completed",
    "days": [{"day": 1}],
    "agents": [
        {"kind": "planner", "status": "completed", "progress": 100},
        {"kind": "places", "status": "completed", "progress": 100},
    ],
}


class RefusedStream(StreamSource):
    transport = "refused"

    async def _consume(self):
        raise TransientConnectionError("refused")


def refused_factory(job_id, config, handlers, *, client=None):
    return RefusedStream(job_id, config, handlers)


def mock_client(body, status=200):
    return httpx.AsyncClient(
        transport=httpx.MockTransport(lambda r: httpx.Response(status, json=body))
    )


@pytest.fixture(autouse=True)
def isolated_cli(monkeypatch, tmp_path):
    """Log to a temp dir, force plain output and shrink session timings."""
    monkeypatch.setattr("tripsync.cli.logging.LOG_DIR", tmp_path / "logs")
    monkeypatch.setenv("TRIPSYNC_RICH", "0")
    monkeypatch.setenv("TRIPSYNC_COMPLETION_SETTLE_MS", "0")
    monkeypatch.setenv("TRIPSYNC_POLLING_INTERVAL_MS", "10")
    monkeypatch.setenv("TRIPSYNC_RECONNECT_BASE_MS", "1")
    yield
    package_logger = logging.getLogger("tripsync")
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def serve_status(monkeypatch):
    """Route watch and status through a mock status endpoint."""

    def install(body, status=200):
        real_run_watch = watch_module.run_watch
        real_fetch_status = watch_module.fetch_status

        async def run_watch(job_id, config, monitor):
            async with mock_client(body, status) as client:
                return await real_run_watch(
                    job_id,
                    config,
                    monitor,
                    client=client,
                    stream_factory=refused_factory,
                )

        async def fetch_status(job_id, config):
            async with mock_client(body, status) as client:
                return await real_fetch_status(job_id, config, client=client)

        monkeypatch.setattr(watch_module, "run_watch", run_watch)
        monkeypatch.setattr(watch_module, "fetch_status", fetch_status)

    return install


class TestCLIImports:
    """Test that all CLI modules can be imported."""

    def test_import_main(self):
        """Main CLI entry point can be imported."""
        from tripsync.cli import main

        assert main is not None
        assert hasattr(main, "commands")

    def test_commands_registered(self):
        """watch and status are registered on the main group."""
        from tripsync.cli import main

        assert "watch" in main.commands
        assert "status" in main.commands


class TestMainGroup:
    def test_version(self):
        from tripsync import __version__
        from tripsync.cli import main

        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_command_shows_help(self):
        from tripsync.cli import main

        result = CliRunner().invoke(main, [])
        assert result.exit_code == 0
        assert "watch" in result.output


class TestWatchCommand:
    def test_completed_job(self, serve_status):
        from tripsync.cli import main

        serve_status(COMPLETED)
        result = CliRunner().invoke(main, ["watch", "job-42"])

        assert result.exit_code == 0, result.output
        assert "Job job-42 completed." in result.stdout

    def test_json_outcome(self, serve_status):
        from tripsync.cli import main

        serve_status(COMPLETED)
        result = CliRunner().invoke(main, ["watch", "job-42", "--json"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["outcome"] == "completed"
        assert payload["overall_progress"] == 100
        assert [row["agent"] for row in payload["agents"]] == ["planner", "places"]

    def test_failed_job_exits_nonzero(self, serve_status):
        from tripsync.cli import main

        serve_status({"status": "failed", "error": "provider outage"})
        result = CliRunner().invoke(main, ["watch", "job-42"])

        assert result.exit_code == 1
        assert "job_failed" in result.output

    def test_invalid_transport_rejected(self):
        from tripsync.cli import main

        result = CliRunner().invoke(main, ["watch", "job-42", "--transport", "ftp"])
        assert result.exit_code == 2

    def test_writes_log_file(self, serve_status, tmp_path):
        from tripsync.cli import main

        serve_status(COMPLETED)
        CliRunner().invoke(main, ["watch", "job/42"])

        assert (tmp_path / "logs" / "watch_job_42.log").exists()


class TestStatusCommand:
    def test_json(self, serve_status):
        from tripsync.cli import main

        serve_status(
            {
                "status": "generating",
                "agents": [
                    {"kind": "planner", "status": "completed", "progress": 100},
                    {"kind": "places", "status": "running", "progress": 40},
                ],
            }
        )
        result = CliRunner().invoke(main, ["status", "job-7", "--json"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["overall_status"] == "running"
        assert payload["overall_progress"] == 70
        assert payload["agents"][1] == {
            "agent": "places",
            "status": "running",
            "progress": 40,
            "message": None,
        }

    def test_table(self, serve_status):
        from tripsync.cli import main

        serve_status(COMPLETED)
        result = CliRunner().invoke(main, ["status", "job-7"])

        assert result.exit_code == 0, result.output
        assert "completed" in result.stdout
        assert "planner" in result.stdout

    def test_unreachable_service(self, serve_status):
        from tripsync.cli import main

        serve_status({}, status=503)
        result = CliRunner().invoke(main, ["status", "job-7"])

        assert result.exit_code == 1
        assert "Could not read status" in result.output

    @pytest.mark.parametrize(
        "env_var,raw",
        [
            ("TRIPSYNC_POLLING_INTERVAL_MS", "fast"),
            ("TRIPSYNC_MANUAL_OVERRIDE_THRESHOLD", "most"),
        ],
    )
    def test_bad_configuration_is_reported_cleanly(
        self, serve_status, monkeypatch, env_var, raw
    ):
        from tripsync.cli import main

        serve_status(COMPLETED)
        monkeypatch.setenv(env_var, raw)
        result = CliRunner().invoke(main, ["status", "job-1"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
        assert "Traceback" not in result.output
        assert not isinstance(result.exception, ValueError)


class TestCliLogging:
    """Per-command, per-job log files."""

    def test_job_id_is_sanitised(self, tmp_path):
        from tripsync.cli.logging import get_log_file

        assert get_log_file("status", "a b/c").name == "status_a_b_c.log"
        assert get_log_file("watch").name == "watch.log"

    def test_repeated_configuration_replaces_handlers(self):
        from tripsync.cli.logging import configure_cli_logging

        configure_cli_logging("watch", job_id="job-1")
        log_file = configure_cli_logging("watch", job_id="job-1", verbose=True)

        handlers = logging.getLogger("tripsync").handlers
        assert len(handlers) == 2
        assert log_file.name == "watch_job-1.log"
        assert {h.level for h in handlers} == {logging.DEBUG, logging.INFO}
