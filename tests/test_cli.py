"""Tests for the CLI commands."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from agentboard.cli import main


@pytest.fixture()
def env_queue(queue, monkeypatch):
    """Point the environment-derived paths at the throwaway queue."""
    monkeypatch.setattr("agentboard.paths.DEFAULT_QUEUE_DIR", queue.paths.queue_dir)
    monkeypatch.setattr("agentboard.paths.DEFAULT_LOG_FILE", queue.paths.log_file)
    return queue


def _populate(queue) -> None:
    queue.enqueue("run1", prompt="write docs", created="2024-01-01T00:00:00Z")
    queue.enqueue("run2", prompt="ship it", created="2024-01-01T00:00:00Z")
    queue.finish("run2", output="tokens used: 1,200\n")


def test_state_prints_snapshot(env_queue):
    _populate(env_queue)

    result = CliRunner().invoke(main, ["state", "--session", "cli"])

    assert result.exit_code == 0, result.output
    state = json.loads(result.output)
    assert state["meta"]["session"] == "cli"
    assert {c["id"] for c in state["chains"]} == {"manual:run1", "manual:run2"}


def test_stats_text(env_queue):
    _populate(env_queue)

    result = CliRunner().invoke(main, ["stats"])

    assert result.exit_code == 0, result.output
    assert result.output.startswith("Queue statistics (")
    assert "Runs: 2 (queued 1, working 0, done 1, failed 0)" in result.output
    assert "Tokens: 1,200 total" in result.output
    assert "write docs" in result.output
    assert "ship it" in result.output


def test_stats_active_only_text(env_queue):
    _populate(env_queue)

    result = CliRunner().invoke(main, ["stats", "--active-only"])

    assert result.exit_code == 0, result.output
    assert "Active chains:" in result.output
    assert "write docs" in result.output
    assert "ship it" not in result.output


def test_stats_json_active_only(env_queue):
    _populate(env_queue)

    result = CliRunner().invoke(main, ["stats", "--json", "--active-only"])

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["totals"]["runCount"] == 2
    assert [c["id"] for c in data["chains"]] == ["manual:run1"]


def test_stats_empty_queue(env_queue):
    result = CliRunner().invoke(main, ["stats"])

    assert result.exit_code == 0, result.output
    assert "(none)" in result.output


def test_serve_runs_uvicorn(env_queue):
    with patch("uvicorn.run") as run_mock:
        result = CliRunner().invoke(main, ["serve", "--port", "6001", "--session", "ops"])

    assert result.exit_code == 0, result.output
    app = run_mock.call_args.args[0]
    assert app.state.session == "ops"
    assert app.state.paths == env_queue.paths
    assert run_mock.call_args.kwargs["port"] == 6001
    assert run_mock.call_args.kwargs["host"] == "127.0.0.1"


def test_unknown_command_suggests_close_match():
    result = CliRunner().invoke(main, ["stat"])

    assert result.exit_code != 0
    assert "Did you mean:" in result.output
    assert "stats" in result.output


def test_unknown_command_without_match():
    result = CliRunner().invoke(main, ["zzzzzz"])

    assert result.exit_code != 0
    assert "No such command 'zzzzzz'." in result.output
    assert "Did you mean" not in result.output
