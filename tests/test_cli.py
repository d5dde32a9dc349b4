"""Tests for the mailsync command line interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from mailsync.cli import app


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "storage": {
                    "database_path": str(tmp_path / "mailsync.db"),
                    "queue_path": str(tmp_path / "queue.db"),
                }
            }
        ),
        encoding="utf-8",
    )
    return path


def _invoke(runner: CliRunner, config_file: Path, *args: str):
    return runner.invoke(app, ["--config", str(config_file), *args])


def _add(runner: CliRunner, config_file: Path, *extra: str):
    return _invoke(
        runner,
        config_file,
        "accounts",
        "add",
        "--email",
        "me@example.org",
        "--host",
        "imap.example.org",
        "--password",
        "secret",
        "--id",
        "acct-1",
        *extra,
    )


# ============================================================================
# accounts
# ============================================================================


def test_add_and_list_accounts(runner, config_file):
    result = _add(runner, config_file, "--no-start", "--json")
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"account_id": "acct-1", "status": "pending"}

    result = _invoke(runner, config_file, "accounts", "list", "--json")

    assert result.exit_code == 0
    listed = json.loads(result.stdout)
    assert listed == [
        {
            "account_id": "acct-1",
            "email": "me@example.org",
            "provider": "custom",
            "status": "pending",
            "needs_reauth": False,
        }
    ]


def test_add_starts_sync_by_default(runner, config_file):
    result = _add(runner, config_file)

    assert result.exit_code == 0
    assert "Account added" in result.stdout
    assert "seeding" in result.stdout


def test_add_requires_password(runner, config_file):
    result = _invoke(runner, config_file, "accounts", "add", "--email", "me@example.org")
    assert result.exit_code == 1


def test_duplicate_account_is_rejected(runner, config_file):
    _add(runner, config_file, "--no-start")
    assert _add(runner, config_file, "--no-start").exit_code == 1


def test_list_without_accounts(runner, config_file):
    result = _invoke(runner, config_file, "accounts", "list")

    assert result.exit_code == 0
    assert "No accounts registered" in result.stdout


def test_reset_account(runner, config_file):
    _add(runner, config_file)

    result = _invoke(runner, config_file, "accounts", "reset", "acct-1", "--yes")

    assert result.exit_code == 0
    assert "reset" in result.stdout
    progress = json.loads(_invoke(runner, config_file, "sync", "progress", "acct-1", "--json").stdout)
    assert progress["status"] == "pending"


def test_reset_unknown_account(runner, config_file):
    assert _invoke(runner, config_file, "accounts", "reset", "nobody", "--yes").exit_code == 1


# ============================================================================
# sync and logs
# ============================================================================


def test_progress_as_json(runner, config_file):
    _add(runner, config_file)

    result = _invoke(runner, config_file, "sync", "progress", "acct-1", "--json")

    assert result.exit_code == 0
    report = json.loads(result.stdout)
    assert report["status"] == "seeding"
    assert report["phase"] == "bootstrapping"


def test_fetch_is_not_queued_twice(runner, config_file):
    _add(runner, config_file)

    result = _invoke(runner, config_file, "sync", "fetch", "acct-1")

    assert result.exit_code == 0
    assert "not queued" in result.stdout


def test_logs_show_and_prune(runner, config_file):
    _add(runner, config_file)

    result = _invoke(runner, config_file, "logs", "show", "acct-1", "--json")
    assert result.exit_code == 0
    assert [entry["action"] for entry in json.loads(result.stdout)] == ["sync_started"]

    result = _invoke(runner, config_file, "logs", "prune", "--days", "1")
    assert result.exit_code == 0
    assert "Removed 0 sync log entries" in result.stdout


def test_ticks_and_idle_worker(runner, config_file):
    result = _invoke(runner, config_file, "tick", "watchdog")
    assert result.exit_code == 0
    assert "Started 0, rescued 0" in result.stdout

    result = _invoke(runner, config_file, "worker", "run", "--once")
    assert result.exit_code == 0
    assert "Executed 0 job(s)" in result.stdout


# ============================================================================
# config
# ============================================================================


def test_config_validate(runner, config_file, tmp_path):
    assert _invoke(runner, config_file, "config", "validate").exit_code == 0

    bad = tmp_path / "bad.yaml"
    bad.write_text(yaml.safe_dump({"sync": {"chunk_size": 0}}), encoding="utf-8")
    assert _invoke(runner, config_file, "config", "validate", str(bad)).exit_code == 1


def test_config_show(runner, config_file, tmp_path):
    result = _invoke(runner, config_file, "config", "show")

    assert result.exit_code == 0
    shown = json.loads(result.stdout)
    assert shown["storage"]["database_path"] == str(tmp_path / "mailsync.db")
    assert shown["sync"]["seed_count"] == 50


def test_invalid_config_file_is_reported(runner, tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("sync: [unclosed", encoding="utf-8")

    assert runner.invoke(app, ["--config", str(path), "accounts", "list"]).exit_code == 1
