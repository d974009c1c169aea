from __future__ import annotations

import json

import pytest
from rich.console import Console
from typer.testing import CliRunner

import ctxsync.cli as cli
from conftest import FakeTransport, write_file
from ctxsync.config import CONFIG_FILENAME
from ctxsync.hashing import hash_bytes
from ctxsync.workspace import WorkspaceSync


runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    monkeypatch.setattr(cli, "console", Console(width=200, force_terminal=False))


@pytest.fixture
def initialized(workspace, monkeypatch):
    monkeypatch.chdir(workspace)
    result = runner.invoke(cli.app, ["init", "--url", "tenant.example.test"])
    assert result.exit_code == 0, result.output
    return workspace


@pytest.fixture
def fake_remote(monkeypatch) -> FakeTransport:
    transport = FakeTransport()
    monkeypatch.setattr(
        cli, "WorkspaceSync", lambda config: WorkspaceSync(config, transport=transport)
    )
    return transport


def test_init_writes_config(initialized):
    data = json.loads((initialized / CONFIG_FILENAME).read_text(encoding="utf-8"))
    assert data["api_url"] == "https://tenant.example.test/"


def test_commands_require_init(workspace, monkeypatch):
    monkeypatch.chdir(workspace)
    result = runner.invoke(cli.app, ["manifest"])
    assert result.exit_code == 1
    assert "ctxsync init" in result.output


def test_sync_without_login_fails(initialized, fake_remote):
    write_file(initialized, "a.py", "a")
    result = runner.invoke(cli.app, ["sync"])
    assert result.exit_code == 1
    assert "Authentication failed" in result.output
    assert fake_remote.upload_calls == []


def test_login_sync_and_manifest(initialized, fake_remote):
    write_file(initialized, "a.py", "a")
    write_file(initialized, "b.py", "a")

    login = runner.invoke(cli.app, ["login", "--token", "secret"])
    assert login.exit_code == 0, login.output

    result = runner.invoke(cli.app, ["sync"])
    assert result.exit_code == 0, result.output
    assert "Uploaded: 1 blob(s)" in result.output
    assert fake_remote.tokens_seen == ["secret"]

    manifest = runner.invoke(cli.app, ["manifest", "--json"])
    assert manifest.exit_code == 0
    assert json.loads(manifest.output) == {"a.py": hash_bytes(b"a"), "b.py": hash_bytes(b"a")}

    again = runner.invoke(cli.app, ["sync"])
    assert "Uploaded: 0 blob(s)" in again.output
    assert len(fake_remote.upload_calls) == 1


def test_status_reports_new_files(initialized):
    write_file(initialized, "new_module.py", "x = 1\n")
    result = runner.invoke(cli.app, ["status"])
    assert result.exit_code == 0, result.output
    assert "new_module.py" in result.output


def test_cache_stats_and_logout(initialized):
    runner.invoke(cli.app, ["login", "--token", "secret"])

    stats = runner.invoke(cli.app, ["cache"])
    assert stats.exit_code == 0
    assert "confirmed" in stats.output

    assert "Logged out" in runner.invoke(cli.app, ["logout"]).output
    assert "No saved session" in runner.invoke(cli.app, ["logout"]).output
