"""Tests for the deltasync CLI commands."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
from click.testing import CliRunner

from deltasync.cli import DEFAULT_TOKEN_ENV, EnvTokenProvider, cli
from deltasync.sync.errors import DeltaSyncError
from deltasync.sync.fetcher import DELTA_LINK_KEY, NEXT_LINK_KEY
from tests.conftest import GRAPH, event

pytestmark = pytest.mark.unit

CURSOR = f"{GRAPH}/me/events/delta?token=t1"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cursor_file(tmp_path: Path) -> Path:
    return tmp_path / "cursors.json"


@pytest.fixture
def provider(monkeypatch: pytest.MonkeyPatch):
    """Route the CLI's HTTP client to canned change-feed pages."""
    seen: list[httpx.Request] = []
    pages: dict[str, dict | httpx.Response] = {
        "fresh": {"value": [event("a")], DELTA_LINK_KEY: CURSOR},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if not request.url.path.endswith("/delta"):
            item_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=event(item_id, subject=f"Detail {item_id}"))
        page = request.url.params.get("page")
        route = pages[f"page:{page}" if page else "fresh"]
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)

    monkeypatch.setattr(
        "deltasync.cli._make_http_client",
        lambda config: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    monkeypatch.setattr("deltasync.cli.configure_logging", lambda **kwargs: None)
    monkeypatch.setenv(DEFAULT_TOKEN_ENV, "tok-cli")
    return pages, seen


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestSync:
    def test_prints_changes_as_json_lines(self, runner, provider, cursor_file):
        _, seen = provider

        result = runner.invoke(cli, ["sync", "acct-1", "--cursor-file", str(cursor_file)])

        assert result.exit_code == 0, result.output
        lines = [json.loads(line) for line in result.stdout.splitlines()]
        assert [(line["id"], line["kind"]) for line in lines] == [("a", "created")]
        assert lines[0]["payload"]["subject"] == "Detail a"
        assert "1 change(s) synced" in result.stderr
        assert seen[0].headers["Authorization"] == "Bearer tok-cli"

    def test_persists_cursor_file(self, runner, provider, cursor_file):
        runner.invoke(cli, ["sync", "acct-1", "--cursor-file", str(cursor_file)])

        stored = json.loads(cursor_file.read_text())
        assert stored["calendar::acct-1"]["token"] == CURSOR

    def test_stream_mode(self, runner, provider, cursor_file, tmp_path):
        pages, _ = provider
        next_page = f"{GRAPH}/me/events/delta?page=2"
        pages["fresh"] = {"value": [event("a")], NEXT_LINK_KEY: next_page}
        pages["page:2"] = {"value": [event("b")], DELTA_LINK_KEY: CURSOR}
        config = tmp_path / "deltasync.toml"
        config.write_text("[fetcher]\ninter_page_delay_s = 0\n")

        result = runner.invoke(
            cli,
            [
                "--config",
                str(config),
                "sync",
                "acct-1",
                "--stream",
                "--cursor-file",
                str(cursor_file),
            ],
        )

        assert result.exit_code == 0, result.output
        assert [json.loads(line)["id"] for line in result.stdout.splitlines()] == ["a", "b"]
        assert "2 change(s) synced" in result.stderr

    def test_window_days_bounds_cold_start(self, runner, provider, cursor_file):
        _, seen = provider

        result = runner.invoke(
            cli, ["sync", "acct-1", "--window-days", "7", "--cursor-file", str(cursor_file)]
        )

        assert result.exit_code == 0, result.output
        assert "startDateTime" in seen[0].url.params

    def test_email_resource(self, runner, provider, cursor_file):
        _, seen = provider

        result = runner.invoke(
            cli, ["sync", "acct-1", "--resource", "email", "--cursor-file", str(cursor_file)]
        )

        assert result.exit_code == 0, result.output
        assert seen[0].url.path.endswith("/me/mailFolders/inbox/messages/delta")

    def test_missing_token(self, runner, provider, cursor_file, monkeypatch):
        monkeypatch.delenv(DEFAULT_TOKEN_ENV)

        result = runner.invoke(cli, ["sync", "acct-1", "--cursor-file", str(cursor_file)])

        assert result.exit_code == 1
        assert "Sync failed" in result.stderr
        assert DEFAULT_TOKEN_ENV in result.stderr

    def test_provider_error_exits_non_zero(self, runner, provider, cursor_file):
        pages, _ = provider
        pages["fresh"] = httpx.Response(403, json={"error": {"message": "Access denied"}})

        result = runner.invoke(cli, ["sync", "acct-1", "--cursor-file", str(cursor_file)])

        assert result.exit_code == 1
        assert "Access denied" in result.stderr
        assert not cursor_file.exists()

    def test_corrupt_cursor_file_exits_non_zero(self, runner, provider, cursor_file):
        cursor_file.write_text("not json")

        result = runner.invoke(cli, ["sync", "acct-1", "--cursor-file", str(cursor_file)])

        assert result.exit_code == 1
        assert "Sync failed" in result.stderr
        assert "is not valid JSON" in result.stderr
        assert isinstance(result.exception, SystemExit)


class TestBaseline:
    def test_stores_cursor_without_printing_items(self, runner, provider, cursor_file):
        result = runner.invoke(cli, ["baseline", "acct-1", "--cursor-file", str(cursor_file)])

        assert result.exit_code == 0, result.output
        assert "Baseline cursor stored" in result.stdout
        assert '"id"' not in result.stdout
        assert json.loads(cursor_file.read_text())["calendar::acct-1"]["token"] == CURSOR


class TestConfigErrors:
    def test_invalid_config_exits(self, runner, provider, tmp_path):
        config = tmp_path / "deltasync.toml"
        config.write_text('[logging]\nformat = "xml"\n')

        result = runner.invoke(cli, ["--config", str(config), "sync", "acct-1"])

        assert result.exit_code == 1
        assert "Config error" in result.stderr


class TestEnvTokenProvider:
    async def test_reads_token(self, monkeypatch):
        monkeypatch.setenv("MY_TOKEN", " abc ")
        assert await EnvTokenProvider("MY_TOKEN").get_valid_access_token("acct-1") == "abc"

    async def test_missing_token_raises(self, monkeypatch):
        monkeypatch.delenv("MY_TOKEN", raising=False)
        with pytest.raises(DeltaSyncError, match="MY_TOKEN"):
            await EnvTokenProvider("MY_TOKEN").get_valid_access_token("acct-1")
