"""CLI tests.

These tests drive the typer app end to end:
- Real SQLite database in a temporary data directory
- Mocked App Store Connect API (httpx.MockTransport) for `sync`
- Records seeded directly through the store for triage commands

Global options go before the command: ``-q -d <dir> --format json list``.
"""

import asyncio
import json
from pathlib import Path

import httpx
import pytest
from typer.testing import CliRunner

from asc_crash_fetcher.asc.client import AscClient
from asc_crash_fetcher.cli import sync as sync_cli
from asc_crash_fetcher.cli.app import app
from asc_crash_fetcher.config import CONFIG_FILE_NAME, DATABASE_FILE_NAME
from asc_crash_fetcher.db import AttachmentState, dispose_engine, get_session, open_database
from tests.conftest import BASE_URL, ISSUER_ID, KEY_ID, MAR_02
from tests.factories import make_app, make_crash
from tests.fixtures import (
    APP_RESOURCE,
    CRASH_LOG_TEXT,
    NOT_FOUND_ERROR,
    apps_document,
    crash_log_document,
    crash_resource,
    submissions_page,
)

runner = CliRunner()


def invoke(data_dir: Path, *args: str, json_output: bool = False):
    """Run the CLI quietly against a data directory."""
    options = ["-q", "-d", str(data_dir)]
    if json_output:
        options += ["--format", "json"]
    return runner.invoke(app, [*options, *args])


def parse(result) -> object:
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


@pytest.fixture
def data_dir(tmp_path) -> Path:
    return tmp_path / "asc-crashes"


@pytest.fixture
def configured(data_dir, private_key_pem) -> Path:
    """A data directory with a usable config.toml and key file."""
    data_dir.mkdir(parents=True)
    (data_dir / "AuthKey_TEST.p8").write_text(private_key_pem)
    (data_dir / CONFIG_FILE_NAME).write_text(
        "[api]\n"
        f'issuer_id = "{ISSUER_ID}"\n'
        f'key_id = "{KEY_ID}"\n'
        'private_key = "AuthKey_TEST.p8"\n'
        "\n"
        "[[apps]]\n"
        'bundle_id = "com.example.myapp"\n'
    )
    return data_dir


@pytest.fixture
def seeded(data_dir) -> Path:
    """Three crashes (ids 1..3); #1 has its log on disk."""
    log_file = data_dir / "logs" / "1.ips"
    log_file.parent.mkdir(parents=True)
    log_file.write_text(CRASH_LOG_TEXT)

    async def _seed() -> None:
        await open_database(data_dir / DATABASE_FILE_NAME)
        try:
            async with get_session() as session:
                owner = make_app(session)
                await session.flush()
                make_crash(
                    session,
                    owner,
                    remote_id="c1",
                    attachment_state=AttachmentState.DOWNLOADED,
                    attachment_path=str(log_file),
                )
                make_crash(session, owner, remote_id="c2", created_date=MAR_02)
                make_crash(session, owner, remote_id="c3", device_model="iPhone14,2")
        finally:
            await dispose_engine()

    asyncio.run(_seed())
    return data_dir


class TestInit:
    """Tests for `init`."""

    def test_creates_layout(self, data_dir):
        result = invoke(data_dir, "init", json_output=True)

        data = parse(result)
        assert data["config_created"] is True
        assert (data_dir / CONFIG_FILE_NAME).exists()
        assert (data_dir / DATABASE_FILE_NAME).exists()
        assert (data_dir / "logs").is_dir()
        assert (data_dir / "screenshots").is_dir()

    def test_keeps_existing_config(self, data_dir):
        invoke(data_dir, "init")
        (data_dir / CONFIG_FILE_NAME).write_text("# mine\n")

        data = parse(invoke(data_dir, "init", json_output=True))

        assert data["config_created"] is False
        assert (data_dir / CONFIG_FILE_NAME).read_text() == "# mine\n"


class TestTriageCommands:
    """Tests for list, show, log and status changes."""

    def test_list_json_newest_first(self, seeded):
        records = parse(invoke(seeded, "list", json_output=True))

        assert [r["remote_id"] for r in records][0] == "c2"
        assert {r["status"] for r in records} == {"new"}
        assert records[0]["bundle_id"] == "com.example.myapp"

    def test_list_status_filter(self, seeded):
        invoke(seeded, "fix", "1", "--notes", "patched")

        records = parse(invoke(seeded, "list", "--status", "fixed", json_output=True))

        assert [r["id"] for r in records] == [1]

    def test_list_unknown_status(self, seeded):
        result = invoke(seeded, "list", "--status", "closed")

        assert result.exit_code == 1
        assert "unknown status" in result.stdout

    def test_show_text_includes_log_preview(self, seeded):
        result = invoke(seeded, "show", "1")

        assert result.exit_code == 0, result.output
        assert "Crash #1" in result.stdout
        assert "EXC_BAD_ACCESS" in result.stdout

    def test_show_unknown_record(self, seeded):
        result = invoke(seeded, "show", "99")

        assert result.exit_code == 1
        assert "crash #99 not found" in result.stdout

    def test_fix_requires_notes(self, seeded):
        result = invoke(seeded, "fix", "1")

        assert result.exit_code != 0

    def test_fix(self, seeded):
        record = parse(invoke(seeded, "fix", "2", "--notes", "patched in 2.1", json_output=True))

        assert record["status"] == "fixed"
        assert record["notes"] == "patched in 2.1"
        assert record["fixed_at"] is not None

    def test_duplicate_reopen_fix_history(self, seeded):
        """Each change is kept in the history shown by `show`."""
        # Arrange / Act
        invoke(seeded, "duplicate", "3", "--of", "1")
        invoke(seeded, "reopen", "3")
        invoke(seeded, "fix", "3", "--notes", "patched")
        record = parse(invoke(seeded, "show", "3", json_output=True))

        # Assert
        assert record["status"] == "fixed"
        assert record["duplicate_of"] is None
        assert [h["to_status"] for h in record["history"]] == ["duplicate", "new", "fixed"]

    def test_duplicate_of_itself(self, seeded):
        result = invoke(seeded, "duplicate", "2", "--of", "2")

        assert result.exit_code == 1
        assert "itself" in result.stdout

    def test_text_confirmation(self, seeded):
        result = invoke(seeded, "investigate", "2")

        assert result.exit_code == 0, result.output
        assert "Crash #2 marked as investigating" in result.stdout

    def test_log_prints_file(self, seeded):
        result = invoke(seeded, "log", "1")

        assert result.exit_code == 0, result.output
        assert "Thread 0 Crashed:" in result.stdout

    def test_log_missing(self, seeded):
        result = invoke(seeded, "log", "2")

        assert result.exit_code == 1
        assert "no log available" in result.stdout

    def test_stats_json(self, seeded):
        stats = parse(invoke(seeded, "stats", json_output=True))

        assert stats["total"] == 3
        assert stats["unfixed"] == 3
        assert stats["by_device"][0] == ["iPhone15,3", 2]

    def test_feedback_list_empty(self, seeded):
        result = invoke(seeded, "feedback", "list")

        assert result.exit_code == 0, result.output
        assert "No feedback records found." in result.stdout


class TestSyncCommand:
    """Tests for `sync` against a mocked API."""

    @pytest.fixture
    def mock_api(self, monkeypatch):
        """Route the sync command's client to a MockTransport."""

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path == "/v1/apps":
                return httpx.Response(200, json=apps_document(APP_RESOURCE))
            if path.endswith("/betaFeedbackCrashSubmissions"):
                return httpx.Response(200, json=submissions_page([crash_resource("c1")]))
            if path.endswith("/betaFeedbackScreenshotSubmissions"):
                return httpx.Response(200, json=submissions_page([]))
            if path.endswith("/crashLog"):
                return httpx.Response(200, json=crash_log_document("c1", CRASH_LOG_TEXT))
            return httpx.Response(404, json=NOT_FOUND_ERROR)

        def build_client(signer) -> AscClient:
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            return AscClient(signer, base_url=BASE_URL, http=http)

        monkeypatch.setattr(sync_cli, "AscClient", build_client)

    def test_sync_json(self, configured, mock_api):
        report = parse(invoke(configured, "sync", json_output=True))

        assert len(report["new_crashes"]) == 1
        new = report["new_crashes"][0]
        assert new["submission_id"] == "c1"
        assert Path(new["log_path"]).read_text() == CRASH_LOG_TEXT
        assert report["crash_total"] == 1
        assert report["errors"] == []

    def test_second_sync_reports_nothing_new(self, configured, mock_api):
        invoke(configured, "sync")

        report = parse(invoke(configured, "sync", json_output=True))

        assert report["new_crashes"] == []
        assert report["crash_total"] == 1

    def test_sync_text(self, configured, mock_api):
        result = invoke(configured, "sync")

        assert result.exit_code == 0, result.output
        assert "[CRASH] #1" in result.stdout
        assert "Total: 1 crashes (1 unfixed)" in result.stdout

    def test_unknown_app_filter(self, configured, mock_api):
        result = invoke(configured, "sync", "--app", "com.example.other")

        assert result.exit_code == 1
        assert "not in" in result.stdout

    def test_both_skip_flags(self, configured):
        result = invoke(configured, "sync", "--no-crashes", "--no-feedback")

        assert result.exit_code == 1
        assert "nothing to sync" in result.stdout

    def test_missing_config(self, data_dir):
        result = invoke(data_dir, "sync")

        assert result.exit_code == 1
        assert "asc-crash-fetcher init" in result.stdout
