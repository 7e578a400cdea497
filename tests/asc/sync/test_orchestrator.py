"""End-to-end tests for SyncOrchestrator against a fake App Store Connect."""

from datetime import datetime, timedelta

import httpx
import pytest

from asc_crash_fetcher.asc.client import AscClient
from asc_crash_fetcher.asc.sync import AttachmentFetcher, SyncOrchestrator, SyncScope
from asc_crash_fetcher.config import AppEntry, RetryConfig, SyncConfig
from asc_crash_fetcher.db.models import AttachmentState, RecordKind, SubmissionStatus
from asc_crash_fetcher.db.repositories import SubmissionRepository, SyncCursorRepository
from asc_crash_fetcher.exceptions import CredentialError
from tests.conftest import BASE_URL, MAR_02_ISO, MAR_05, MAR_06
from tests.fixtures import (
    APP_ASC_ID,
    APP_RESOURCE,
    BUNDLE_ID,
    CRASH_LOG_TEXT,
    NOT_FOUND_ERROR,
    UNAUTHORIZED_ERROR,
    apps_document,
    crash_log_document,
    crash_resource,
    screenshot_resource,
    submissions_page,
)

OTHER_BUNDLE_ID = "com.example.other"
OTHER_ASC_ID = "1483799111"


class FakeAppStoreConnect:
    """Mutable in-memory remote serving the endpoints a sync touches."""

    def __init__(self) -> None:
        self.apps: dict[str, dict] = {BUNDLE_ID: APP_RESOURCE}
        self.crashes: dict[str, list[dict]] = {APP_ASC_ID: []}
        self.screenshots: dict[str, list[dict]] = {APP_ASC_ID: []}
        self.logs: dict[str, str] = {}
        self.files: dict[str, bytes] = {}
        self.failing_apps: set[str] = set()
        self.requests: list[httpx.Request] = []

    def add_app(self, bundle_id: str, asc_id: str) -> None:
        self.apps[bundle_id] = {
            "type": "apps",
            "id": asc_id,
            "attributes": {"bundleId": bundle_id, "name": "Other"},
        }
        self.crashes[asc_id] = []
        self.screenshots[asc_id] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = request.url
        parts = url.path.strip("/").split("/")

        if url.host == "cdn.test":
            body = self.files.get(str(url))
            if body is None:
                return httpx.Response(403, text="expired")
            return httpx.Response(200, content=body, headers={"Content-Type": "image/png"})

        if parts == ["v1", "apps"]:
            bundle_id = url.params.get("filter[bundleId]")
            found = [self.apps[bundle_id]] if bundle_id in self.apps else []
            return httpx.Response(200, json=apps_document(*found))

        if parts[:2] == ["v1", "apps"] and len(parts) == 4:
            asc_id, collection = parts[2], parts[3]
            if asc_id in self.failing_apps:
                return httpx.Response(401, json=UNAUTHORIZED_ERROR)
            if collection == "betaFeedbackCrashSubmissions":
                return self._page(self.crashes[asc_id], url)
            return self._page(self.screenshots[asc_id], url)

        if parts[:2] == ["v1", "betaFeedbackCrashSubmissions"] and parts[-1] == "crashLog":
            text = self.logs.get(parts[2])
            if text is None:
                return httpx.Response(404, json=NOT_FOUND_ERROR)
            return httpx.Response(200, json=crash_log_document(parts[2], text))

        return httpx.Response(404, json=NOT_FOUND_ERROR)

    def _page(self, records: list[dict], url: httpx.URL) -> httpx.Response:
        """Serve records two per page, linking pages by offset."""
        offset = int(url.params.get("offset", "0"))
        chunk = records[offset : offset + 2]
        next_url = None
        if offset + 2 < len(records):
            next_url = str(url.copy_set_param("offset", str(offset + 2)))
        return httpx.Response(200, json=submissions_page(chunk, next_url=next_url))


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def remote() -> FakeAppStoreConnect:
    return FakeAppStoreConnect()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(MAR_05)


@pytest.fixture
def data_dirs(tmp_path):
    return tmp_path / "logs", tmp_path / "screenshots"


@pytest.fixture
def make_orchestrator(make_client, remote, db_session, data_dirs, clock):
    """Build an orchestrator whose client talks to the fake remote."""

    def _make(*, retry: RetryConfig | None = None, **config) -> SyncOrchestrator:
        client = make_client(remote.handler, retry=retry)
        fetcher = AttachmentFetcher(
            client, logs_dir=data_dirs[0], screenshots_dir=data_dirs[1]
        )
        return SyncOrchestrator(
            client,
            db_session,
            fetcher,
            sync_config=SyncConfig(**config),
            clock=clock,
        )

    return _make


APPS = [AppEntry(bundle_id=BUNDLE_ID)]


class TestFirstAndSecondSync:
    """Core flow: discover records, then recover their attachments later."""

    async def test_first_sync_records_new_crashes_pending(
        self, make_orchestrator, remote, db_session
    ):
        """Two crashes whose logs are not ready yet: both new, both pending."""
        # Arrange
        remote.crashes[APP_ASC_ID] = [
            crash_resource("c1"),
            crash_resource("c2", created=MAR_02_ISO),
        ]
        orchestrator = make_orchestrator()

        # Act
        report = await orchestrator.sync(APPS)

        # Assert
        assert [r.remote_id for r in report.new_crashes] == ["c1", "c2"]
        assert report.recovered_logs == []
        assert len(report.pending) == 2
        assert report.total(RecordKind.CRASH).total == 2
        assert report.total(RecordKind.CRASH).unfixed == 2
        assert not report.has_failures

        repo = SubmissionRepository(db_session, RecordKind.CRASH)
        missing = await repo.missing_attachments()
        assert len(missing) == 2
        assert all(c.first_seen_at == MAR_05 for c in missing)

    async def test_second_sync_recovers_logs(
        self, make_orchestrator, remote, db_session, clock, data_dirs
    ):
        """Logs published after the first sync are downloaded on the next one."""
        # Arrange
        remote.crashes[APP_ASC_ID] = [crash_resource("c1"), crash_resource("c2")]
        await make_orchestrator().sync(APPS)
        remote.logs = {"c1": CRASH_LOG_TEXT, "c2": CRASH_LOG_TEXT}
        clock.now = MAR_06

        # Act
        report = await make_orchestrator().sync(APPS)

        # Assert
        assert report.new_crashes == []
        assert len(report.recovered_logs) == 2
        assert report.pending == []
        assert report.total(RecordKind.CRASH).total == 2
        for recovered in report.recovered_logs:
            path = data_dirs[0] / f"{recovered.local_id}.ips"
            assert recovered.path == str(path.resolve())
            assert path.read_text() == CRASH_LOG_TEXT

        repo = SubmissionRepository(db_session, RecordKind.CRASH)
        assert await repo.missing_attachments() == []

    async def test_new_record_with_log_available_is_not_recovered(self, make_orchestrator, remote):
        """A log downloaded in the same sync belongs to the new record."""
        remote.crashes[APP_ASC_ID] = [crash_resource("c1")]
        remote.logs = {"c1": CRASH_LOG_TEXT}

        report = await make_orchestrator().sync(APPS)

        assert len(report.new_crashes) == 1
        assert report.new_crashes[0].attachment_path is not None
        assert report.recovered_logs == []

    async def test_repeat_sync_is_idempotent(self, make_orchestrator, remote, db_session):
        """Syncing unchanged remote data twice creates nothing new."""
        remote.crashes[APP_ASC_ID] = [crash_resource(f"c{n}") for n in range(5)]

        first = await make_orchestrator().sync(APPS)
        second = await make_orchestrator().sync(APPS)

        assert len(first.new_crashes) == 5
        assert second.new_crashes == []
        assert second.total(RecordKind.CRASH).total == 5
        assert second.app_results[0].records_seen == 5
        assert await SubmissionRepository(db_session, RecordKind.CRASH).count_total() == 5

    async def test_triage_status_survives_sync(self, make_orchestrator, remote, db_session):
        remote.crashes[APP_ASC_ID] = [crash_resource("c1")]
        first = await make_orchestrator().sync(APPS)
        repo = SubmissionRepository(db_session, RecordKind.CRASH)
        await repo.set_status(first.new_crashes[0].local_id, SubmissionStatus.FIXED, notes="done")

        report = await make_orchestrator().sync(APPS)

        crash = await repo.get_or_raise(first.new_crashes[0].local_id)
        assert crash.status == SubmissionStatus.FIXED
        assert report.total(RecordKind.CRASH).unfixed == 0

    async def test_multi_page_pull_updates_cursor(self, make_orchestrator, remote, db_session):
        remote.crashes[APP_ASC_ID] = [crash_resource(f"c{n}") for n in range(5)]

        await make_orchestrator().sync(APPS)

        cursor = await SyncCursorRepository(db_session).get(1, RecordKind.CRASH)
        assert cursor is not None
        assert cursor.pages_fetched == 3
        assert cursor.records_seen == 5
        assert cursor.interrupted is False


class TestFeedback:
    """Screenshot feedback flows through the same pipeline."""

    async def test_screenshot_downloaded_with_new_feedback(
        self, make_orchestrator, remote, data_dirs
    ):
        remote.screenshots[APP_ASC_ID] = [screenshot_resource("f1")]
        remote.files = {"https://cdn.test/shots/f1.png": b"\x89PNG-data"}

        report = await make_orchestrator().sync(APPS)

        assert len(report.new_feedbacks) == 1
        new = report.new_feedbacks[0]
        assert new.tester_comment == "Button is cut off"
        assert new.attachment_path == str((data_dirs[1] / f"{new.local_id}.png").resolve())
        assert report.total(RecordKind.FEEDBACK).total == 1

    async def test_expired_screenshot_url_retried_with_fresh_url(
        self, make_orchestrator, remote, db_session
    ):
        """A 403 keeps the record pending; the next pull brings a new URL."""
        # Arrange
        remote.screenshots[APP_ASC_ID] = [screenshot_resource("f1")]
        first = await make_orchestrator().sync(APPS)
        fresh = "https://cdn.test/shots/f1-fresh.png"
        remote.screenshots[APP_ASC_ID] = [screenshot_resource("f1", urls=[fresh])]
        remote.files = {fresh: b"png"}

        # Act
        second = await make_orchestrator().sync(APPS)

        # Assert
        assert len(first.pending) == 1
        assert len(second.recovered_screenshots) == 1
        feedback = await SubmissionRepository(db_session, RecordKind.FEEDBACK).get_or_raise(
            first.new_feedbacks[0].local_id
        )
        assert feedback.attachment_url == fresh
        assert feedback.mime_type == "image/png"

    async def test_scope_skips_kind(self, make_orchestrator, remote):
        remote.crashes[APP_ASC_ID] = [crash_resource("c1")]
        remote.screenshots[APP_ASC_ID] = [screenshot_resource("f1")]

        report = await make_orchestrator().sync(APPS, SyncScope.FEEDBACK)

        assert report.new_crashes == []
        assert len(report.new_feedbacks) == 1
        assert not any("betaFeedbackCrashSubmissions" in r.url.path for r in remote.requests)


class TestAttachmentRecovery:
    """Retention horizon and on-disk recovery."""

    async def test_past_retention_marked_unavailable(
        self, make_orchestrator, remote, db_session, clock
    ):
        # Arrange
        remote.crashes[APP_ASC_ID] = [crash_resource("c1")]
        await make_orchestrator(retention_days=30).sync(APPS)
        clock.now = MAR_05 + timedelta(days=31)
        remote.requests.clear()

        # Act
        report = await make_orchestrator(retention_days=30).sync(APPS)

        # Assert
        expired = report.app_results[0].expired
        assert [p.reason for p in expired] == ["past retention horizon"]
        assert report.pending == []
        assert not any(r.url.path.endswith("/crashLog") for r in remote.requests)
        crash = await SubmissionRepository(db_session, RecordKind.CRASH).get_or_raise(
            expired[0].local_id
        )
        assert crash.attachment_state == AttachmentState.UNAVAILABLE

    async def test_file_already_on_disk_is_adopted(
        self, make_orchestrator, remote, db_session, data_dirs
    ):
        """A complete file from an interrupted run is recorded without downloading."""
        # Arrange
        remote.crashes[APP_ASC_ID] = [crash_resource("c1")]
        first = await make_orchestrator().sync(APPS)
        local_id = first.new_crashes[0].local_id
        data_dirs[0].mkdir(parents=True, exist_ok=True)
        (data_dirs[0] / f"{local_id}.ips").write_text(CRASH_LOG_TEXT)
        remote.requests.clear()

        # Act
        report = await make_orchestrator().sync(APPS)

        # Assert
        assert [r.local_id for r in report.recovered_logs] == [local_id]
        assert not any(r.url.path.endswith("/crashLog") for r in remote.requests)

    async def test_fixed_record_still_recovers_log(self, make_orchestrator, remote, db_session):
        remote.crashes[APP_ASC_ID] = [crash_resource("c1")]
        first = await make_orchestrator().sync(APPS)
        repo = SubmissionRepository(db_session, RecordKind.CRASH)
        await repo.set_status(first.new_crashes[0].local_id, SubmissionStatus.FIXED, notes="x")
        remote.logs = {"c1": CRASH_LOG_TEXT}

        report = await make_orchestrator().sync(APPS)

        assert len(report.recovered_logs) == 1


class TestFailureIsolation:
    """Per-app failures are reported; fatal ones abort."""

    async def test_failing_app_does_not_stop_others(self, make_orchestrator, remote):
        # Arrange
        remote.add_app(OTHER_BUNDLE_ID, OTHER_ASC_ID)
        remote.failing_apps.add(APP_ASC_ID)
        remote.crashes[OTHER_ASC_ID] = [crash_resource("o1")]
        apps = [AppEntry(bundle_id=BUNDLE_ID), AppEntry(bundle_id=OTHER_BUNDLE_ID)]

        # Act
        report = await make_orchestrator().sync(apps)

        # Assert
        assert report.has_failures
        assert report.errors[0]["app"] == BUNDLE_ID
        assert "401" in report.errors[0]["error"]
        assert [r.bundle_id for r in report.new_crashes] == [OTHER_BUNDLE_ID]

    async def test_unknown_app_reported(self, make_orchestrator):
        report = await make_orchestrator().sync([AppEntry(bundle_id="com.example.ghost")])

        assert report.errors == [
            {
                "app": "com.example.ghost",
                "error": "app 'com.example.ghost' not found in App Store Connect",
            }
        ]

    async def test_interrupted_pull_keeps_earlier_pages(
        self, make_orchestrator, remote, db_session
    ):
        """Records from pages before a failure are committed and announced once."""
        # Arrange
        remote.crashes[APP_ASC_ID] = [crash_resource(f"c{n}") for n in range(4)]
        original = remote.handler

        def flaky(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("offset") == "2":
                return httpx.Response(500)
            return original(request)

        remote.handler = flaky  # type: ignore[method-assign]
        first = await make_orchestrator(retry=RetryConfig(max_attempts=1)).sync(APPS)
        remote.handler = original  # type: ignore[method-assign]
        cursor = await SyncCursorRepository(db_session).get(1, RecordKind.CRASH)
        assert cursor is not None
        assert cursor.interrupted is True

        # Act
        second = await make_orchestrator().sync(APPS)

        # Assert
        assert first.has_failures
        assert [r.remote_id for r in first.new_crashes] == ["c0", "c1"]
        assert cursor.interrupted is False
        assert [r.remote_id for r in second.new_crashes] == ["c2", "c3"]
        assert second.total(RecordKind.CRASH).total == 4

    async def test_partial_pull_reported_before_next_app(self, make_orchestrator, remote):
        """A pull failing on page 2 still reports page 1; the next app syncs normally."""
        # Arrange
        remote.add_app(OTHER_BUNDLE_ID, OTHER_ASC_ID)
        remote.crashes[APP_ASC_ID] = [crash_resource(f"c{n}") for n in range(4)]
        remote.crashes[OTHER_ASC_ID] = [crash_resource("o1")]
        original = remote.handler

        def flaky(request: httpx.Request) -> httpx.Response:
            if APP_ASC_ID in request.url.path and request.url.params.get("offset") == "2":
                return httpx.Response(500)
            return original(request)

        remote.handler = flaky  # type: ignore[method-assign]
        apps = [AppEntry(bundle_id=BUNDLE_ID), AppEntry(bundle_id=OTHER_BUNDLE_ID)]

        # Act
        report = await make_orchestrator(retry=RetryConfig(max_attempts=1)).sync(apps)

        # Assert
        assert [e["app"] for e in report.errors] == [BUNDLE_ID]
        assert [(r.bundle_id, r.remote_id) for r in report.new_crashes] == [
            (BUNDLE_ID, "c0"),
            (BUNDLE_ID, "c1"),
            (OTHER_BUNDLE_ID, "o1"),
        ]
        assert report.total(RecordKind.CRASH).total == 3

    async def test_undecodable_screenshot_keeps_record_pending(self, make_orchestrator, remote):
        """A download failing inside httpx stays local to its record."""
        # Arrange
        remote.screenshots[APP_ASC_ID] = [screenshot_resource("f1")]
        remote.crashes[APP_ASC_ID] = [crash_resource("c1")]
        remote.logs = {"c1": CRASH_LOG_TEXT}
        original = remote.handler

        def corrupt_cdn(request: httpx.Request) -> httpx.Response:
            if request.url.host == "cdn.test":
                return httpx.Response(
                    200,
                    content=b"not gzip at all",
                    headers={"Content-Type": "image/png", "Content-Encoding": "gzip"},
                )
            return original(request)

        remote.handler = corrupt_cdn  # type: ignore[method-assign]

        # Act
        report = await make_orchestrator().sync(APPS)

        # Assert
        assert not report.has_failures
        assert len(report.new_crashes) == 1
        assert len(report.new_feedbacks) == 1
        assert [p.kind for p in report.pending] == [RecordKind.FEEDBACK]
        assert report.new_feedbacks[0].attachment_path is None

    async def test_credential_error_aborts(self, remote, db_session, data_dirs):
        """A signing failure is fatal for the whole run."""

        class BrokenSigner:
            def token(self) -> str:
                raise CredentialError("private key is not an EC (P-256) key")

        client = AscClient(
            BrokenSigner(),  # type: ignore[arg-type]
            base_url=BASE_URL,
            http=httpx.AsyncClient(transport=httpx.MockTransport(remote.handler)),
        )
        fetcher = AttachmentFetcher(client, logs_dir=data_dirs[0], screenshots_dir=data_dirs[1])
        orchestrator = SyncOrchestrator(client, db_session, fetcher)

        with pytest.raises(CredentialError):
            await orchestrator.sync(APPS)
