"""Sync Orchestrator - mirror TestFlight submissions for every configured app.

Per app and per record kind:
1. full pull of the remote collection (progress kept in a SyncCursor),
2. reconciliation of every remote record into the store (new vs known),
3. attachment recovery for every record still pending, downloads running
   concurrently while store writes go through one shared lock,
4. aggregation into a SyncReport.

An API failure for one app is recorded in that app's result and the next
app proceeds. Credential and storage failures abort the run.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from asc_crash_fetcher.config import SyncConfig, get_settings
from asc_crash_fetcher.db.models import App, AttachmentState, RecordKind, utcnow
from asc_crash_fetcher.db.repositories import (
    AppRepository,
    SubmissionRepository,
    SyncCursorRepository,
)
from asc_crash_fetcher.exceptions import ApiError, AppNotFoundError
from asc_crash_fetcher.logging import app_context, bind_record, get_logger

from .attachments import (
    AttachmentFetcher,
    AttachmentRef,
    Downloaded,
    FetchOutcome,
    existing_attachment,
    is_within_retention,
)
from .commit_manager import CommitManager
from .enums import SyncScope
from .results import (
    AppSyncResult,
    KindTotals,
    NewRecord,
    PendingAttachment,
    RecoveredAttachment,
    SyncReport,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from asc_crash_fetcher.asc.client import AscClient
    from asc_crash_fetcher.config import AppEntry

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class SyncOrchestrator:
    """Orchestrates syncing of all configured apps.

    Usage:
        async with AscClient(signer) as client:
            async with get_session() as session:
                fetcher = AttachmentFetcher(client, logs_dir=..., screenshots_dir=...)
                orchestrator = SyncOrchestrator(client, session, fetcher)
                report = await orchestrator.sync(config.apps)
    """

    def __init__(
        self,
        client: AscClient,
        session: AsyncSession,
        fetcher: AttachmentFetcher,
        *,
        sync_config: SyncConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            client: App Store Connect API client
            session: Session owned by the caller; committed as the sync goes
            fetcher: Attachment fetcher writing into the data directory
            sync_config: Sync behavior (uses settings if None)
            clock: Source of naive-UTC "now" (injectable for tests)
        """
        self._client = client
        self._session = session
        self._fetcher = fetcher
        self._config = sync_config or get_settings().sync
        self._clock = clock

        self._write_lock = asyncio.Lock()
        self._apps = AppRepository(session, self._write_lock)
        self._cursors = SyncCursorRepository(session, self._write_lock)
        self._submissions = {
            kind: SubmissionRepository(session, kind, self._write_lock) for kind in RecordKind
        }
        self._commits = CommitManager(
            session, self._write_lock, batch_size=self._config.commit_batch_size
        )

    async def sync(
        self,
        apps: list[AppEntry],
        scope: SyncScope = SyncScope.ALL,
    ) -> SyncReport:
        """Sync the given apps.

        Args:
            apps: Apps from config (already narrowed by ``--app``)
            scope: Record kinds to pull

        Returns:
            SyncReport with per-app results and post-sync totals
        """
        start_time = time.monotonic()
        report = SyncReport()

        for entry in apps:
            report.app_results.append(await self.sync_app(entry, scope))

        await self._commits.finalize()

        for kind, repo in self._submissions.items():
            report.totals[kind] = KindTotals(
                total=await repo.count_total(),
                unfixed=await repo.count_unfixed(),
            )
        report.duration_seconds = time.monotonic() - start_time

        logger.info(
            "Sync complete: apps={}, new crashes={}, recovered logs={}, "
            "new feedback={}, recovered screenshots={}, pending={}, failed apps={} ({:.1f}s)",
            len(report.app_results),
            len(report.new_crashes),
            len(report.recovered_logs),
            len(report.new_feedbacks),
            len(report.recovered_screenshots),
            len(report.pending),
            len(report.errors),
            report.duration_seconds,
        )
        return report

    async def sync_app(self, entry: AppEntry, scope: SyncScope = SyncScope.ALL) -> AppSyncResult:
        """Sync one app; API failures end up in the result instead of raising.

        Records created before a failure are committed and still reported as
        new, since the next run will already know them.
        """
        result = AppSyncResult(bundle_id=entry.bundle_id, name=entry.name, started_at=utcnow())
        discovered: dict[RecordKind, set[int]] = {}

        with app_context(entry.bundle_id):
            try:
                app = await self._resolve_app(entry)
                result.name = app.name
                logger.info("Syncing {} ({})", app.bundle_id, app.name or "unknown")

                for kind in scope.kinds:
                    new_ids = discovered.setdefault(kind, set())
                    await self._pull(app, kind, new_ids, result)
                    await self._recover_attachments(app, kind, new_ids, result)
            except ApiError as e:
                result.error = str(e)
                logger.error("Sync of {} failed: {}", entry.bundle_id, e)
                await self._commits.commit()

            for kind, new_ids in discovered.items():
                await self._collect_new(entry.bundle_id, kind, new_ids, result)

        result.completed_at = utcnow()
        return result

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _resolve_app(self, entry: AppEntry) -> App:
        remote = await self._client.find_app(entry.bundle_id)
        if remote is None:
            raise AppNotFoundError(entry.bundle_id)
        app = await self._apps.upsert_app(
            entry.bundle_id,
            asc_id=remote.id,
            name=entry.name or remote.attributes.name,
        )
        await self._commits.record_success()
        return app

    async def _pull(
        self, app: App, kind: RecordKind, new_ids: set[int], result: AppSyncResult
    ) -> None:
        """Full pull of one collection, adding the local ids it creates to ``new_ids``."""
        assert app.asc_id is not None
        repo = self._submissions[kind]

        cursor = await self._cursors.start(app.id, kind, self._clock())
        await self._commits.record_success()

        async for page in self._client.submission_pages(kind, app.asc_id):
            for resource in page.data:
                submission, is_new = await repo.find_or_create_submission(
                    app.id, resource.to_submission_create(), now=self._clock()
                )
                await self._commits.record_success()
                if is_new:
                    new_ids.add(submission.id)
            result.records_seen += len(page.data)
            await self._cursors.advance(cursor, page.links.next, len(page.data))
            await self._commits.record_success()

        await self._cursors.complete(cursor, self._clock())
        await self._commits.record_success()

        logger.info(
            "Pulled {} {} record(s) in {} page(s), {} new",
            cursor.records_seen,
            kind.value,
            cursor.pages_fetched,
            len(new_ids),
        )

    async def _recover_attachments(
        self,
        app: App,
        kind: RecordKind,
        new_ids: set[int],
        result: AppSyncResult,
    ) -> None:
        """Try to complete every pending attachment of one app and kind."""
        repo = self._submissions[kind]
        directory = self._fetcher.directory_for(kind)
        now = self._clock()
        targets: list[AttachmentRef] = []

        for submission in await repo.missing_attachments(app.id):
            if not is_within_retention(
                submission.first_seen_at, now, self._config.retention_horizon
            ):
                await repo.update_attachment_state(submission.id, AttachmentState.UNAVAILABLE)
                await self._commits.record_success()
                result.expired.append(
                    PendingAttachment(kind, submission.id, "past retention horizon")
                )
                continue

            existing = existing_attachment(directory, submission.id)
            if existing is not None:
                await self._mark_downloaded(
                    repo, submission.id, str(existing.resolve()), None, new_ids, result
                )
                continue

            targets.append(
                AttachmentRef(
                    kind=kind,
                    local_id=submission.id,
                    remote_id=submission.remote_id,
                    url=getattr(submission, "attachment_url", None),
                )
            )

        if not targets:
            return

        semaphore = asyncio.Semaphore(self._config.download_concurrency)

        async def download(ref: AttachmentRef) -> None:
            async with semaphore:
                outcome = await self._fetcher.fetch(ref)
            await self._apply_outcome(app, repo, ref, outcome, new_ids, result)

        outcomes = await asyncio.gather(*(download(ref) for ref in targets), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def _apply_outcome(
        self,
        app: App,
        repo: SubmissionRepository,
        ref: AttachmentRef,
        outcome: FetchOutcome,
        new_ids: set[int],
        result: AppSyncResult,
    ) -> None:
        log = bind_record(app.bundle_id, ref.kind.value, ref.local_id)
        if isinstance(outcome, Downloaded):
            await self._mark_downloaded(
                repo, ref.local_id, str(outcome.path), outcome.mime_type, new_ids, result
            )
            log.debug("Downloaded {} bytes to {}", outcome.size, outcome.path)
            return

        result.pending.append(PendingAttachment(ref.kind, ref.local_id, outcome.reason))
        log.debug("Attachment still pending: {}", outcome.reason)

    async def _mark_downloaded(
        self,
        repo: SubmissionRepository,
        local_id: int,
        path: str,
        mime_type: str | None,
        new_ids: set[int],
        result: AppSyncResult,
    ) -> None:
        await repo.update_attachment_state(
            local_id, AttachmentState.DOWNLOADED, path=path, mime_type=mime_type
        )
        await self._commits.record_success()
        if local_id not in new_ids:
            result.recovered.append(RecoveredAttachment(repo.kind, local_id, path))

    async def _collect_new(
        self,
        bundle_id: str,
        kind: RecordKind,
        new_ids: set[int],
        result: AppSyncResult,
    ) -> None:
        repo = self._submissions[kind]
        for local_id in sorted(new_ids):
            submission = await repo.get_or_raise(local_id)
            result.new_records.append(NewRecord.from_submission(submission, bundle_id))
