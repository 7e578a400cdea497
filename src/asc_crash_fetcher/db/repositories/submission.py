"""Repository for crash and feedback submissions."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from asc_crash_fetcher.db.models import (
    SUBMISSION_MODELS,
    UNFIXED_STATUSES,
    App,
    AttachmentState,
    FeedbackSubmission,
    RecordKind,
    StatusChange,
    Submission,
    SubmissionStatus,
    utcnow,
)
from asc_crash_fetcher.exceptions import RecordNotFoundError, ValidationError
from asc_crash_fetcher.schemas.submission import SubmissionStats

from .base import BaseRepository

if TYPE_CHECKING:
    from asc_crash_fetcher.schemas.submission import SubmissionCreate, SubmissionFilter

TOP_N = 15


class SubmissionRepository(BaseRepository[Any]):
    """Repository for one kind of submission (crash or feedback).

    Remote fields are written once, on first sight. Triage fields are only
    changed through ``set_status``, attachment fields only through
    ``update_attachment_state``.

    Uniqueness:
        (app_id, remote_id) is enforced by a unique constraint; reconciliation
        inserts with ON CONFLICT DO NOTHING and then reads the row back, so
        observing the same remote record any number of times yields one row.
    """

    def __init__(
        self,
        session: AsyncSession,
        kind: RecordKind,
        write_lock: asyncio.Lock | None = None,
    ) -> None:
        """Initialize the repository.

        Args:
            session: Async SQLAlchemy session
            kind: Record kind this repository manages
            write_lock: Optional lock to serialize write operations (for concurrent use)
        """
        super().__init__(session, SUBMISSION_MODELS[kind], write_lock)
        self._kind = kind

    @property
    def kind(self) -> RecordKind:
        """Record kind managed by this repository."""
        return self._kind

    @property
    def model(self) -> type[Submission]:
        """Mapped class for this kind."""
        return self._model_class

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    async def get(self, local_id: int) -> Submission | None:
        """Get a submission by local id."""
        return await self.get_by_id(local_id)

    async def get_or_raise(self, local_id: int) -> Submission:
        """Get a submission by local id.

        Raises:
            RecordNotFoundError: If no such record exists.
        """
        submission = await self.get(local_id)
        if submission is None:
            raise RecordNotFoundError(self._kind.value, local_id)
        return submission

    async def get_by_remote_id(self, app_id: int, remote_id: str) -> Submission | None:
        """Get a submission by its app and remote id."""
        model = self.model
        stmt = select(model).where(model.app_id == app_id, model.remote_id == remote_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_submissions(self, filters: SubmissionFilter) -> list[Submission]:
        """List submissions, newest first.

        Args:
            filters: Status, date, app and limit filters

        Returns:
            Matching submissions (at most ``filters.limit``)
        """
        model = self.model
        stmt = select(model)
        if filters.statuses:
            stmt = stmt.where(model.status.in_(filters.statuses))
        if filters.since is not None:
            stmt = stmt.where(model.created_date >= filters.since)
        if filters.bundle_id is not None:
            stmt = stmt.join(App, App.id == model.app_id).where(
                App.bundle_id == filters.bundle_id
            )
        stmt = stmt.order_by(model.created_date.desc().nulls_last(), model.id.desc())
        stmt = stmt.limit(filters.limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def missing_attachments(self, app_id: int | None = None) -> list[Submission]:
        """Submissions whose attachment is still pending, oldest first.

        Args:
            app_id: Restrict to one app (None = all apps)
        """
        model = self.model
        stmt = select(model).where(model.attachment_state == AttachmentState.PENDING)
        if app_id is not None:
            stmt = stmt.where(model.app_id == app_id)
        stmt = stmt.order_by(model.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_total(self) -> int:
        """Number of submissions of this kind."""
        return await self.count()

    async def count_unfixed(self) -> int:
        """Number of submissions still needing attention (new or investigating)."""
        model = self.model
        stmt = select(func.count()).select_from(model).where(model.status.in_(UNFIXED_STATUSES))
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def stats(self, bundle_id: str | None = None) -> SubmissionStats:
        """Aggregate counts, optionally for one app.

        Returns:
            Totals, per-status counts and the top devices / OS versions
        """
        model = self.model

        def scoped(stmt: Any) -> Any:
            if bundle_id is None:
                return stmt
            return stmt.join(App, App.id == model.app_id).where(App.bundle_id == bundle_id)

        by_status_rows = await self._session.execute(
            scoped(select(model.status, func.count()).select_from(model)).group_by(model.status)
        )
        by_status = {status.value: n for status, n in by_status_rows.all()}

        async def top(column: Any) -> list[tuple[str, int]]:
            stmt = scoped(select(column, func.count()).select_from(model))
            stmt = stmt.where(column.is_not(None)).group_by(column)
            stmt = stmt.order_by(func.count().desc(), column).limit(TOP_N)
            rows = await self._session.execute(stmt)
            return [(value, n) for value, n in rows.all()]

        return SubmissionStats(
            kind=self._kind,
            total=sum(by_status.values()),
            unfixed=sum(by_status.get(s.value, 0) for s in UNFIXED_STATUSES),
            by_status=by_status,
            by_device=await top(model.device_model),
            by_os=await top(model.os_version),
        )

    async def history(self, local_id: int) -> list[StatusChange]:
        """Triage history of a submission, oldest first."""
        stmt = (
            select(StatusChange)
            .where(StatusChange.kind == self._kind, StatusChange.submission_id == local_id)
            .order_by(StatusChange.changed_at, StatusChange.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def find_or_create_submission(
        self,
        app_id: int,
        remote: SubmissionCreate,
        *,
        now: datetime | None = None,
    ) -> tuple[Submission, bool]:
        """Map a remote submission to its local row, creating it if unseen.

        New rows start as status ``new`` with attachment ``pending``. For an
        already known feedback row the screenshot URL is refreshed, since
        pre-signed URLs expire.

        Args:
            app_id: Local app id
            remote: Fields of the remote submission
            now: First-seen timestamp for a new row (defaults to now, UTC)

        Returns:
            Tuple of (submission, is_new)
        """
        model = self.model
        timestamp = now or utcnow()
        values = {
            **remote.to_columns(),
            "app_id": app_id,
            "status": SubmissionStatus.NEW,
            "attachment_state": AttachmentState.PENDING,
            "first_seen_at": timestamp,
            "updated_at": timestamp,
        }
        stmt = (
            sqlite_insert(model)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["app_id", "remote_id"])
            .returning(model.id)
        )

        async with self.writing() as session:
            result = await session.execute(stmt)
            inserted_id = result.scalar_one_or_none()

            submission = await self.get_by_remote_id(app_id, remote.remote_id)
            if submission is None:
                raise ValidationError(
                    f"{self._kind.value} {remote.remote_id!r} vanished during reconciliation"
                )

            url = getattr(remote, "attachment_url", None)
            if (
                inserted_id is None
                and isinstance(submission, FeedbackSubmission)
                and url
                and submission.attachment_url != url
            ):
                submission.attachment_url = url
                submission.updated_at = utcnow()
                await session.flush()

            return submission, inserted_id is not None

    # -------------------------------------------------------------------------
    # Attachment state
    # -------------------------------------------------------------------------

    async def update_attachment_state(
        self,
        local_id: int,
        state: AttachmentState,
        path: str | None = None,
        mime_type: str | None = None,
    ) -> Submission:
        """Record the attachment state of a submission.

        Args:
            local_id: Local submission id
            state: New attachment state
            path: Absolute file path (required for ``downloaded``)
            mime_type: Screenshot MIME type (feedback only)

        Raises:
            RecordNotFoundError: If no such record exists.
            ValidationError: If ``downloaded`` is given without a path.
        """
        if state == AttachmentState.DOWNLOADED and not path:
            raise ValidationError("a downloaded attachment needs a path")

        async with self.writing() as session:
            submission = await self.get_or_raise(local_id)
            submission.attachment_state = state
            submission.attachment_path = path if state == AttachmentState.DOWNLOADED else None
            if mime_type is not None and isinstance(submission, FeedbackSubmission):
                submission.mime_type = mime_type
            submission.updated_at = utcnow()
            await session.flush()
            return submission

    # -------------------------------------------------------------------------
    # Triage
    # -------------------------------------------------------------------------

    async def set_status(
        self,
        local_id: int,
        status: SubmissionStatus,
        notes: str | None = None,
        duplicate_of: int | None = None,
    ) -> Submission:
        """Persist a triage transition and append it to the history.

        ``fixed_at`` is set when moving to ``fixed`` and cleared otherwise.

        Raises:
            RecordNotFoundError: If no such record exists.
            ValidationError: If ``duplicate_of`` does not match the status,
                or points at the record itself or at an unknown record.
        """
        if status == SubmissionStatus.DUPLICATE:
            if duplicate_of is None:
                raise ValidationError("duplicate status needs a duplicate_of target")
            if duplicate_of == local_id:
                raise ValidationError(f"{self._kind.value} #{local_id} cannot duplicate itself")
        elif duplicate_of is not None:
            raise ValidationError(f"duplicate_of is only valid with status {status.value!r}")

        async with self.writing() as session:
            submission = await self.get_or_raise(local_id)
            if duplicate_of is not None and await self.get(duplicate_of) is None:
                raise RecordNotFoundError(self._kind.value, duplicate_of)

            now = utcnow()
            previous = submission.status
            submission.status = status
            submission.notes = notes
            submission.duplicate_of = duplicate_of
            submission.fixed_at = now if status == SubmissionStatus.FIXED else None
            submission.updated_at = now

            session.add(
                StatusChange(
                    kind=self._kind,
                    submission_id=local_id,
                    from_status=previous,
                    to_status=status,
                    notes=notes,
                    duplicate_of=duplicate_of,
                    changed_at=now,
                )
            )
            await session.flush()
            return submission
