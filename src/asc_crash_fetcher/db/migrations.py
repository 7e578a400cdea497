"""Forward-only schema migrations, applied when the store is opened.

Each step is a plain function over alembic's ``Operations`` facade, so the
DDL reads like an alembic revision script but runs in-process without an
alembic.ini or script directory. Applied steps are recorded in
``schema_migrations``; re-running is a no-op.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.engine import Connection

from asc_crash_fetcher.db.models import AttachmentState, RecordKind, SubmissionStatus
from asc_crash_fetcher.logging import get_logger

logger = get_logger(__name__)

_version_metadata = sa.MetaData()

schema_migrations = sa.Table(
    "schema_migrations",
    _version_metadata,
    sa.Column("version", sa.Integer(), primary_key=True),
    sa.Column("description", sa.String(200), nullable=False),
    sa.Column("applied_at", sa.DateTime(), nullable=False),
)


@dataclass(frozen=True)
class Migration:
    """A single forward migration step."""

    version: int
    description: str
    upgrade: Callable[[Operations], None]


def _submission_columns() -> list[sa.Column]:
    """Columns common to both submission tables at version 1."""
    return [
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column("remote_id", sa.String(length=128), nullable=False),
        sa.Column("created_date", sa.DateTime(), nullable=True),
        sa.Column("device_model", sa.String(length=100), nullable=True),
        sa.Column("os_version", sa.String(length=50), nullable=True),
        sa.Column("app_platform", sa.String(length=50), nullable=True),
        sa.Column("device_family", sa.String(length=50), nullable=True),
        sa.Column("locale", sa.String(length=50), nullable=True),
        sa.Column("connection_type", sa.String(length=50), nullable=True),
        sa.Column("battery_pct", sa.Integer(), nullable=True),
        sa.Column("tester_email", sa.String(length=255), nullable=True),
        sa.Column("tester_comment", sa.Text(), nullable=True),
        sa.Column("build_bundle_id", sa.String(length=255), nullable=True),
        sa.Column("build_id", sa.String(length=128), nullable=True),
        sa.Column("attachment_state", sa.Enum(AttachmentState), nullable=False),
        sa.Column("attachment_path", sa.String(length=1024), nullable=True),
        sa.Column("status", sa.Enum(SubmissionStatus), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("fixed_at", sa.DateTime(), nullable=True),
        sa.Column("first_seen_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("duplicate_of", sa.Integer(), nullable=True),
    ]


def _create_submission_table(op: Operations, table: str, prefix: str, *extra: sa.Column) -> None:
    op.create_table(
        table,
        *_submission_columns(),
        *extra,
        sa.ForeignKeyConstraint(["app_id"], ["apps.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["duplicate_of"], [f"{table}.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("app_id", "remote_id", name=f"uq_{prefix}_app_remote"),
    )
    op.create_index(f"ix_{table}_status", table, ["status"])
    op.create_index(f"ix_{table}_created_date", table, ["created_date"])
    op.create_index(f"ix_{table}_app_id", table, ["app_id"])


def _initial_schema(op: Operations) -> None:
    op.create_table(
        "apps",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bundle_id", sa.String(length=255), nullable=False),
        sa.Column("asc_id", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bundle_id"),
        sa.UniqueConstraint("asc_id"),
    )
    _create_submission_table(
        op,
        "crash_submissions",
        "crash",
        sa.Column("architecture", sa.String(length=50), nullable=True),
        sa.Column("app_uptime_ms", sa.Integer(), nullable=True),
    )
    _create_submission_table(op, "feedback_submissions", "feedback")


def _add_status_history(op: Operations) -> None:
    op.create_table(
        "status_changes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.Enum(RecordKind), nullable=False),
        sa.Column("submission_id", sa.Integer(), nullable=False),
        sa.Column("from_status", sa.Enum(SubmissionStatus), nullable=False),
        sa.Column("to_status", sa.Enum(SubmissionStatus), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("duplicate_of", sa.Integer(), nullable=True),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_status_changes_record", "status_changes", ["kind", "submission_id"])


def _add_sync_cursors(op: Operations) -> None:
    op.create_table(
        "sync_cursors",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.Enum(RecordKind), nullable=False),
        sa.Column("next_url", sa.Text(), nullable=True),
        sa.Column("pages_fetched", sa.Integer(), nullable=False),
        sa.Column("records_seen", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["app_id"], ["apps.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("app_id", "kind", name="uq_cursor_app_kind"),
    )


def _add_feedback_media(op: Operations) -> None:
    op.add_column("feedback_submissions", sa.Column("attachment_url", sa.Text(), nullable=True))
    op.add_column(
        "feedback_submissions", sa.Column("mime_type", sa.String(length=100), nullable=True)
    )


MIGRATIONS: list[Migration] = [
    Migration(1, "initial schema", _initial_schema),
    Migration(2, "status change history", _add_status_history),
    Migration(3, "sync cursors", _add_sync_cursors),
    Migration(4, "feedback screenshot url and mime type", _add_feedback_media),
]


def current_version(connection: Connection) -> int:
    """Highest applied migration version (0 for an empty database)."""
    schema_migrations.create(connection, checkfirst=True)
    version = connection.execute(sa.select(sa.func.max(schema_migrations.c.version))).scalar()
    return version or 0


def run_migrations(connection: Connection) -> list[int]:
    """Apply pending migrations on a synchronous connection.

    Call through ``AsyncConnection.run_sync``.

    Returns:
        Versions applied by this call (empty when already current).
    """
    version = current_version(connection)
    op = Operations(MigrationContext.configure(connection))

    applied: list[int] = []
    for migration in MIGRATIONS:
        if migration.version <= version:
            continue
        logger.info("Applying migration {}: {}", migration.version, migration.description)
        migration.upgrade(op)
        connection.execute(
            sa.insert(schema_migrations).values(
                version=migration.version,
                description=migration.description,
                applied_at=datetime.now(UTC),
            )
        )
        applied.append(migration.version)
    return applied


LATEST_VERSION = MIGRATIONS[-1].version
