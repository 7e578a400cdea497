"""Triage commands (list, show, stats and status changes) for one record kind.

The same commands are registered twice: for crashes at the top level and for
screenshot feedback under ``feedback``. Crashes get ``log``, feedback gets
``screenshot``.
"""

from pathlib import Path
from typing import Any

import typer
from rich.markup import escape
from rich.table import Table

from asc_crash_fetcher.cli.common import (
    AppFilterOption,
    CliState,
    RecordIdArgument,
    console,
    fail,
    get_state,
    open_store,
    parse_date,
    print_json,
    run_async_command,
)
from asc_crash_fetcher.db import SubmissionRepository
from asc_crash_fetcher.schemas import (
    READ_SCHEMAS,
    RecordKind,
    StatusChangeRead,
    SubmissionFilter,
    SubmissionStatus,
)
from asc_crash_fetcher.triage import (
    Command,
    Fix,
    Investigate,
    MarkDuplicate,
    Reopen,
    TriageService,
    WontFix,
)

LOG_PREVIEW_LINES = 50

_STATUS_STYLES = {
    SubmissionStatus.NEW: "yellow",
    SubmissionStatus.INVESTIGATING: "blue",
    SubmissionStatus.FIXED: "green",
    SubmissionStatus.WONTFIX: "dim",
    SubmissionStatus.DUPLICATE: "dim",
}


def parse_statuses(value: str | None) -> list[SubmissionStatus] | None:
    """Parse a comma-separated status list (``new,investigating``).

    Raises:
        typer.BadParameter: If a status is unknown
    """
    if value is None:
        return None
    statuses = []
    for raw in value.split(","):
        name = raw.strip().lower()
        if not name:
            continue
        try:
            statuses.append(SubmissionStatus(name))
        except ValueError:
            valid = ", ".join(s.value for s in SubmissionStatus)
            raise typer.BadParameter(f"unknown status '{name}' (valid: {valid})") from None
    return statuses or None


async def _read(state: CliState, kind: RecordKind, local_id: int) -> dict[str, Any]:
    async with open_store(state) as session:
        repo = SubmissionRepository(session, kind)
        submission = await repo.get_or_raise(local_id)
        history = await repo.history(local_id)
        data = READ_SCHEMAS[kind].from_orm(submission).to_dict()
        data["history"] = [StatusChangeRead.from_orm(h).to_dict() for h in history]
        return data


async def _apply(
    state: CliState, kind: RecordKind, local_id: int, command: Command
) -> dict[str, Any]:
    async with open_store(state) as session:
        service = TriageService(SubmissionRepository(session, kind))
        submission = await service.apply(local_id, command)
        return READ_SCHEMAS[kind].from_orm(submission).to_dict()


def _short_date(value: str | None) -> str:
    return value[:16].replace("T", " ") if value else "-"


def _attachment_file(record: dict[str, Any]) -> Path | None:
    path = record.get("attachment_path")
    if not path:
        return None
    file = Path(path)
    return file if file.is_file() else None


def register(app: typer.Typer, kind: RecordKind) -> None:
    """Register the triage commands for one record kind on a typer app."""
    label = kind.label
    noun = kind.value

    def report_change(ctx: typer.Context, local_id: int, command: Command, message: str) -> None:
        state = get_state(ctx)
        record = run_async_command(_apply(state, kind, local_id, command))
        if state.json:
            print_json(record)
            return
        console.print(message, highlight=False)

    @app.command("list")
    def list_records(
        ctx: typer.Context,
        status: str | None = typer.Option(
            None,
            "--status",
            "-s",
            help="Comma-separated statuses (new, investigating, fixed, wontfix, duplicate)",
        ),
        since: str | None = typer.Option(
            None,
            "--since",
            help="Only records created on or after this date (YYYY-MM-DD or ISO format)",
        ),
        app_filter: AppFilterOption = None,
        limit: int = typer.Option(50, "--limit", "-n", min=1, help="Maximum rows"),
    ) -> None:
        """List records, newest first."""
        state = get_state(ctx)
        try:
            filters = SubmissionFilter(
                statuses=parse_statuses(status),
                since=parse_date(since),
                bundle_id=app_filter,
                limit=limit,
            )
        except typer.BadParameter as e:
            raise fail(str(e)) from None

        async def _list() -> list[dict[str, Any]]:
            async with open_store(state) as session:
                repo = SubmissionRepository(session, kind)
                rows = await repo.list_submissions(filters)
                return [r.to_dict() for r in READ_SCHEMAS[kind].from_orm_list(rows)]

        records = run_async_command(_list())

        if state.json:
            print_json(records)
            return

        if not records:
            console.print(f"No {noun} records found.")
            return

        table = Table(title=f"{label} records")
        table.add_column("ID", style="cyan", justify="right")
        table.add_column("App")
        table.add_column("Created")
        table.add_column("Device")
        table.add_column("OS")
        table.add_column("Status")
        table.add_column("File")
        for record in records:
            status_value = SubmissionStatus(record["status"])
            style = _STATUS_STYLES[status_value]
            table.add_row(
                str(record["id"]),
                record["bundle_id"] or "-",
                _short_date(record["created_date"]),
                escape(record["device_model"] or "-"),
                escape(record["os_version"] or "-"),
                f"[{style}]{status_value.value}[/{style}]",
                "yes" if record["attachment_state"] == "downloaded" else "",
            )
        console.print(table)

    @app.command("show")
    def show(ctx: typer.Context, record_id: RecordIdArgument) -> None:
        """Show one record with its triage history."""
        state = get_state(ctx)
        record = run_async_command(_read(state, kind, record_id))

        if state.json:
            print_json(record)
            return

        console.print(f"[bold]{label} #{record['id']}[/bold]")
        fields = [
            ("App", record["bundle_id"]),
            ("Submission", record["remote_id"]),
            ("Created", record["created_date"]),
            ("Device", record["device_model"]),
            ("OS", record["os_version"]),
            ("Platform", record["app_platform"]),
            ("Locale", record["locale"]),
            ("Connection", record["connection_type"]),
            ("Battery", f"{record['battery_pct']}%" if record["battery_pct"] is not None else None),
            ("Tester", record["tester_email"]),
            ("Comment", record["tester_comment"]),
            ("Status", record["status"]),
            ("Notes", record["notes"]),
            ("Duplicate of", f"#{record['duplicate_of']}" if record["duplicate_of"] else None),
            ("Attachment", record["attachment_path"] or record["attachment_state"]),
        ]
        if kind == RecordKind.CRASH:
            fields.insert(5, ("Architecture", record.get("architecture")))
        for name, value in fields:
            if value is not None:
                console.print(f"  {name + ':':<14}{escape(str(value))}", highlight=False)

        if record["history"]:
            console.print()
            console.print("[bold]History[/bold]")
            for change in record["history"]:
                line = (
                    f"  {change['changed_at'][:19]}  "
                    f"{change['from_status']} → {change['to_status']}"
                )
                if change["notes"]:
                    line += f"  ({escape(change['notes'])})"
                console.print(line, highlight=False)

        file = _attachment_file(record)
        if kind == RecordKind.CRASH and file is not None:
            lines = file.read_text(encoding="utf-8", errors="replace").splitlines()
            console.print()
            console.print(f"[bold]Crash log[/bold] (first {LOG_PREVIEW_LINES} lines)")
            for line in lines[:LOG_PREVIEW_LINES]:
                console.print(line, markup=False, highlight=False)

    if kind == RecordKind.CRASH:

        @app.command("log")
        def log(ctx: typer.Context, record_id: RecordIdArgument) -> None:
            """Print the full crash log."""
            state = get_state(ctx)
            record = run_async_command(_read(state, kind, record_id))
            file = _attachment_file(record)
            if file is None:
                raise fail(f"crash #{record_id}: no log available")

            if state.json:
                print_json({"id": record_id, "log_path": str(file)})
                return
            console.print(
                file.read_text(encoding="utf-8", errors="replace"),
                markup=False,
                highlight=False,
                soft_wrap=True,
            )

    else:

        @app.command("screenshot")
        def screenshot(ctx: typer.Context, record_id: RecordIdArgument) -> None:
            """Print the path of the downloaded screenshot."""
            state = get_state(ctx)
            record = run_async_command(_read(state, kind, record_id))
            file = _attachment_file(record)
            if file is None:
                raise fail(f"feedback #{record_id}: no screenshot available")

            if state.json:
                print_json({"id": record_id, "screenshot_path": str(file)})
                return
            console.print(str(file), markup=False, highlight=False, soft_wrap=True)

    @app.command("investigate")
    def investigate(ctx: typer.Context, record_id: RecordIdArgument) -> None:
        """Mark a record as being investigated."""
        report_change(
            ctx, record_id, Investigate(), f"{label} #{record_id} marked as investigating"
        )

    @app.command("fix")
    def fix(
        ctx: typer.Context,
        record_id: RecordIdArgument,
        notes: str = typer.Option(..., "--notes", "-m", help="What fixed it (required)"),
    ) -> None:
        """Mark a record as fixed."""
        report_change(ctx, record_id, Fix(notes), f"{label} #{record_id} marked as fixed")

    @app.command("wontfix")
    def wontfix(
        ctx: typer.Context,
        record_id: RecordIdArgument,
        notes: str | None = typer.Option(None, "--notes", "-m", help="Why it won't be fixed"),
    ) -> None:
        """Close a record without fixing it."""
        report_change(ctx, record_id, WontFix(notes), f"{label} #{record_id} marked as wontfix")

    @app.command("duplicate")
    def duplicate(
        ctx: typer.Context,
        record_id: RecordIdArgument,
        of: int = typer.Option(..., "--of", help="Id of the original record"),
    ) -> None:
        """Mark a record as a duplicate of another one."""
        report_change(
            ctx,
            record_id,
            MarkDuplicate(of),
            f"{label} #{record_id} marked as duplicate of #{of}",
        )

    @app.command("reopen")
    def reopen(ctx: typer.Context, record_id: RecordIdArgument) -> None:
        """Move a record back to new."""
        report_change(ctx, record_id, Reopen(), f"{label} #{record_id} reopened")

    @app.command("stats")
    def stats(ctx: typer.Context, app_filter: AppFilterOption = None) -> None:
        """Show counts by status, device and OS version."""
        state = get_state(ctx)

        async def _stats() -> dict[str, Any]:
            async with open_store(state) as session:
                repo = SubmissionRepository(session, kind)
                result = await repo.stats(app_filter)
                return result.model_dump(mode="json")

        result = run_async_command(_stats())

        if state.json:
            print_json(result)
            return

        scope = f" for {app_filter}" if app_filter else ""
        console.print(
            f"[bold]{label} stats{escape(scope)}[/bold]: "
            f"{result['total']} total, {result['unfixed']} unfixed"
        )
        for status_value in SubmissionStatus:
            count = result["by_status"].get(status_value.value, 0)
            console.print(f"  {status_value.value:<14}{count}", highlight=False)

        for title, key in (("Top devices", "by_device"), ("Top OS versions", "by_os")):
            if not result[key]:
                continue
            table = Table(title=title)
            table.add_column("Value")
            table.add_column("Count", justify="right")
            for value, count in result[key]:
                table.add_row(escape(str(value)), str(count))
            console.print(table)
