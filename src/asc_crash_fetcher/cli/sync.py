"""Sync command for asc-crash-fetcher."""

from datetime import datetime
from typing import Any

import typer
from rich.markup import escape

from asc_crash_fetcher.asc import AscClient
from asc_crash_fetcher.asc.sync import AttachmentFetcher, SyncOrchestrator, SyncScope
from asc_crash_fetcher.cli.common import (
    build_signer,
    console,
    fail,
    format_date,
    get_state,
    open_store,
    print_json,
    run_async_command,
)
from asc_crash_fetcher.schemas import RecordKind

_NEW_TAGS = {RecordKind.CRASH: "[CRASH]", RecordKind.FEEDBACK: "[FEEDBACK]"}
_RECOVERED_TAGS = {RecordKind.CRASH: "[LOG]", RecordKind.FEEDBACK: "[SCREENSHOT]"}


def sync(
    ctx: typer.Context,
    app_filter: str | None = typer.Option(
        None,
        "--app",
        "-a",
        help="Only sync this app (bundle id from config.toml)",
    ),
    no_crashes: bool = typer.Option(
        False,
        "--no-crashes",
        help="Skip crash submissions",
    ),
    no_feedback: bool = typer.Option(
        False,
        "--no-feedback",
        help="Skip screenshot feedback",
    ),
) -> None:
    """Pull new crashes and feedback, and download missing attachments.

    Every run walks the full remote collections; records already stored are
    recognized and only their missing attachments are retried. Partial
    failures (one app failing, attachments still pending) exit with 0 and
    are listed in the output.

    Examples:
        asc-crash-fetcher sync
        asc-crash-fetcher sync --app com.example.myapp --no-feedback
        asc-crash-fetcher --format json sync
    """
    state = get_state(ctx)

    scope = SyncScope.from_flags(no_crashes=no_crashes, no_feedback=no_feedback)
    if scope is None:
        raise fail("--no-crashes and --no-feedback together leave nothing to sync")

    async def _sync() -> dict[str, Any]:
        config = state.load_config()
        apps = config.select_apps(app_filter)
        if not apps:
            raise fail(f"app '{app_filter}' is not in {state.data_dir / 'config.toml'}")

        signer = build_signer(config)
        async with AscClient(signer) as client:
            async with open_store(state) as session:
                fetcher = AttachmentFetcher(
                    client,
                    logs_dir=state.logs_dir,
                    screenshots_dir=state.screenshots_dir,
                )
                orchestrator = SyncOrchestrator(client, session, fetcher)
                report = await orchestrator.sync(apps, scope)
                return report.to_dict()

    result = run_async_command(_sync(), error_prefix="Sync failed")

    if state.json:
        print_json(result)
        return

    _print_report(result)


def _print_report(result: dict[str, Any]) -> None:
    """Text rendering of a SyncReport dict."""
    new_by_app: dict[str, list[tuple[RecordKind, dict[str, Any]]]] = {}
    for kind, key in ((RecordKind.CRASH, "new_crashes"), (RecordKind.FEEDBACK, "new_feedbacks")):
        for record in result[key]:
            new_by_app.setdefault(record["app"], []).append((kind, record))

    recovered = [(RecordKind.CRASH, r) for r in result["recovered_logs"]] + [
        (RecordKind.FEEDBACK, r) for r in result["recovered_screenshots"]
    ]

    for app_result in result["apps"]:
        bundle_id = app_result["app"]
        console.print(f"Syncing {bundle_id} ({escape(app_result['name'] or 'unknown')})...")

        for kind, record in new_by_app.get(bundle_id, []):
            device = f"{record['device_model'] or '?'} / {record['os_version'] or '?'}"
            created = format_date(_parse_iso(record["created_at"]))
            console.print(
                f"  {_NEW_TAGS[kind]} #{record['id']} {escape(device)}  {created}", highlight=False
            )
            if record.get("tester_comment"):
                console.print(f'    "{escape(record["tester_comment"])}"', highlight=False)

        if app_result["error"]:
            console.print(f"  [red]\\[ERROR][/red] {escape(app_result['error'])}")

    for kind, record in recovered:
        path = record.get("log_path") or record.get("screenshot_path")
        console.print(f"  {_RECOVERED_TAGS[kind]} #{record['id']} → {path}", highlight=False)

    pending = result["pending"]
    if pending:
        console.print(f"  [yellow]{len(pending)} attachment(s) still pending[/yellow]")

    console.print()
    console.print(
        f"Total: {result['crash_total']} crashes ({result['crash_unfixed']} unfixed), "
        f"{result['feedback_total']} feedbacks ({result['feedback_unfixed']} unfixed)"
    )


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
