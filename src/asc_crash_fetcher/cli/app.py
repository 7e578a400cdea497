"""Main CLI application for asc-crash-fetcher."""

from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from asc_crash_fetcher import __version__
from asc_crash_fetcher.asc import AscClient
from asc_crash_fetcher.asc.sync.enums import OutputFormat
from asc_crash_fetcher.cli import sync as sync_cmd
from asc_crash_fetcher.cli import triage as triage_cmd
from asc_crash_fetcher.cli.common import (
    CliState,
    build_signer,
    console,
    get_state,
    open_store,
    print_json,
    run_async_command,
)
from asc_crash_fetcher.config import (
    CONFIG_FILE_NAME,
    CONFIG_TEMPLATE,
    LOGS_DIR_NAME,
    SCREENSHOTS_DIR_NAME,
    get_settings,
    init_data_dir,
)
from asc_crash_fetcher.db import AppRepository
from asc_crash_fetcher.logging import setup_logging
from asc_crash_fetcher.schemas import RecordKind

app = typer.Typer(
    name="asc-crash-fetcher",
    help="Mirror TestFlight crashes and feedback from App Store Connect and triage them locally.",
    add_completion=False,
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"asc-crash-fetcher version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable debug logging.",
        ),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option(
            "--quiet",
            "-q",
            help="Suppress non-error output (WARNING level).",
        ),
    ] = False,
    data_dir: Annotated[
        Path | None,
        typer.Option(
            "--data-dir",
            "-d",
            help="Data directory (default: ./asc-crashes if present, else ~/.asc-crashes).",
        ),
    ] = None,
    output_format: Annotated[
        OutputFormat,
        typer.Option(
            "--format",
            "-f",
            help="Output format.",
        ),
    ] = OutputFormat.TEXT,
) -> None:
    """asc-crash-fetcher - TestFlight crash and feedback triage."""
    settings = get_settings()
    log_config = settings.logging

    # Setup logging with CLI overrides
    setup_logging(
        level=settings.log_level,
        verbose=verbose,
        quiet=quiet,
        json_output=output_format == OutputFormat.JSON,
        log_file=Path(log_config.log_file) if log_config.log_file else None,
        rotation=log_config.rotation,
        retention=log_config.retention,
        serialize=log_config.serialize,
    )

    ctx.obj = CliState(data_dir_override=data_dir, output_format=output_format)


@app.command()
def init(
    ctx: typer.Context,
    global_: bool = typer.Option(
        False,
        "--global",
        help="Create ~/.asc-crashes instead of ./asc-crashes",
    ),
) -> None:
    """Create the data directory, a config.toml template and the database.

    An existing config.toml is kept.

    Examples:
        asc-crash-fetcher init
        asc-crash-fetcher init --global
    """
    state = get_state(ctx)
    if state.data_dir_override is None:
        state.data_dir_override = init_data_dir(global_)
    data_dir = state.data_dir

    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / LOGS_DIR_NAME).mkdir(exist_ok=True)
    (data_dir / SCREENSHOTS_DIR_NAME).mkdir(exist_ok=True)

    config_path = data_dir / CONFIG_FILE_NAME
    created_config = not config_path.exists()
    if created_config:
        config_path.write_text(CONFIG_TEMPLATE, encoding="utf-8")

    async def _init() -> None:
        async with open_store(state):
            pass

    run_async_command(_init(), error_prefix="Init failed")

    if state.json:
        print_json(
            {
                "data_dir": str(data_dir.resolve()),
                "config": str(config_path.resolve()),
                "config_created": created_config,
                "database": str(state.database_path.resolve()),
            }
        )
        return

    console.print(f"Initialized {data_dir}")
    if created_config:
        console.print(f"  Created {config_path}; edit it with your API key and apps.")
    else:
        console.print(f"  Kept existing {config_path}")
    console.print(f"  Database: {state.database_path}")


@app.command("apps")
def list_apps(ctx: typer.Context) -> None:
    """Verify the API key and list the apps it can see.

    Configured apps are marked; their remote ids and names are stored.

    Examples:
        asc-crash-fetcher apps
        asc-crash-fetcher --format json apps
    """
    state = get_state(ctx)

    async def _apps() -> list[dict[str, object]]:
        config = state.load_config()
        configured = {a.bundle_id for a in config.apps}
        async with AscClient(build_signer(config)) as client:
            remote_apps = await client.list_apps()

        async with open_store(state) as session:
            repo = AppRepository(session)
            for remote in remote_apps:
                if remote.attributes.bundle_id in configured:
                    await repo.upsert_app(
                        remote.attributes.bundle_id,
                        asc_id=remote.id,
                        name=remote.attributes.name,
                    )

        return [
            {
                "id": remote.id,
                "bundle_id": remote.attributes.bundle_id,
                "name": remote.attributes.name,
                "configured": remote.attributes.bundle_id in configured,
            }
            for remote in remote_apps
        ]

    rows = run_async_command(_apps())

    if state.json:
        print_json(rows)
        return

    if not rows:
        console.print("No apps visible to this API key.")
        return

    table = Table(title="App Store Connect apps")
    table.add_column("ID", style="cyan")
    table.add_column("Bundle ID")
    table.add_column("Name")
    table.add_column("Configured")
    for row in rows:
        table.add_row(
            str(row["id"]),
            str(row["bundle_id"] or "-"),
            str(row["name"] or "-"),
            "yes" if row["configured"] else "",
        )
    console.print(table)


app.command("sync")(sync_cmd.sync)

# Crash triage commands live at the top level, feedback under `feedback`
triage_cmd.register(app, RecordKind.CRASH)
feedback_app = typer.Typer(help="Triage screenshot feedback", no_args_is_help=True)
triage_cmd.register(feedback_app, RecordKind.FEEDBACK)
app.add_typer(feedback_app, name="feedback")


if __name__ == "__main__":
    app()
