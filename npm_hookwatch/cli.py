"""Command-line interface for npm_hookwatch.

Commands:
    run: Follow the registry feed and alert on lifecycle script changes
    check: Diff the lifecycle scripts of one package's latest two versions
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import httpx
import structlog
import typer
from rich.console import Console

from npm_hookwatch import __version__
from npm_hookwatch.allowlist import ScriptAllowlist
from npm_hookwatch.config import WatchConfig
from npm_hookwatch.errors import RETRYABLE_ERRORS, InitialCursorError
from npm_hookwatch.log import setup_logging
from npm_hookwatch.monitor import Monitor, build_http_client
from npm_hookwatch.packument import PackumentClient
from npm_hookwatch.renderer import Renderer
from npm_hookwatch.script_diff import ScriptDiffEngine
from npm_hookwatch.versions import VersionResolver
from npm_hookwatch.worker import CheckReport, inspect_package

app = typer.Typer(
    name="hookwatch",
    help="npm-hookwatch - flag npm publishes that add or change install scripts",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console(stderr=True)
logger = structlog.get_logger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"npm-hookwatch {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Watch the npm publish stream for new or changed lifecycle scripts."""


def _load_config(**overrides: object) -> WatchConfig:
    try:
        return WatchConfig.from_env(os.environ, **overrides)
    except ValueError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(2) from exc


@app.command()
def run(
    data_dir: Path | None = typer.Option(
        None,
        "--data-dir",
        "-d",
        help="Directory for findings, pending and cursor files [env: HOOKWATCH_DATA_DIR]",
        file_okay=False,
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", min=1, help="Concurrent scan workers [env: WORKER_CONCURRENCY]"
    ),
    scan_delay: float | None = typer.Option(
        None, "--scan-delay", min=0, help="Seconds a queued package waits before it is scanned"
    ),
    poll_interval: float | None = typer.Option(
        None, "--poll-interval", help="Seconds to wait after an empty feed batch"
    ),
    max_runtime: float | None = typer.Option(
        None, "--max-runtime", help="Stop gracefully after this many seconds [env: HOOKWATCH_MAX_RUNTIME]"
    ),
    from_now: bool = typer.Option(
        False, "--from-now", help="Ignore the persisted cursor and start at the feed's current offset"
    ),
    no_first_publish: bool = typer.Option(
        False, "--no-first-publish", help="Do not alert on scripts in a package's first version"
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
    log_level: str = typer.Option("info", "--log-level", help="debug, info, warning or error"),
) -> None:
    """Follow the registry feed until interrupted."""
    setup_logging(log_level, json_output=json_logs)
    config = _load_config(
        data_dir=data_dir,
        concurrency=concurrency,
        scan_delay=scan_delay,
        poll_interval=poll_interval,
        max_runtime=max_runtime,
        resume_cursor=False if from_now else None,
        alert_on_first_publish=False if no_first_publish else None,
    )

    try:
        asyncio.run(Monitor(config).run())
    except InitialCursorError as exc:
        logger.error("initial_cursor_failed", error=str(exc))
        raise typer.Exit(1) from exc
    except KeyboardInterrupt:
        raise typer.Exit(130)


@app.command()
def check(
    name: str = typer.Argument(..., help="npm package name, e.g. left-pad or @scope/pkg"),
    fmt: str = typer.Option("rich", "--format", "-f", help="Output format: rich or json"),
    log_level: str = typer.Option("warning", "--log-level", help="debug, info, warning or error"),
) -> None:
    """Diff one package's latest two versions; exits 1 when a script was added or changed."""
    setup_logging(log_level)
    config = _load_config()

    try:
        report = asyncio.run(_check(config, name))
    except RETRYABLE_ERRORS as exc:
        console.print(f"[bold red]Cannot fetch {name}:[/bold red] {exc}")
        raise typer.Exit(2) from exc

    renderer = Renderer()
    if fmt == "json":
        renderer.render_json(report)
    else:
        renderer.render(report)
    raise typer.Exit(report.exit_code)


async def _check(config: WatchConfig, name: str) -> CheckReport:
    client: httpx.AsyncClient = build_http_client()
    async with client, PackumentClient(config.registry_url, http_client=client) as packuments:
        engine = ScriptDiffEngine(
            script_names=config.script_names,
            is_benign=ScriptAllowlist.with_defaults(),
            alert_on_first_publish=config.alert_on_first_publish,
        )
        return await inspect_package(packuments, VersionResolver(), engine, name)


if __name__ == "__main__":
    app()
