"""Rich-based terminal output for ``hookwatch check``.

Formats a :class:`~npm_hookwatch.worker.CheckReport` as a header panel, a
table of the watched lifecycle scripts in the previous and latest versions,
and a verdict panel. A JSON mode prints the report's ``to_dict()`` form for
piping into other tools.

Public API:
    Renderer: Renders CheckReport objects
"""

from __future__ import annotations

import json

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from npm_hookwatch.models import Alert, AlertAction
from npm_hookwatch.worker import CheckReport

# Maximum command length shown in the scripts table
_COMMAND_TRUNCATE = 120

_ACTION_BADGE: dict[AlertAction, tuple[str, str]] = {
    AlertAction.ADDED: ("bold white on red", "ADDED"),
    AlertAction.CHANGED: ("bold yellow", "CHANGED"),
}


class Renderer:
    """Rich renderer for CheckReport output.

    Attributes:
        console: The Rich Console instance used for output

    Example::

        renderer = Renderer()
        renderer.render(report)
    """

    def __init__(self, console: Console | None = None, no_color: bool = False) -> None:
        self.console: Console = console or Console(highlight=False, no_color=no_color)

    def render(self, report: CheckReport) -> None:
        """Render header, scripts table and verdict for ``report``."""
        self._render_header(report)
        if report.latest is None:
            self.console.print(
                "  [bold yellow]No valid semantic version published; nothing to compare.[/bold yellow]"
            )
            self.console.print()
            return
        self.console.print(self._build_scripts_table(report))
        self.console.print()
        self._render_verdict(report)

    def render_json(self, report: CheckReport) -> None:
        """Print ``report`` as indented JSON without Rich styling."""
        self.console.print(
            json.dumps(report.to_dict(), indent=2),
            highlight=False,
            markup=False,
            emoji=False,
            soft_wrap=True,
        )

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def _render_header(self, report: CheckReport) -> None:
        from npm_hookwatch import __version__

        tag = report.dist_tag_latest or "-"
        if report.tag_lags:
            tag = f"{tag} [yellow](lags behind latest)[/yellow]"
        lines = [
            f"[bold]npm-hookwatch[/bold] v{__version__}: lifecycle script check",
            "",
            f"[dim]Package:[/dim]    [cyan]{report.package_name}[/cyan]",
            f"[dim]Latest:[/dim]     {report.latest or '-'}",
            f"[dim]Previous:[/dim]   {report.previous or 'none'}",
            f"[dim]dist-tag:[/dim]   {tag}",
        ]
        self.console.print()
        self.console.print(
            Panel(
                "\n".join(lines),
                title="[bold blue]hookwatch check[/bold blue]",
                border_style="blue",
                padding=(1, 2),
            )
        )
        self.console.print()

    def _build_scripts_table(self, report: CheckReport) -> Table:
        table = Table(
            box=box.ROUNDED,
            show_header=True,
            header_style="bold dim",
            border_style="dim",
            expand=True,
            padding=(0, 1),
        )
        table.add_column("Script", width=12, no_wrap=True)
        table.add_column(f"Previous ({report.previous or 'none'})", min_width=30)
        table.add_column(f"Latest ({report.latest})", min_width=30)
        table.add_column("Verdict", width=10, no_wrap=True)

        alerts: dict[str, Alert] = {alert.script_type: alert for alert in report.alerts}
        for name in report.script_names:
            old = report.previous_scripts.get(name, "")
            new = report.latest_scripts.get(name, "")
            table.add_row(
                Text(name, style="cyan", no_wrap=True),
                Text(_truncate(old, _COMMAND_TRUNCATE) or "-", style="dim"),
                Text(_truncate(new, _COMMAND_TRUNCATE) or "-"),
                self._verdict_cell(alerts.get(name), bool(new)),
            )
        return table

    def _render_verdict(self, report: CheckReport) -> None:
        if not report.alerts:
            content = "[bold green]No lifecycle script was added or changed.[/bold green]"
            border = "green"
        else:
            listed = ", ".join(f"{alert.script_type} {alert.action.value}" for alert in report.alerts)
            content = (
                f"[bold red]{len(report.alerts)} lifecycle script change(s):[/bold red] {listed}\n\n"
                "[dim]Review the commands above before installing this version.[/dim]"
            )
            border = "red"
        self.console.print(Panel(content, title="[bold]Result[/bold]", border_style=border, padding=(1, 2)))
        self.console.print()

    @staticmethod
    def _verdict_cell(alert: Alert | None, present: bool) -> Text:
        if alert is not None:
            style, label = _ACTION_BADGE[alert.action]
            return Text(label, style=style, no_wrap=True)
        if present:
            return Text("ok", style="green", no_wrap=True)
        return Text("-", style="dim", no_wrap=True)


def _truncate(text: str, max_chars: int) -> str:
    """Truncate ``text`` to ``max_chars``, appending an ellipsis if cut."""
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 1] + "…"
