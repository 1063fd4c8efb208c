"""CLI formatters — color helpers, phase indicators, table formatting."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import click
from rich.console import Console
from rich.table import Table
from rich.text import Text


def get_console(no_color: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color)


def phase_indicator(phase: str) -> Text:
    """Map a recovery phase to a colored indicator."""
    mapping = {
        "nominal": Text("> nominal", style="green"),
        "flagged": Text("! flagged", style="yellow"),
        "recovering": Text("~ recovering", style="cyan"),
        "escalated": Text("x escalated", style="bold red"),
    }
    return mapping.get(phase, Text(f"? {phase}", style="dim"))


def severity_style(severity: float) -> str:
    if severity >= 0.75:
        return "red"
    if severity >= 0.4:
        return "yellow"
    return "dim"


def format_duration(seconds: float) -> str:
    """Format a duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        m = int(seconds // 60)
        s = int(seconds % 60)
        return f"{m}m{s:02d}s"
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    return f"{h}h {m:02d}m"


def format_timestamp(ts: float) -> str:
    """Format an epoch timestamp as UTC date and time."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v) for v in row))
    return table


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))
