"""Monitoring commands — check, compress, status, reset, events, monitor."""

from __future__ import annotations

import asyncio
import signal
from typing import Optional

import click

from driftwatch.cli.app import async_cmd, open_runtime
from driftwatch.cli.formatters import (
    build_table,
    echo_json,
    format_duration,
    format_timestamp,
    get_console,
    phase_indicator,
    severity_style,
)
from driftwatch.errors import RecoveryExhaustedError
from driftwatch.metrics import metrics


@click.command("check")
@click.argument("session_id")
@click.option("--no-recover", is_flag=True, help="Report drift without starting recovery")
@click.option("--at", "now", type=float, default=None, help="Evaluate as of this epoch time")
@click.pass_context
@async_cmd
async def check_cmd(
    ctx: click.Context, session_id: str, no_recover: bool, now: Optional[float]
) -> None:
    """Run one drift check for a session."""
    escalated = False
    async with open_runtime(ctx) as rt:
        events = await rt.check(session_id, now=now, recover=False)
        if events and not no_recover:
            try:
                await rt.recovery.handle_drift(session_id, events)
            except RecoveryExhaustedError:
                escalated = True
        state = rt.recovery.state(session_id)

    if ctx.obj["json"]:
        echo_json({
            "session_id": session_id,
            "events": [e.model_dump() for e in events],
            "phase": state.phase.value,
            "attempts": state.attempts,
            "escalated": escalated,
        })
        return
    if ctx.obj["quiet"]:
        return
    console = get_console(no_color=ctx.obj["no_color"])
    if not events:
        console.print("[green]No drift.[/green]")
    for event in events:
        style = severity_style(event.severity)
        console.print(
            f"[{style}]{event.deviation}[/{style}] severity={event.severity:.2f} {event.detail}"
        )
    console.print(phase_indicator(state.phase.value))
    if escalated:
        console.print("[bold red]Retry budget spent; operator reset required.[/bold red]")


@click.command("compress")
@click.argument("session_id")
@click.option("--force", is_flag=True, help="Compress even if history is under the bound")
@click.pass_context
@async_cmd
async def compress_cmd(ctx: click.Context, session_id: str, force: bool) -> None:
    """Build the tiered compressed context for a session."""
    async with open_runtime(ctx) as rt:
        levels = await rt.compress(session_id, force=force)

    if ctx.obj["json"]:
        echo_json([level.model_dump() for level in levels])
        return
    if ctx.obj["quiet"]:
        return
    console = get_console(no_color=ctx.obj["no_color"])
    if not levels:
        console.print("[dim]Nothing to compress yet (use --force).[/dim]")
        return
    for level in levels:
        console.print(f"[bold]{level.tier}[/bold] ({level.action_count} actions)")
        console.print(level.render(), markup=False, highlight=False)
        console.print()


@click.command("status")
@click.argument("session_id", required=False)
@click.pass_context
@async_cmd
async def status_cmd(ctx: click.Context, session_id: Optional[str]) -> None:
    """Show one session's status, or store-wide stats."""
    async with open_runtime(ctx) as rt:
        if session_id is not None:
            data = await rt.status(session_id)
        else:
            data = {
                "store": await rt.store.stats(),
                "sessions": len(rt.store),
                "metrics": metrics.snapshot(),
            }

    if ctx.obj["json"]:
        echo_json(data)
        return
    if ctx.obj["quiet"]:
        return
    console = get_console(no_color=ctx.obj["no_color"])
    if session_id is None:
        store = data["store"]
        console.print("[bold]driftwatch[/bold]")
        console.print(f"  Database: {store['db_path']}")
        console.print(f"  Sessions: {store['sessions']}")
        console.print(f"  Actions: {store['actions']}")
        console.print(f"  Drift events: {store['drift_events']}")
        return

    console.print(f"[bold]Session {data['session_id']}[/bold]")
    console.print("  Phase: ", phase_indicator(data["phase"]))
    console.print(f"  Attempts: {data['attempts']}/{data['retry_budget']}")
    console.print(f"  Actions: {data['actions']} ({data['agent_actions']} agent)")
    console.print(f"  Interval: {format_duration(data['schedule']['interval_seconds'])}")
    console.print(f"  Idle: {format_duration(data['seconds_since_last_action'])}")
    console.print(f"  Deadline: {format_timestamp(data['deadline'])} UTC")
    if data["compressed_tiers"]:
        console.print(f"  Compressed: {', '.join(data['compressed_tiers'])}")
    if ctx.obj["verbose"]:
        console.print(f"  Last reason: {data['last_reason'] or 'none'}")
        for text in data["instructions"]:
            console.print(f"  Instruction: {text}", markup=False)


@click.command("reset")
@click.argument("session_id")
@click.option("--reason", default="manual reset", help="Recorded with the transition")
@click.pass_context
@async_cmd
async def reset_cmd(ctx: click.Context, session_id: str, reason: str) -> None:
    """Return an escalated session to nominal with a fresh retry budget."""
    async with open_runtime(ctx) as rt:
        state = await rt.reset(session_id, reason)

    if ctx.obj["json"]:
        echo_json(state.model_dump(mode="json"))
    elif not ctx.obj["quiet"]:
        click.echo(f"{session_id}: {state.phase.value}")


@click.command("events")
@click.argument("session_id", required=False)
@click.option("--limit", "-n", type=int, default=20, help="Newest N events")
@click.pass_context
@async_cmd
async def events_cmd(ctx: click.Context, session_id: Optional[str], limit: int) -> None:
    """Show the drift event audit trail."""
    async with open_runtime(ctx) as rt:
        events = await rt.store.load_drift_events(session_id, limit=limit)

    if ctx.obj["json"]:
        echo_json([e.model_dump() for e in events])
        return
    if ctx.obj["quiet"]:
        return
    console = get_console(no_color=ctx.obj["no_color"])
    rows = [
        [format_timestamp(e.detected_at), e.session_id, e.deviation, f"{e.severity:.2f}", e.detail]
        for e in events
    ]
    console.print(build_table(
        "Drift events", ["Detected (UTC)", "Session", "Type", "Severity", "Detail"], rows
    ))


@click.command("monitor")
@click.option("--once", is_flag=True, help="Run a single pass and exit")
@click.option("--interval", type=float, default=None, help="Seconds between passes")
@click.pass_context
@async_cmd
async def monitor_cmd(ctx: click.Context, once: bool, interval: Optional[float]) -> None:
    """Run the periodic drift/recovery/compression monitor."""
    async with open_runtime(ctx) as rt:
        if interval is not None:
            rt.config.monitor.interval = max(0.1, interval)
        if once:
            report = await rt.monitor.run_once()
        else:
            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, stop_event.set)
                except NotImplementedError:
                    pass
            if not ctx.obj["quiet"] and not ctx.obj["json"]:
                click.echo(f"Monitoring {len(rt.store)} session(s); Ctrl+C to stop.")
            await rt.run_monitor(stop_event)
            report = None

    if report is None:
        return
    if ctx.obj["json"]:
        echo_json({
            "sessions_checked": report.sessions_checked,
            "drift_events": report.drift_events,
            "escalations": report.escalations,
            "compressed": report.compressed,
            "failed": report.failed,
        })
    elif not ctx.obj["quiet"]:
        click.echo(
            f"checked={report.sessions_checked} drift={report.drift_events} "
            f"escalated={len(report.escalations)} compressed={len(report.compressed)}"
        )
