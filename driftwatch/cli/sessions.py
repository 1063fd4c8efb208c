"""Session commands — create, append, history, terminate, sessions."""

from __future__ import annotations

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
)
from driftwatch.types import ActionSource


@click.command("create")
@click.option("--instruction", "-i", "instructions", multiple=True, help="Original instruction (repeatable)")
@click.option("--interval", type=float, default=None, help="Expected seconds between actions")
@click.option("--tolerance", type=float, default=None, help="Grace period in seconds")
@click.option("--pattern", default=None, help="Text the agent's actions should resemble")
@click.option("--id", "session_id", default=None, help="Explicit session id")
@click.pass_context
@async_cmd
async def create_cmd(
    ctx: click.Context,
    instructions: tuple[str, ...],
    interval: Optional[float],
    tolerance: Optional[float],
    pattern: Optional[str],
    session_id: Optional[str],
) -> None:
    """Register a new monitored session."""
    async with open_runtime(ctx) as rt:
        try:
            snap = await rt.create_session(
                instructions,
                interval_seconds=interval,
                tolerance_seconds=tolerance,
                expected_pattern=pattern,
                session_id=session_id,
            )
        except ValueError as e:
            raise click.BadParameter(str(e)) from e

    if ctx.obj["json"]:
        echo_json({
            "session_id": snap.session_id,
            "created_at": snap.created_at,
            "schedule": snap.schedule.to_dict(),
            "instructions": list(snap.instructions),
        })
    elif not ctx.obj["quiet"]:
        click.echo(snap.session_id)


@click.command("append")
@click.argument("session_id")
@click.argument("payload")
@click.option("--operator", is_flag=True, help="Record as an operator instruction")
@click.option("--at", "timestamp", type=float, default=None, help="Epoch timestamp (default: now)")
@click.pass_context
@async_cmd
async def append_cmd(
    ctx: click.Context,
    session_id: str,
    payload: str,
    operator: bool,
    timestamp: Optional[float],
) -> None:
    """Record an action for a session."""
    source = ActionSource.OPERATOR if operator else ActionSource.AGENT
    async with open_runtime(ctx) as rt:
        action, state = await rt.record_action(session_id, payload, source, timestamp)

    if ctx.obj["json"]:
        echo_json({"action": action.to_dict(), "phase": state.phase.value})
    elif not ctx.obj["quiet"]:
        click.echo(f"{action.action_id} ({state.phase.value})")


@click.command("history")
@click.argument("session_id")
@click.option("--limit", "-n", type=int, default=0, help="Only the newest N actions")
@click.pass_context
@async_cmd
async def history_cmd(ctx: click.Context, session_id: str, limit: int) -> None:
    """Show a session's recorded actions in order."""
    async with open_runtime(ctx) as rt:
        actions = await rt.history(session_id)
    if limit > 0:
        actions = actions[-limit:]

    if ctx.obj["json"]:
        echo_json([a.to_dict() for a in actions])
        return
    if ctx.obj["quiet"]:
        return
    console = get_console(no_color=ctx.obj["no_color"])
    rows = [
        [format_timestamp(a.timestamp), a.source.value, a.payload]
        for a in actions
    ]
    console.print(build_table(f"History {session_id}", ["Time (UTC)", "Source", "Payload"], rows))


@click.command("terminate")
@click.argument("session_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
@async_cmd
async def terminate_cmd(ctx: click.Context, session_id: str, yes: bool) -> None:
    """Destroy a session and its persisted state."""
    if not yes:
        click.confirm(f"Terminate session {session_id}?", abort=True)
    async with open_runtime(ctx) as rt:
        await rt.terminate(session_id)

    if ctx.obj["json"]:
        echo_json({"session_id": session_id, "terminated": True})
    elif not ctx.obj["quiet"]:
        click.echo(f"Terminated {session_id}")


@click.command("sessions")
@click.pass_context
@async_cmd
async def sessions_cmd(ctx: click.Context) -> None:
    """List live sessions."""
    async with open_runtime(ctx) as rt:
        statuses = [await rt.status(sid) for sid in rt.store.list_sessions()]

    if ctx.obj["json"]:
        echo_json(statuses)
        return
    if ctx.obj["quiet"]:
        return
    console = get_console(no_color=ctx.obj["no_color"])
    if not statuses:
        console.print("[dim]No sessions.[/dim]")
        return
    rows = [
        [
            s["session_id"],
            phase_indicator(s["phase"]),
            s["actions"],
            format_duration(s["schedule"]["interval_seconds"]),
            format_duration(s["seconds_since_last_action"]),
        ]
        for s in statuses
    ]
    console.print(build_table(
        "Sessions", ["Session", "Phase", "Actions", "Interval", "Idle"], rows
    ))
