"""CLI application — Click-based command hierarchy for driftwatch.

The main CLI group and global flags. Subcommand modules register
themselves by importing and adding to the group.
"""

from __future__ import annotations

import asyncio
import functools
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import click

from driftwatch.errors import DriftwatchError, NotFoundError, StorageError


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


def load_config(ctx: click.Context):
    """Build the config, applying the ``--db`` override if given."""
    from driftwatch.config import DriftwatchConfig

    config = DriftwatchConfig()
    db_path: Optional[Path] = ctx.obj.get("db_path")
    if db_path is not None:
        config.store.db_path = Path(db_path).expanduser().resolve()
        config.store.data_dir = config.store.db_path.parent
    return config


@asynccontextmanager
async def open_runtime(ctx: click.Context) -> AsyncIterator[Any]:
    """Start a runtime for one command and map driftwatch errors to exit codes."""
    from driftwatch.runtime import DriftwatchRuntime

    runtime = DriftwatchRuntime(load_config(ctx))
    try:
        await runtime.start()
    except StorageError as e:
        raise click.ClickException(f"Cannot open session store: {e}") from e
    try:
        yield runtime
    except NotFoundError as e:
        raise click.ClickException(str(e)) from e
    except DriftwatchError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e
    finally:
        await runtime.stop()


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--quiet", "-q", is_flag=True, help="Suppress output")
@click.option("--verbose", "-v", is_flag=True, help="Extended details and info logs")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Session database (default: DRIFTWATCH_DB)",
)
@click.pass_context
def cli(
    ctx: click.Context,
    json_output: bool,
    quiet: bool,
    verbose: bool,
    no_color: bool,
    db_path: Optional[Path],
) -> None:
    """driftwatch - consistency monitoring and recovery for agent sessions."""
    from driftwatch.main import configure_logging

    configure_logging(verbose=verbose, colors=not no_color)

    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output
    ctx.obj["quiet"] = quiet
    ctx.obj["verbose"] = verbose
    ctx.obj["no_color"] = no_color
    ctx.obj["db_path"] = db_path


# ---------------------------------------------------------------------------
# Register subcommand modules
# ---------------------------------------------------------------------------

def _register_subcommands() -> None:
    """Import and register all subcommands."""
    from driftwatch.cli.monitoring import (
        check_cmd,
        compress_cmd,
        events_cmd,
        monitor_cmd,
        reset_cmd,
        status_cmd,
    )
    from driftwatch.cli.sessions import (
        append_cmd,
        create_cmd,
        history_cmd,
        sessions_cmd,
        terminate_cmd,
    )

    cli.add_command(create_cmd)
    cli.add_command(append_cmd)
    cli.add_command(history_cmd)
    cli.add_command(terminate_cmd)
    cli.add_command(sessions_cmd)
    cli.add_command(check_cmd)
    cli.add_command(compress_cmd)
    cli.add_command(status_cmd)
    cli.add_command(reset_cmd)
    cli.add_command(events_cmd)
    cli.add_command(monitor_cmd)


_register_subcommands()
