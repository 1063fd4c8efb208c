"""
Main — driftwatch's entry point.

Configures logging and hands control to the click CLI. All real work lives in
the subsystems; ``driftwatch.runtime`` wires them together.
"""

from __future__ import annotations

import logging

import structlog

# Fields that can carry agent output or instruction text.
_PAYLOAD_KEYS = {"payload", "instruction", "summary", "message", "detail"}
_MAX_DISPLAY_LEN = 80


def _truncate_payload_fields(logger, method_name, event_dict):
    """
    Structlog processor that shortens free-text fields.

    Agent payloads can be arbitrarily long; the log line only needs enough to
    recognise them.
    """
    for key in _PAYLOAD_KEYS:
        val = event_dict.get(key)
        if isinstance(val, str) and len(val) > _MAX_DISPLAY_LEN:
            event_dict[key] = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
    return event_dict


_logging_configured = False


def configure_logging(verbose: bool = False, colors: bool = True) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; subsequent calls are no-ops.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(
        format="%(message)s",
        level=logging.INFO if verbose else logging.WARNING,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _truncate_payload_fields,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def main() -> None:
    """Console script entry point."""
    from driftwatch.cli.app import cli

    cli(obj={})


if __name__ == "__main__":
    main()
