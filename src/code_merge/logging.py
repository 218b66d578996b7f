from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from pathlib import Path

_STRUCTLOG_CONFIGURED = False


def _route_stdlib_output(filename: str | Path | None) -> None:
    handler: logging.Handler = (
        logging.FileHandler(str(filename), encoding="utf-8") if filename else logging.StreamHandler(sys.stderr)
    )
    # force=True drops whichever handler a previous call installed
    logging.basicConfig(level=logging.INFO, handlers=[handler], format="%(message)s", force=True)


def setup_logging(filename: str | Path | None = None) -> structlog.BoundLogger:
    """Return the code_merge logger, configuring structlog on first use.

    Events are rendered as one JSON object per line (ISO timestamp, level,
    event) and handed to the stdlib root logger. The first call sends them to
    stderr. Any later call that names a file moves the output to that file,
    which is how `--log-file` and the `logFile` configuration key take effect
    after the module-level logger already exists.

    Args:
        filename: log file to write to; None keeps the current destination
            (stderr on the first call).

    Returns:
        The structlog logger named "code_merge".
    """
    global _STRUCTLOG_CONFIGURED  # noqa: PLW0603
    if filename or not _STRUCTLOG_CONFIGURED:
        _route_stdlib_output(filename)
    if not _STRUCTLOG_CONFIGURED:
        structlog.configure(
            processors=[
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(ensure_ascii=False),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _STRUCTLOG_CONFIGURED = True

    return structlog.get_logger("code_merge")


logger = setup_logging()
