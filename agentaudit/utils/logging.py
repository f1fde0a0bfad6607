"""Centralized logging configuration using Loguru with Pino-compatible output.

Every module logs through the shared loguru logger exported here. Output is
either human-readable (stderr) or NDJSON compatible with Pino, so pipeline
logs can be read next to the logs of the tools being audited.

Usage:
    from agentaudit.utils.logging import logger
    logger.info("Message")
    logger.debug("Debug message")  # Only shows if AGENTAUDIT_LOG_LEVEL=DEBUG

Environment Variables:
    AGENTAUDIT_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO)
    AGENTAUDIT_LOG_JSON: 0|1 (default: 0, human-readable)
    AGENTAUDIT_LOG_FILE: path to log file (optional)
    AGENTAUDIT_REQUEST_ID: correlation ID for cross-process tracing
"""

import json
import os
import sys
import uuid
from pathlib import Path

from loguru import logger

# Remove default handler
logger.remove()

# Pino-compatible numeric levels
PINO_LEVELS = {
    "TRACE": 10,
    "DEBUG": 20,
    "INFO": 30,
    "SUCCESS": 30,
    "WARNING": 40,
    "ERROR": 50,
    "CRITICAL": 60,
}

_log_level = os.environ.get("AGENTAUDIT_LOG_LEVEL", "INFO").upper()
_json_mode = os.environ.get("AGENTAUDIT_LOG_JSON", "0") == "1"
_log_file = os.environ.get("AGENTAUDIT_LOG_FILE")
_request_id = os.environ.get("AGENTAUDIT_REQUEST_ID") or str(uuid.uuid4())


def _to_pino(record) -> dict:
    """Convert a loguru record into a Pino-shaped dict."""
    pino_log = {
        "level": PINO_LEVELS.get(record["level"].name, 30),
        "time": int(record["time"].timestamp() * 1000),
        "msg": record["message"],
        "pid": record["process"].id,
        "request_id": record["extra"].get("request_id", _request_id),
    }

    for key, value in record["extra"].items():
        if key != "request_id":
            pino_log[key] = value

    if record["exception"]:
        pino_log["err"] = {
            "type": record["exception"].type.__name__ if record["exception"].type else "Error",
            "message": str(record["exception"].value) if record["exception"].value else "",
        }
    return pino_log


def pino_compatible_sink(message):
    """Format log records as Pino-compatible NDJSON on stdout.

    {"level":30,"time":1715629847123,"msg":"...","pid":12345,"request_id":"..."}
    """
    # Never call logger.* inside a sink - causes infinite recursion
    sys.stdout.write(json.dumps(_to_pino(message.record), default=str) + "\n")
    sys.stdout.flush()


# Human-readable format (ASCII only)
_human_format = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}:{function}:{line}</cyan> - "
    "<level>{message}</level>"
)

logger.level("DEBUG", color="<blue>")
logger.level("INFO", color="<white>")
logger.level("WARNING", color="<yellow>")
logger.level("ERROR", color="<red>")
logger.level("CRITICAL", color="<red><bold>")

# Tracked so it can be swapped for the Rich live display
_human_handler_id: int | None = None

if _json_mode:
    logger.add(
        pino_compatible_sink,
        level=_log_level,
        colorize=False,
    )
else:
    _human_handler_id = logger.add(
        sys.stderr,
        level=_log_level,
        format=_human_format,
        colorize=None,
    )

if _log_file:
    def _file_pino_sink(message):
        """Append Pino-format JSON to the configured log file."""
        with open(_log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(_to_pino(message.record), default=str) + "\n")

    logger.add(
        _file_pino_sink,
        level="DEBUG",
    )


def configure_file_logging(log_dir: Path, level: str = "DEBUG") -> int:
    """Add rotating file handler for persistent logs.

    Args:
        log_dir: Directory for log files (e.g., Path(".agentaudit/logs"))
        level: Minimum log level for file output

    Returns:
        The loguru handler id, so callers can remove it again.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentaudit.log"

    return logger.add(
        log_file,
        rotation="10 MB",
        retention="7 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    )


def get_request_id() -> str:
    """Get the current request ID for correlation."""
    return _request_id


def swap_to_rich_sink(rich_sink_fn) -> int | None:
    """Route the stderr handler through a Rich console while Live is active.

    Logs written straight to stderr get overwritten by Live's refresh, so the
    stderr handler is replaced by a sink that prints above the live table.

    Returns:
        The new handler ID, or None if in JSON mode (no swap needed).
    """
    global _human_handler_id

    if _json_mode or _human_handler_id is None:
        return None

    logger.remove(_human_handler_id)
    _human_handler_id = None

    return logger.add(
        rich_sink_fn,
        level=_log_level,
        format=_human_format,
        colorize=True,
    )


def restore_stderr_sink(rich_handler_id: int | None) -> None:
    """Restore the default stderr handler after the Rich live display ends."""
    global _human_handler_id

    if _json_mode:
        return

    if rich_handler_id is not None:
        try:
            logger.remove(rich_handler_id)
        except ValueError:
            pass  # Already removed

    _human_handler_id = logger.add(
        sys.stderr,
        level=_log_level,
        format=_human_format,
        colorize=None,
    )


__all__ = [
    "logger",
    "configure_file_logging",
    "get_request_id",
    "swap_to_rich_sink",
    "restore_stderr_sink",
]
