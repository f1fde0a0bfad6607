"""agentaudit utilities package."""

from .constants import ERROR_LOG_FILE, OUTPUT_DIR
from .error_handler import handle_exceptions
from .exit_codes import ExitCodes
from .helpers import (
    atomic_write_text,
    compute_bytes_hash,
    load_json_file,
    save_json_file,
)
from .logging import logger

__all__ = [
    "OUTPUT_DIR",
    "ERROR_LOG_FILE",
    "handle_exceptions",
    "ExitCodes",
    "atomic_write_text",
    "compute_bytes_hash",
    "load_json_file",
    "save_json_file",
    "logger",
]
