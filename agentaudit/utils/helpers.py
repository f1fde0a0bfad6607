"""Helper utility functions for agentaudit.

IMPORTANT UTILITIES:
- atomic_write_text(): every persisted artifact (cache, ledger, reports) goes
  through this so a crash mid-write leaves the previous file intact.
- compute_bytes_hash(): the single content digest used for change detection.
"""

import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any

HASH_PREFIX = "sha256:"


def compute_bytes_hash(data: bytes) -> str:
    """Content digest used for Component.content_hash."""
    return HASH_PREFIX + hashlib.sha256(data).hexdigest()


def atomic_write_text(path: Path | str, text: str) -> None:
    """Write text via temp file + rename in the destination directory.

    Raises:
        OSError: when the directory cannot be created or the rename fails.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def load_json_file(file_path: Path | str) -> Any:
    """Load a JSON file.

    Raises:
        OSError, json.JSONDecodeError: callers decide whether that is fatal.
    """
    with open(file_path, encoding="utf-8") as f:
        return json.load(f)


def save_json_file(data: Any, file_path: Path | str) -> None:
    """Atomically save data as indented, key-sorted JSON."""
    atomic_write_text(file_path, json.dumps(data, indent=2, sort_keys=True, default=str) + "\n")
