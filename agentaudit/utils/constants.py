"""Centralized constants for the agentaudit utils package.

Single source of truth for default artifact locations. Runtime overrides come
from config_runtime; these are the fallbacks used before a config is loaded.
"""

from pathlib import Path

# ============================================================================
# OUTPUT DIRECTORIES
# ============================================================================

# Primary output directory for all agentaudit artifacts
OUTPUT_DIR = Path("./.agentaudit")

# Log files
ERROR_LOG_FILE = OUTPUT_DIR / "error.log"

# ============================================================================
# CACHE FORMAT
# ============================================================================

# Bump when the persisted cache layout changes; mismatches are a cache miss
CACHE_SCHEMA_VERSION = 2

# ============================================================================
# LEDGER FORMAT
# ============================================================================

LEDGER_FILE_NAME = "ledger.md"
RESULTS_DIR_NAME = "results"
REPORT_FILE_NAME = "report.json"
