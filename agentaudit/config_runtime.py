"""Runtime configuration for agentaudit - centralized configuration management."""

import copy
import json
import os
from pathlib import Path
from typing import Any

import yaml

from agentaudit.utils.logging import logger

DEFAULTS = {
    "paths": {
        "output_dir": "./.agentaudit",
        "cache_file": "cache.json",
        "runs_dir": "runs",
        "latest_report": "latest_report.json",
        "log_dir": "logs",
    },
    "layout": {
        "command": "commands",
        "agent": "agents",
        "skill": "skills",
        "hook": "hooks",
        "mcp": ".mcp.json",
        "exclude_dirs": [".git", "node_modules", "__pycache__", ".agentaudit", ".venv", "dist", "build"],
    },
    "graph": {
        "entry_kinds": ["command"],
        "max_depth_warning": 4,
    },
    "limits": {
        "max_workers": os.cpu_count() or 4,
    },
    "timeouts": {
        "unit_timeout": 120.0,
        # 0 means use unit_timeout
        "component_analysis": 0.0,
        "soft_run_timeout": 1800.0,
    },
    "watch": {
        "poll_interval": 2.0,
        "debounce": 1.5,
        "grace_period": 30.0,
    },
    "retention": {
        "keep_runs": 10,
        "max_age_days": 30,
    },
    "scoring": {
        "merge_strategy": "weighted_average",
        "component_weight": 0.8,
        "graph_weight": 0.2,
    },
}

SECTIONS = tuple(DEFAULTS)
MERGE_STRATEGIES = ("weighted_average", "max_severity")


def _merge_section(cfg: dict[str, Any], section: str, values: dict[str, Any], source: str) -> None:
    """Copy known keys whose type matches the default into cfg[section]."""
    for key, value in values.items():
        if key not in cfg[section]:
            logger.warning(f"Unknown config key {section}.{key} in {source} - ignored")
            continue
        default_value = cfg[section][key]
        if isinstance(default_value, float) and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if isinstance(value, type(default_value)):
            cfg[section][key] = value
        else:
            logger.warning(
                f"Config {section}.{key} in {source} has type {type(value).__name__}, "
                f"expected {type(default_value).__name__} - keeping {default_value!r}"
            )


def load_layout_file(path: Path | str) -> dict[str, Any]:
    """Read a YAML kind -> subdirectory mapping.

    Raises:
        OSError, yaml.YAMLError, ValueError: the caller asked for this file
        explicitly, so problems are surfaced rather than defaulted.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Layout file {path} must contain a mapping")
    return data.get("layout", data)


def load_runtime_config(root: str = ".", layout_file: str | None = None) -> dict[str, Any]:
    """
    Load runtime configuration from .agentaudit/config.json and environment variables.

    Config priority (highest to lowest):
    1. Environment variables (AGENTAUDIT_<SECTION>_<KEY>)
    2. Layout YAML file (layout section only, when given)
    3. .agentaudit/config.json file
    4. Built-in defaults

    Args:
        root: Root directory to look for config file
        layout_file: Optional YAML file overriding the layout section

    Returns:
        Configuration dictionary with merged values
    """
    cfg = copy.deepcopy(DEFAULTS)

    path = Path(root) / ".agentaudit" / "config.json"
    try:
        if path.exists():
            with open(path, encoding="utf-8") as f:
                user = json.load(f)

            if isinstance(user, dict):
                for section in SECTIONS:
                    if section in user and isinstance(user[section], dict):
                        _merge_section(cfg, section, user[section], str(path))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Could not load config file from {path}: {e}")
        logger.info("Continuing with default configuration")

    if layout_file:
        _merge_section(cfg, "layout", load_layout_file(layout_file), str(layout_file))

    for section in cfg:
        for key in cfg[section]:
            env_var = f"AGENTAUDIT_{section.upper()}_{key.upper()}"
            if env_var in os.environ:
                value = os.environ[env_var]
                try:
                    default_value = cfg[section][key]
                    if isinstance(default_value, bool):
                        cfg[section][key] = value.lower() in ("1", "true", "yes")
                    elif isinstance(default_value, int):
                        cfg[section][key] = int(value)
                    elif isinstance(default_value, float):
                        cfg[section][key] = float(value)
                    elif isinstance(default_value, list):
                        cfg[section][key] = [v.strip() for v in value.split(",") if v.strip()]
                    else:
                        cfg[section][key] = value
                except (ValueError, AttributeError) as e:
                    logger.warning(f"Invalid value for environment variable {env_var}: '{value}' - {e}")
                    logger.info(f"Using default value: {cfg[section][key]}")

    if cfg["scoring"]["merge_strategy"] not in MERGE_STRATEGIES:
        logger.warning(
            f"Unknown merge strategy {cfg['scoring']['merge_strategy']!r} - using weighted_average"
        )
        cfg["scoring"]["merge_strategy"] = "weighted_average"

    if cfg["limits"]["max_workers"] < 1:
        cfg["limits"]["max_workers"] = 1

    return cfg


def resolve_output_paths(cfg: dict[str, Any], base: Path | str = ".") -> dict[str, Path]:
    """
    Resolve the configured artifact paths.

    output_dir resolves against base; every other relative path resolves
    against output_dir. Absolute paths are kept as given.
    """
    output_dir = Path(cfg["paths"]["output_dir"])
    if not output_dir.is_absolute():
        output_dir = Path(base) / output_dir
    resolved = {"output_dir": output_dir}
    for key, value in cfg["paths"].items():
        if key != "output_dir":
            resolved[key] = Path(value) if Path(value).is_absolute() else output_dir / value
    return resolved
