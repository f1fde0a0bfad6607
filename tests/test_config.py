"""Tests for runtime configuration loading and pipeline options."""

import json
from pathlib import Path

import pytest
import yaml

from agentaudit.config_runtime import DEFAULTS, load_runtime_config, resolve_output_paths
from agentaudit.inventory import ComponentKind
from agentaudit.pipeline.structures import PipelineOptions, RunMode


def write_config(root, data):
    path = root / ".agentaudit" / "config.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


class TestLoad:
    def test_defaults_without_config(self, tmp_path):
        cfg = load_runtime_config(str(tmp_path))
        assert cfg["graph"]["entry_kinds"] == ["command"]
        assert cfg["retention"] == {"keep_runs": 10, "max_age_days": 30}
        assert cfg is not DEFAULTS
        cfg["layout"]["exclude_dirs"].append("mutated")
        assert "mutated" not in DEFAULTS["layout"]["exclude_dirs"]

    def test_config_file_overrides_defaults(self, tmp_path):
        write_config(tmp_path, {"watch": {"debounce": 3}, "limits": {"max_workers": 2}})
        cfg = load_runtime_config(str(tmp_path))
        assert cfg["watch"]["debounce"] == 3.0
        assert isinstance(cfg["watch"]["debounce"], float)
        assert cfg["limits"]["max_workers"] == 2

    def test_wrong_type_keeps_default(self, tmp_path):
        write_config(tmp_path, {"retention": {"keep_runs": "many"}})
        assert load_runtime_config(str(tmp_path))["retention"]["keep_runs"] == 10

    def test_unknown_keys_are_ignored(self, tmp_path):
        write_config(tmp_path, {"retention": {"forever": True}, "plugins": {"x": 1}})
        cfg = load_runtime_config(str(tmp_path))
        assert "forever" not in cfg["retention"]
        assert "plugins" not in cfg

    def test_corrupt_config_file(self, tmp_path):
        path = tmp_path / ".agentaudit" / "config.json"
        path.parent.mkdir()
        path.write_text("{not json", encoding="utf-8")
        assert load_runtime_config(str(tmp_path))["scoring"]["merge_strategy"] == "weighted_average"

    def test_environment_wins(self, tmp_path, monkeypatch):
        write_config(tmp_path, {"retention": {"keep_runs": 3}})
        monkeypatch.setenv("AGENTAUDIT_RETENTION_KEEP_RUNS", "5")
        monkeypatch.setenv("AGENTAUDIT_GRAPH_ENTRY_KINDS", "command, hook")
        cfg = load_runtime_config(str(tmp_path))
        assert cfg["retention"]["keep_runs"] == 5
        assert cfg["graph"]["entry_kinds"] == ["command", "hook"]

    def test_bad_environment_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENTAUDIT_TIMEOUTS_UNIT_TIMEOUT", "soon")
        assert load_runtime_config(str(tmp_path))["timeouts"]["unit_timeout"] == 120.0

    def test_unknown_merge_strategy_resets(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENTAUDIT_SCORING_MERGE_STRATEGY", "median")
        assert load_runtime_config(str(tmp_path))["scoring"]["merge_strategy"] == "weighted_average"

    def test_layout_file(self, tmp_path):
        layout = tmp_path / "layout.yaml"
        layout.write_text(yaml.safe_dump({"layout": {"agent": "subagents", "command": "prompts"}}), encoding="utf-8")
        cfg = load_runtime_config(str(tmp_path), str(layout))
        assert cfg["layout"]["agent"] == "subagents"
        assert cfg["layout"]["command"] == "prompts"
        assert cfg["layout"]["skill"] == "skills"

    def test_layout_file_must_be_a_mapping(self, tmp_path):
        layout = tmp_path / "layout.yaml"
        layout.write_text("- agents\n- commands\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_runtime_config(str(tmp_path), str(layout))

    def test_output_paths_resolve_against_base(self, tmp_path):
        paths = resolve_output_paths(load_runtime_config(str(tmp_path)), tmp_path)
        assert paths["cache_file"] == tmp_path / ".agentaudit" / "cache.json"
        assert paths["runs_dir"] == tmp_path / ".agentaudit" / "runs"

    def test_output_dir_relocates_artifacts(self, tmp_path):
        write_config(tmp_path, {"paths": {"output_dir": "build/audit", "log_dir": str(tmp_path / "logs")}})
        paths = resolve_output_paths(load_runtime_config(str(tmp_path)), tmp_path)
        assert paths["output_dir"] == tmp_path / "build" / "audit"
        assert paths["cache_file"] == tmp_path / "build" / "audit" / "cache.json"
        assert paths["latest_report"] == tmp_path / "build" / "audit" / "latest_report.json"
        assert paths["log_dir"] == tmp_path / "logs"

    def test_graph_stage_timeout_key_is_unknown(self, tmp_path):
        write_config(tmp_path, {"timeouts": {"graph_analysis": 5}})
        assert "graph_analysis" not in load_runtime_config(str(tmp_path))["timeouts"]


class TestPipelineOptions:
    def test_from_config(self, tmp_path):
        write_config(tmp_path, {"timeouts": {"component_analysis": 30}, "scoring": {"graph_weight": 0.5}})
        cfg = load_runtime_config(str(tmp_path))
        options = PipelineOptions.from_config(cfg, ["."], ["agent"], base_dir=tmp_path)

        assert options.roots == [Path(".")]
        assert options.kinds == [ComponentKind.AGENT]
        assert options.unit_timeout == 30.0
        assert options.graph_weight == 0.5
        assert options.entry_kinds == [ComponentKind.COMMAND]
        assert options.cache_path == tmp_path / ".agentaudit" / "cache.json"

    def test_unit_timeout_used_without_stage_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENTAUDIT_TIMEOUTS_UNIT_TIMEOUT", "7")
        options = PipelineOptions.from_config(load_runtime_config(str(tmp_path)), ["."])
        assert options.unit_timeout == 7.0

    def test_stage_override_beats_unit_timeout(self, tmp_path):
        write_config(tmp_path, {"timeouts": {"unit_timeout": 7, "component_analysis": 12}})
        options = PipelineOptions.from_config(load_runtime_config(str(tmp_path)), ["."])
        assert options.unit_timeout == 12.0

    def test_overrides_skip_none(self, tmp_path):
        cfg = load_runtime_config(str(tmp_path))
        options = PipelineOptions.from_config(cfg, ["."], mode=RunMode.INCREMENTAL, max_workers=None)
        assert options.mode is RunMode.INCREMENTAL
        assert options.max_workers == cfg["limits"]["max_workers"]

    def test_unknown_override(self, tmp_path):
        with pytest.raises(TypeError):
            PipelineOptions.from_config(load_runtime_config(str(tmp_path)), ["."], turbo=True)

    def test_watch_mode_uses_cache_diff(self):
        assert PipelineOptions(roots=[], mode=RunMode.WATCH).uses_cache_diff
        assert not PipelineOptions(roots=[], mode=RunMode.FULL).uses_cache_diff
