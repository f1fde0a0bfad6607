"""Pytest configuration and fixtures."""

import json
import threading
import time
from pathlib import Path

import pytest

from agentaudit.analyzers.base import AnalysisContext, AnalysisResult, Analyzer
from agentaudit.analyzers.registry import AnalyzerRegistry
from agentaudit.errors import AnalyzerError
from agentaudit.inventory import Component
from agentaudit.pipeline.structures import PipelineOptions

COMMAND_REVIEW = """---
description: Review the staged change set before it is committed
---

Collect the diff of the staged files and hand it over for review.

Delegate with subagent_type: code-reviewer and pass the full diff.
Apply the project conventions loaded through Skill(lint-rules).
File follow-ups with mcp__github__create_issue when something is blocking.
"""

COMMAND_DEPLOY = """---
description: Build, verify and ship the current branch
---

Run the build first.
Then run /review on the result and stop if it reports blocking findings.
"""

AGENT_REVIEWER = """---
name: code-reviewer
description: Reviews diffs for correctness and style problems
tools: Read, Grep
---

You review code changes. Report correctness problems first, then style.
Keep every finding short and point at the exact line of the diff.
"""

SKILL_LINT = """---
name: lint-rules
description: Project lint conventions
---

Prefer explicit imports. Keep functions short.
"""

HOOK_PRE_COMMIT = """#!/bin/sh
echo "checking staged files"
"""

MCP_MANIFEST = {"mcpServers": {"github": {"command": "npx", "args": ["github-mcp"]}}}


def write_tree(root: Path) -> Path:
    """Write a small, well-connected component tree under root."""
    (root / "commands").mkdir(parents=True, exist_ok=True)
    (root / "agents").mkdir(exist_ok=True)
    (root / "skills" / "lint-rules").mkdir(parents=True, exist_ok=True)
    (root / "hooks").mkdir(exist_ok=True)

    (root / "commands" / "review.md").write_text(COMMAND_REVIEW, encoding="utf-8")
    (root / "commands" / "deploy.md").write_text(COMMAND_DEPLOY, encoding="utf-8")
    (root / "agents" / "code-reviewer.md").write_text(AGENT_REVIEWER, encoding="utf-8")
    (root / "skills" / "lint-rules" / "SKILL.md").write_text(SKILL_LINT, encoding="utf-8")
    (root / "hooks" / "pre-commit.sh").write_text(HOOK_PRE_COMMIT, encoding="utf-8")
    (root / ".mcp.json").write_text(json.dumps(MCP_MANIFEST), encoding="utf-8")
    return root


TREE_IDS = [
    "agent:code-reviewer",
    "command:deploy",
    "command:review",
    "hook:pre-commit",
    "mcp:github",
    "skill:lint-rules",
]


@pytest.fixture
def component_tree(tmp_path):
    """Project directory holding one component of every kind."""
    return write_tree(tmp_path / "project")


@pytest.fixture
def state_dir(tmp_path):
    """Where cache, runs and reports go, kept apart from the scanned tree."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def make_options(component_tree, state_dir):
    """Factory for PipelineOptions pointed at the fixture tree and state dir."""

    def _make(**overrides):
        values = {
            "roots": [component_tree],
            "cache_path": state_dir / "cache.json",
            "runs_dir": state_dir / "runs",
            "latest_report": state_dir / "latest_report.json",
            "max_workers": 4,
            "unit_timeout": 5.0,
        }
        values.update(overrides)
        return PipelineOptions(**values)

    return _make


class StaticAnalyzer(Analyzer):
    """Scores every component with a fixed score and records what it saw."""

    name = "static"

    def __init__(self, score=8.0, delay=0.0, fail_on=(), on_call=None):
        self.score = score
        self.delay = delay
        self.fail_on = set(fail_on)
        self.on_call = on_call
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def analyze(self, component: Component, context: AnalysisContext) -> AnalysisResult:
        with self._lock:
            self.calls.append(component.id)
        if self.on_call is not None:
            self.on_call(component)
        if component.id in self.fail_on:
            raise AnalyzerError(component.id, "rejected by test analyzer", self.name)
        if self.delay:
            time.sleep(self.delay)
        return AnalysisResult(score=self.score, findings=(), source_hash=component.content_hash)


class SlowAnalyzer(Analyzer):
    """Sleeps past any sensible timeout for the listed components."""

    name = "slow"

    def __init__(self, slow_ids, sleep_for=0.5):
        self.slow_ids = set(slow_ids)
        self.sleep_for = sleep_for

    def analyze(self, component: Component, context: AnalysisContext) -> AnalysisResult:
        if component.id in self.slow_ids:
            time.sleep(self.sleep_for)
        return AnalysisResult(score=6.0, source_hash=component.content_hash)


def registry_with(*analyzers) -> AnalyzerRegistry:
    registry = AnalyzerRegistry()
    for analyzer in analyzers:
        registry.register(analyzer)
    return registry
