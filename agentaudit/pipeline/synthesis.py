"""Synthesis: fold component results and graph health into one report.

Pure aggregation with no I/O and no clock reads, so the same inputs always
produce an identical report. Run identity and timestamps are added by the
report writers, not here.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from agentaudit.analyzers.base import AnalysisResult, Verdict
from agentaudit.inventory import Component

from .structures import UnitFailure

SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}

_VERDICT_SEVERITY = {
    Verdict.POOR: "high",
    Verdict.NEEDS_WORK: "medium",
    Verdict.GOOD: "low",
    Verdict.EXCELLENT: "low",
}


@dataclass
class SynthesisReport:
    """The composite report. Partial when coverage is incomplete."""

    composite_score: float
    component_score: float | None
    graph_score: float
    components: list[dict[str, Any]] = field(default_factory=list)
    graph: dict[str, Any] = field(default_factory=dict)
    issues: list[dict[str, str]] = field(default_factory=list)
    coverage: dict[str, int] = field(default_factory=dict)
    incomplete: list[dict[str, str]] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def verdict(self) -> Verdict:
        return Verdict.from_score(self.composite_score)

    @property
    def complete(self) -> bool:
        return not self.incomplete

    def to_dict(self) -> dict[str, Any]:
        return {
            "composite_score": self.composite_score,
            "verdict": self.verdict.value,
            "component_score": self.component_score,
            "graph_score": self.graph_score,
            "complete": self.complete,
            "coverage": dict(self.coverage),
            "components": [dict(row) for row in self.components],
            "graph": self.graph,
            "issues": [dict(issue) for issue in self.issues],
            "incomplete": [dict(item) for item in self.incomplete],
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SynthesisReport":
        return cls(
            composite_score=float(data["composite_score"]),
            component_score=data.get("component_score"),
            graph_score=float(data["graph_score"]),
            components=list(data.get("components") or []),
            graph=dict(data.get("graph") or {}),
            issues=list(data.get("issues") or []),
            coverage=dict(data.get("coverage") or {}),
            incomplete=list(data.get("incomplete") or []),
            notes=list(data.get("notes") or []),
        )


def _graph_issues(graph_summary: Mapping[str, Any], max_depth_warning: int) -> list[dict[str, str]]:
    issues = []
    for cycle in graph_summary.get("cycles", []):
        issues.append({
            "severity": "high",
            "component": cycle[0],
            "message": "reference cycle: " + " -> ".join(cycle + [cycle[0]]),
        })
    for edge in graph_summary.get("broken_links", []):
        issues.append({
            "severity": "high",
            "component": edge["source"],
            "message": f"broken reference to {edge['target']}",
        })
    for orphan in graph_summary.get("orphans", []):
        issues.append({
            "severity": "medium",
            "component": orphan,
            "message": "orphan: not referenced by any other component",
        })
    depth = graph_summary.get("health", {}).get("max_depth", 0)
    if depth > max_depth_warning:
        chain = graph_summary.get("deepest_chain") or ["-"]
        issues.append({
            "severity": "low",
            "component": chain[0],
            "message": f"reference chain depth {depth} exceeds {max_depth_warning}: " + " -> ".join(chain),
        })
    return issues


def synthesize(
    components: Iterable[Component],
    results: Mapping[str, AnalysisResult],
    graph_summary: Mapping[str, Any],
    failures: Iterable[UnitFailure] = (),
    not_run: Iterable[str] = (),
    component_weight: float = 0.8,
    graph_weight: float = 0.2,
    max_depth_warning: int = 4,
) -> SynthesisReport:
    """
    Build the composite report.

    Args:
        components: Full inventory of this run
        results: Completed results by component id (fresh, cached or resumed)
        graph_summary: DependencyGraph.summary() output
        failures: Units that failed or timed out
        not_run: Units never dispatched (cancellation, or no analyzer registered)
        component_weight: Share of the composite given to the component average
        graph_weight: Share given to graph health

    Returns:
        The report. Missing units lower coverage, not the score: the component
        average is taken over completed results only, and every gap is listed
        under incomplete.
    """
    components = sorted(components, key=lambda c: c.id)
    failures = sorted(failures, key=lambda f: f.unit_id)
    failed_ids = {f.unit_id for f in failures}
    not_run = sorted(set(not_run) - failed_ids - set(results))

    rows = []
    issues: list[dict[str, str]] = []
    for component in components:
        result = results.get(component.id)
        row: dict[str, Any] = {
            "id": component.id,
            "kind": component.kind.value,
            "path": component.path,
            "score": None,
            "verdict": None,
            "findings": [],
        }
        if result is not None:
            row["score"] = result.score
            row["verdict"] = result.verdict.value
            row["findings"] = list(result.findings)
            severity = _VERDICT_SEVERITY[result.verdict]
            for finding in result.findings:
                issues.append({"severity": severity, "component": component.id, "message": finding})
        elif component.id in failed_ids:
            row["verdict"] = "incomplete"
        rows.append(row)

    issues.extend(_graph_issues(graph_summary, max_depth_warning))
    issues.sort(key=lambda i: (SEVERITY_ORDER.get(i["severity"], 9), i["component"], i["message"]))

    scored = [results[c.id].score for c in components if c.id in results]
    component_score = round(sum(scored) / len(scored), 2) if scored else None
    graph_score = float(graph_summary.get("health", {}).get("score", 10.0))

    if component_score is None:
        composite = graph_score
    else:
        total_weight = max(component_weight, 0.0) + max(graph_weight, 0.0)
        if total_weight == 0:
            composite = (component_score + graph_score) / 2
        else:
            composite = (
                max(component_weight, 0.0) * component_score + max(graph_weight, 0.0) * graph_score
            ) / total_weight
    composite = round(min(10.0, max(0.0, composite)), 2)

    incomplete = [f.to_dict() for f in failures]
    incomplete.extend({"unit": unit, "status": "notRun", "reason": "not dispatched"} for unit in not_run)
    incomplete.sort(key=lambda item: item["unit"])
    notes = [f"incomplete: {item['unit']} ({item['status']}: {item['reason']})" for item in incomplete]

    coverage = {
        "total": len(components),
        "analyzed": len(scored),
        "failed": sum(1 for f in failures if f.status.value == "failed"),
        "timed_out": sum(1 for f in failures if f.status.value == "timedOut"),
        "not_run": len(not_run),
    }

    return SynthesisReport(
        composite_score=composite,
        component_score=component_score,
        graph_score=graph_score,
        components=rows,
        graph=dict(graph_summary),
        issues=issues,
        coverage=coverage,
        incomplete=incomplete,
        notes=notes,
    )
