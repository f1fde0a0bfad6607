"""Base classes for analyzer plugins."""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from agentaudit.inventory import Component, ComponentKind

if TYPE_CHECKING:
    from agentaudit.graph.builder import DependencyGraph


class Verdict(Enum):
    """Score bands."""

    EXCELLENT = "excellent"
    GOOD = "good"
    NEEDS_WORK = "needs_work"
    POOR = "poor"

    @classmethod
    def from_score(cls, score: float) -> "Verdict":
        if score >= 9.0:
            return cls.EXCELLENT
        if score >= 7.0:
            return cls.GOOD
        if score >= 5.0:
            return cls.NEEDS_WORK
        return cls.POOR


@dataclass(frozen=True)
class AnalysisResult:
    """Per-component analysis output, pinned to the hash it was computed against."""

    score: float
    findings: tuple[str, ...] = ()
    source_hash: str = ""
    analyzers: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "score", round(min(10.0, max(0.0, float(self.score))), 2))
        object.__setattr__(self, "findings", tuple(self.findings))
        object.__setattr__(self, "analyzers", tuple(self.analyzers))

    @property
    def verdict(self) -> Verdict:
        return Verdict.from_score(self.score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "verdict": self.verdict.value,
            "findings": list(self.findings),
            "source_hash": self.source_hash,
            "analyzers": list(self.analyzers),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalysisResult":
        return cls(
            score=float(data["score"]),
            findings=tuple(data.get("findings") or ()),
            source_hash=str(data.get("source_hash", "")),
            analyzers=tuple(data.get("analyzers") or ()),
        )


@dataclass(frozen=True)
class AnalysisContext:
    """Read-only view handed to analyzers.

    sibling_results is a snapshot of the results already completed in the
    current stage when the unit was dispatched; analyzers must not rely on
    any particular sibling being present.
    """

    graph: "DependencyGraph | None" = None
    sibling_results: Mapping[str, AnalysisResult] = field(default_factory=lambda: MappingProxyType({}))
    run_id: str = ""
    orphans: frozenset[str] = frozenset()
    cycle_members: frozenset[str] = frozenset()

    @classmethod
    def for_graph(
        cls,
        graph: "DependencyGraph | None",
        sibling_results: Mapping[str, AnalysisResult] | None = None,
        run_id: str = "",
    ) -> "AnalysisContext":
        """Precompute the graph signals once so analyzers only read."""
        orphans: frozenset[str] = frozenset()
        cycle_members: frozenset[str] = frozenset()
        if graph is not None:
            orphans = frozenset(graph.detect_orphans())
            cycle_members = frozenset(node for cycle in graph.detect_cycles() for node in cycle)
        return cls(
            graph=graph,
            sibling_results=MappingProxyType(dict(sibling_results or {})),
            run_id=run_id,
            orphans=orphans,
            cycle_members=cycle_members,
        )

    def with_siblings(self, sibling_results: Mapping[str, AnalysisResult]) -> "AnalysisContext":
        return replace(self, sibling_results=MappingProxyType(dict(sibling_results)))

    def is_orphan(self, component_id: str) -> bool:
        return component_id in self.orphans

    def in_cycle(self, component_id: str) -> bool:
        return component_id in self.cycle_members


class Analyzer(ABC):
    """Contract for analyzers that score one component.

    Implementations may block (network, LLM calls); the orchestrator runs
    them in worker threads and enforces the unit timeout around them.
    Raise AnalyzerError for a handled failure; any other exception is
    recorded the same way.
    """

    name: str = "analyzer"
    kinds: frozenset[ComponentKind] = frozenset(ComponentKind)
    weight: float = 1.0
    timeout: float | None = None

    def supports(self, component: Component) -> bool:
        return component.kind in self.kinds

    @abstractmethod
    def analyze(self, component: Component, context: AnalysisContext) -> AnalysisResult:
        """Score the component. Must not mutate context or the graph."""


def kinds_of(values: Iterable[ComponentKind | str]) -> frozenset[ComponentKind]:
    return frozenset(ComponentKind.parse(v) for v in values)
