"""Analyzer registry: dispatch by component kind and merge multi-analyzer scores."""

from collections.abc import Iterable

from agentaudit.errors import AnalyzerError
from agentaudit.inventory import Component, ComponentKind

from .base import AnalysisContext, AnalysisResult, Analyzer, kinds_of

WEIGHTED_AVERAGE = "weighted_average"
MAX_SEVERITY = "max_severity"


class AnalyzerRegistry:
    """Holds analyzers per kind, in registration order.

    The registry never judges content itself. When several analyzers cover
    one kind, their results are combined by the configured merge strategy:

    - weighted_average: weight-weighted mean of the scores
    - max_severity: the lowest score wins
    """

    def __init__(self, merge_strategy: str = WEIGHTED_AVERAGE):
        if merge_strategy not in (WEIGHTED_AVERAGE, MAX_SEVERITY):
            raise ValueError(f"Unknown merge strategy: {merge_strategy!r}")
        self.merge_strategy = merge_strategy
        self._by_kind: dict[ComponentKind, list[Analyzer]] = {kind: [] for kind in ComponentKind}

    def register(self, analyzer: Analyzer, kinds: Iterable[ComponentKind | str] | None = None) -> None:
        """Register an analyzer for its declared kinds (or an explicit subset)."""
        target_kinds = kinds_of(kinds) if kinds is not None else analyzer.kinds
        for kind in sorted(target_kinds, key=lambda k: k.value):
            if analyzer not in self._by_kind[kind]:
                self._by_kind[kind].append(analyzer)

    def analyzers_for(self, component: Component) -> list[Analyzer]:
        return [a for a in self._by_kind[component.kind] if a.supports(component)]

    def covers(self, component: Component) -> bool:
        return bool(self.analyzers_for(component))

    def unit_timeout(self, component: Component, default: float) -> float:
        """Timeout for one unit: the largest per-analyzer override, else the default."""
        overrides = [a.timeout for a in self.analyzers_for(component) if a.timeout]
        return max(overrides) if overrides else default

    def analyze(self, component: Component, context: AnalysisContext) -> AnalysisResult:
        """Run every matching analyzer on one component and merge the results.

        Blocking; called from a worker thread.

        Raises:
            AnalyzerError: no analyzer is registered, or one of them failed.
        """
        analyzers = self.analyzers_for(component)
        if not analyzers:
            raise AnalyzerError(component.id, "no analyzer registered for this kind")

        results: list[tuple[Analyzer, AnalysisResult]] = []
        for analyzer in analyzers:
            try:
                results.append((analyzer, analyzer.analyze(component, context)))
            except AnalyzerError:
                raise
            except Exception as e:
                raise AnalyzerError(component.id, f"{type(e).__name__}: {e}", analyzer.name) from e

        return self.merge(component, results)

    def merge(self, component: Component, results: list[tuple[Analyzer, AnalysisResult]]) -> AnalysisResult:
        findings: list[str] = []
        for analyzer, result in results:
            findings.extend(f"{analyzer.name}: {finding}" for finding in result.findings)

        if self.merge_strategy == MAX_SEVERITY:
            score = min(result.score for _, result in results)
        else:
            total_weight = sum(max(a.weight, 0.0) for a, _ in results)
            if total_weight == 0:
                score = sum(r.score for _, r in results) / len(results)
            else:
                score = sum(max(a.weight, 0.0) * r.score for a, r in results) / total_weight

        return AnalysisResult(
            score=score,
            findings=tuple(findings),
            source_hash=component.content_hash,
            analyzers=tuple(a.name for a, _ in results),
        )


def default_registry(merge_strategy: str = WEIGHTED_AVERAGE) -> AnalyzerRegistry:
    """Registry with the built-in rule-based analyzers."""
    from .builtin import FrontmatterAnalyzer, GraphSignalAnalyzer

    registry = AnalyzerRegistry(merge_strategy)
    registry.register(FrontmatterAnalyzer())
    registry.register(GraphSignalAnalyzer())
    return registry
