"""Dependency graph construction and health metrics.

DependencyGraph owns the reference edges between components; the components
themselves are shared with the inventory (held by reference). Health metrics
are never stored - every call recomputes them from the current node and edge
sets, always over edges sorted by (source, target, kind).

Incremental builds pass the raw references cached for unchanged components;
only changed components are re-extracted, and every reference is resolved
again against the full current inventory so additions and deletions of
targets are reflected everywhere.
"""

from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import Any

from agentaudit.errors import GraphBuildError
from agentaudit.inventory import Component, ComponentKind, component_id
from agentaudit.utils.logging import logger

from .analyzer import GraphAnalyzer
from .extractors import EdgeExtractor
from .types import UNRESOLVED_PREFIX, RawReference, ReferenceEdge


class DependencyGraph:
    """Directed reference graph over a component inventory."""

    def __init__(
        self,
        components: Iterable[Component],
        edges: Iterable[ReferenceEdge],
        entry_kinds: Iterable[ComponentKind | str] = (ComponentKind.COMMAND,),
        raw_references: Mapping[str, list[RawReference]] | None = None,
        build_errors: list[GraphBuildError] | None = None,
    ):
        self.nodes: dict[str, Component] = {c.id: c for c in components}
        self.entry_kinds = frozenset(ComponentKind.parse(k) for k in entry_kinds)
        self.raw_references: dict[str, list[RawReference]] = dict(raw_references or {})
        self.build_errors: list[GraphBuildError] = list(build_errors or [])
        self.analyzer = GraphAnalyzer()

        unique: dict[tuple[str, str, str], ReferenceEdge] = {}
        for edge in sorted(edges, key=lambda e: (e.sort_key(), e.evidence)):
            unique.setdefault(edge.sort_key(), edge)
        self.edges: list[ReferenceEdge] = [unique[key] for key in sorted(unique)]

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(
        cls,
        components: Iterable[Component],
        extractors: Iterable[EdgeExtractor],
        entry_kinds: Iterable[ComponentKind | str] = (ComponentKind.COMMAND,),
        cached_references: Mapping[str, list[RawReference]] | None = None,
    ) -> "DependencyGraph":
        """
        Apply extractors to every component and resolve the references.

        Args:
            components: Full inventory for this run
            extractors: Reference rules to apply
            entry_kinds: Kinds treated as graph roots
            cached_references: Raw references per component id to reuse instead
                of re-extracting (incremental mode passes unchanged ids only)

        Returns:
            The resolved graph. Unreadable components contribute no edges and
            are listed in build_errors.
        """
        components = list(components)
        extractors = list(extractors)
        cached_references = cached_references or {}

        raw: dict[str, list[RawReference]] = {}
        errors: list[GraphBuildError] = []
        reused = 0

        for component in components:
            if component.id in cached_references:
                raw[component.id] = list(cached_references[component.id])
                reused += 1
                continue
            try:
                content = component.read_content()
            except OSError as e:
                error = GraphBuildError(component.id, str(e))
                logger.warning(f"{error} - treating it as having no references")
                errors.append(error)
                raw[component.id] = []
                continue

            refs: list[RawReference] = []
            for extractor in extractors:
                if extractor.applies_to(component):
                    refs.extend(extractor.extract(component, content))
            raw[component.id] = refs

        logger.debug(
            f"Extracted references for {len(components) - reused} components, "
            f"reused {reused} from cache"
        )

        edges = resolve_references(raw, components)
        return cls(components, edges, entry_kinds, raw, errors)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def adjacency(self) -> dict[str, list[str]]:
        """Resolved successors per node, sorted, collapsed across edge kinds."""
        adj: dict[str, set[str]] = defaultdict(set)
        for edge in self.edges:
            if edge.is_resolved and edge.source in self.nodes and edge.target in self.nodes:
                adj[edge.source].add(edge.target)
        return {node: sorted(adj.get(node, ())) for node in sorted(self.nodes)}

    def entry_nodes(self, kinds: Iterable[ComponentKind | str] | None = None) -> list[str]:
        wanted = frozenset(ComponentKind.parse(k) for k in kinds) if kinds else self.entry_kinds
        return sorted(node for node, c in self.nodes.items() if c.kind in wanted)

    def _traversal_roots(self) -> list[str]:
        entries = self.entry_nodes()
        entry_set = set(entries)
        return entries + [n for n in sorted(self.nodes) if n not in entry_set]

    def outgoing(self, node_id: str) -> list[ReferenceEdge]:
        return [e for e in self.edges if e.source == node_id]

    def incoming(self, node_id: str) -> list[ReferenceEdge]:
        return [e for e in self.edges if e.target == node_id]

    # ------------------------------------------------------------------
    # Health metrics (derived on demand)
    # ------------------------------------------------------------------

    def detect_cycles(self) -> list[list[str]]:
        """Every cycle found by DFS from entry nodes first, then the rest."""
        return self.analyzer.detect_cycles(self._traversal_roots(), self.adjacency())

    def cycle_edges(self) -> set[tuple[str, str]]:
        """Back edges that close cycles; excluded from depth computation."""
        _, back_edges = self.analyzer.depth_first_back_edges(self._traversal_roots(), self.adjacency())
        return back_edges

    def detect_orphans(self) -> list[str]:
        """Non-entry-kind components with no incoming references."""
        adj = self.adjacency()
        return self.analyzer.find_orphans(sorted(self.nodes), adj, set(self.entry_nodes()))

    def unreachable(self) -> list[str]:
        """Components no entry node can reach (orphans plus isolated islands)."""
        adj = self.adjacency()
        reached = self.analyzer.reachable_from(self.entry_nodes(), adj)
        return [n for n in sorted(self.nodes) if n not in reached]

    def max_depth(self, from_kinds: Iterable[ComponentKind | str] | None = None) -> int:
        """Longest path from an entry-kind node to a terminal node, cycles excluded."""
        starts = self.entry_nodes(from_kinds)
        if not starts:
            return 0
        depths = self.analyzer.longest_paths(sorted(self.nodes), self.adjacency(), self.cycle_edges())
        return max(depths[node] for node in starts)

    def deepest_chain(self, from_kinds: Iterable[ComponentKind | str] | None = None) -> list[str]:
        """One longest chain realising max_depth (lexicographically smallest)."""
        starts = self.entry_nodes(from_kinds)
        if not starts:
            return []
        adj = self.adjacency()
        excluded = self.cycle_edges()
        depths = self.analyzer.longest_paths(sorted(self.nodes), adj, excluded)
        best = max(depths[node] for node in starts)
        node = next(n for n in starts if depths[n] == best)
        chain = [node]
        while depths[node] > 0:
            node = next(
                t for t in adj[node]
                if (node, t) not in excluded and depths[t] == depths[node] - 1
            )
            chain.append(node)
        return chain

    def broken_links(self) -> list[ReferenceEdge]:
        """Edges whose target did not resolve to a known component."""
        return [e for e in self.edges if not e.is_resolved]

    def health_score(self, max_depth_warning: int = 4) -> float:
        """Graph health on a 0-10 scale derived from the structural metrics."""
        node_count = len(self.nodes)
        if node_count == 0:
            return 10.0
        orphan_rate = len(self.detect_orphans()) / node_count
        score = 10.0
        score -= 2.0 * len(self.detect_cycles())
        score -= 1.0 * len(self.broken_links())
        score -= 10.0 * orphan_rate
        score -= 1.0 * max(0, self.max_depth() - max_depth_warning)
        return round(min(10.0, max(0.0, score)), 2)

    def summary(self, max_depth_warning: int = 4, top_n: int = 10) -> dict[str, Any]:
        """Raw statistics plus health metrics, JSON-serializable and deterministic."""
        nodes = sorted(self.nodes)
        adj = self.adjacency()
        resolved_edges = [e for e in self.edges if e.is_resolved]
        node_count = len(nodes)
        edge_count = len(resolved_edges)
        density = edge_count / (node_count * (node_count - 1)) if node_count > 1 else 0

        kinds: dict[str, int] = defaultdict(int)
        for component in self.nodes.values():
            kinds[component.kind.value] += 1

        orphans = self.detect_orphans()
        cycles = self.detect_cycles()
        broken = self.broken_links()

        return {
            "statistics": {
                "total_nodes": node_count,
                "total_edges": edge_count,
                "graph_density": round(density, 4),
                "kinds": dict(sorted(kinds.items())),
                "entry_kinds": sorted(k.value for k in self.entry_kinds),
            },
            "health": {
                "cycle_count": len(cycles),
                "orphan_count": len(orphans),
                "orphan_rate": round(len(orphans) / node_count, 4) if node_count else 0.0,
                "max_depth": self.max_depth(),
                "broken_link_count": len(broken),
                "score": self.health_score(max_depth_warning),
            },
            "cycles": cycles,
            "orphans": orphans,
            "unreachable": self.unreachable(),
            "deepest_chain": self.deepest_chain(),
            "broken_links": [e.to_dict() for e in broken],
            "top_connected_nodes": self.analyzer.identify_hotspots(nodes, adj, top_n),
            "build_errors": [{"component": e.component_id, "reason": e.reason} for e in self.build_errors],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [
                {"id": c.id, "kind": c.kind.value, "path": c.path}
                for c in (self.nodes[k] for k in sorted(self.nodes))
            ],
            "edges": [e.to_dict() for e in self.edges],
        }


def resolve_references(
    raw: Mapping[str, list[RawReference]],
    components: Iterable[Component],
) -> list[ReferenceEdge]:
    """
    Resolve raw references by (kind, name) against the inventory.

    Names match case-insensitively on the component name and on a frontmatter
    `name` alias. Unresolved references become edges to an `unresolved:` target
    unless the rule marked them as speculative.
    """
    index: dict[tuple[ComponentKind, str], str] = {}
    for component in sorted(components, key=lambda c: c.id):
        index.setdefault((component.kind, component.name.lower()), component.id)
    for component in sorted(components, key=lambda c: c.id):
        alias = component.metadata.get("name")
        if isinstance(alias, str) and alias.strip():
            index.setdefault((component.kind, alias.strip().lower()), component.id)

    edges = []
    for source in sorted(raw):
        for ref in raw[source]:
            target = index.get((ref.target_kind, ref.target_name.lower()))
            if target is None:
                if not ref.report_unresolved:
                    continue
                target = UNRESOLVED_PREFIX + component_id(ref.target_kind, ref.target_name)
            edges.append(ReferenceEdge(ref.source, target, ref.kind, ref.evidence))
    return edges
