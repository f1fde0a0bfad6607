"""Graph analyzer module - pure graph algorithms over component reference graphs.

This module provides ONLY non-interpretive graph algorithms:
- Cycle detection (iterative DFS with an explicit recursion stack)
- Orphan and reachability detection (degree counting, BFS)
- Longest-path depth (topological order over the cycle-free subgraph)
- Statistical summaries (counts and grouping)

Inputs are plain node id lists and adjacency mappings. Callers sort them;
every traversal here visits neighbours in the order given, so identical input
always yields identical output.
"""

from collections import defaultdict, deque
from collections.abc import Iterable, Mapping, Sequence

_ON_STACK = 1
_DONE = 2


class GraphAnalyzer:
    """Analyze component reference graphs using pure algorithms."""

    def depth_first_back_edges(
        self,
        roots: Sequence[str],
        adjacency: Mapping[str, Sequence[str]],
    ) -> tuple[list[list[str]], set[tuple[str, str]]]:
        """
        Walk the graph depth-first without recursion and collect back edges.

        A neighbour found while still on the recursion stack closes a cycle;
        the cycle is the stack slice from that neighbour to the current node.

        Args:
            roots: Start nodes in visiting order (every node must appear)
            adjacency: node -> ordered successors

        Returns:
            (cycles in discovery order, set of back edges)
        """
        state: dict[str, int] = {}
        cycles: list[list[str]] = []
        back_edges: set[tuple[str, str]] = set()

        for root in roots:
            if root in state:
                continue

            state[root] = _ON_STACK
            path = [root]
            position = {root: 0}
            stack = [(root, iter(adjacency.get(root, ())))]

            while stack:
                node, successors = stack[-1]
                neighbor = next(successors, None)

                if neighbor is None:
                    stack.pop()
                    path.pop()
                    del position[node]
                    state[node] = _DONE
                    continue

                seen = state.get(neighbor)
                if seen is None:
                    state[neighbor] = _ON_STACK
                    position[neighbor] = len(path)
                    path.append(neighbor)
                    stack.append((neighbor, iter(adjacency.get(neighbor, ()))))
                elif seen == _ON_STACK:
                    back_edges.add((node, neighbor))
                    cycles.append(path[position[neighbor]:])

        return cycles, back_edges

    @staticmethod
    def canonical_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
        """Rotate a cycle so its smallest id comes first, keeping direction."""
        if not cycle:
            return ()
        start = min(range(len(cycle)), key=lambda i: cycle[i])
        return tuple(cycle[start:]) + tuple(cycle[:start])

    def detect_cycles(
        self,
        roots: Sequence[str],
        adjacency: Mapping[str, Sequence[str]],
    ) -> list[list[str]]:
        """
        Detect cycles, deduplicated and in a stable order.

        Returns:
            Cycles as node id lists (smallest id first), sorted by size then ids.
            A self-loop is a 1-node cycle.
        """
        cycles, _ = self.depth_first_back_edges(roots, adjacency)
        unique = {self.canonical_cycle(c) for c in cycles}
        return [list(c) for c in sorted(unique, key=lambda c: (len(c), c))]

    def in_degrees(
        self,
        nodes: Iterable[str],
        adjacency: Mapping[str, Sequence[str]],
        ignore_self_loops: bool = True,
    ) -> dict[str, int]:
        """Count incoming edges per node."""
        degrees = {node: 0 for node in nodes}
        for source, targets in adjacency.items():
            for target in targets:
                if ignore_self_loops and source == target:
                    continue
                if target in degrees:
                    degrees[target] += 1
        return degrees

    def find_orphans(
        self,
        nodes: Sequence[str],
        adjacency: Mapping[str, Sequence[str]],
        entry_nodes: set[str],
    ) -> list[str]:
        """Non-entry nodes that nothing else references."""
        degrees = self.in_degrees(nodes, adjacency)
        return [n for n in nodes if degrees[n] == 0 and n not in entry_nodes]

    def reachable_from(
        self,
        starts: Sequence[str],
        adjacency: Mapping[str, Sequence[str]],
    ) -> set[str]:
        """Breadth-first reachability, starts included."""
        seen = set(starts)
        queue = deque(starts)
        while queue:
            node = queue.popleft()
            for neighbor in adjacency.get(node, ()):
                if neighbor not in seen:
                    seen.add(neighbor)
                    queue.append(neighbor)
        return seen

    def longest_paths(
        self,
        nodes: Sequence[str],
        adjacency: Mapping[str, Sequence[str]],
        excluded_edges: set[tuple[str, str]],
    ) -> dict[str, int]:
        """
        Longest simple path (in edges) from every node to a terminal node.

        Edges in excluded_edges are dropped first; the remainder must be a DAG,
        which holds when excluded_edges is the DFS back-edge set.
        """
        dag: dict[str, list[str]] = defaultdict(list)
        indegree = {node: 0 for node in nodes}
        for source in nodes:
            for target in adjacency.get(source, ()):
                if (source, target) in excluded_edges or target not in indegree:
                    continue
                dag[source].append(target)
                indegree[target] += 1

        # Kahn's algorithm; ties resolved by the caller's node order
        order = []
        queue = deque(n for n in nodes if indegree[n] == 0)
        while queue:
            node = queue.popleft()
            order.append(node)
            for target in dag[node]:
                indegree[target] -= 1
                if indegree[target] == 0:
                    queue.append(target)

        if len(order) != len(nodes):
            raise ValueError("excluded_edges does not break every cycle")

        depth = {node: 0 for node in nodes}
        for node in reversed(order):
            for target in dag[node]:
                depth[node] = max(depth[node], depth[target] + 1)
        return depth

    def calculate_node_degrees(
        self,
        nodes: Iterable[str],
        adjacency: Mapping[str, Sequence[str]],
    ) -> dict[str, dict[str, int]]:
        """In/out degree per node (self-loops counted once each way)."""
        degrees = {node: {"in_degree": 0, "out_degree": 0} for node in nodes}
        for source, targets in adjacency.items():
            for target in targets:
                if source in degrees:
                    degrees[source]["out_degree"] += 1
                if target in degrees:
                    degrees[target]["in_degree"] += 1
        return degrees

    def identify_hotspots(
        self,
        nodes: Sequence[str],
        adjacency: Mapping[str, Sequence[str]],
        top_n: int = 10,
    ) -> list[dict[str, int | str]]:
        """Most connected nodes by total degree, ties broken by id."""
        degrees = self.calculate_node_degrees(nodes, adjacency)
        hotspots = [
            {
                "id": node,
                "in_degree": d["in_degree"],
                "out_degree": d["out_degree"],
                "total_connections": d["in_degree"] + d["out_degree"],
            }
            for node, d in degrees.items()
            if d["in_degree"] + d["out_degree"] > 0
        ]
        hotspots.sort(key=lambda h: (-h["total_connections"], h["id"]))
        return hotspots[:top_n]
