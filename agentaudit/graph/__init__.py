"""Dependency graph package: reference extraction, graph building, health analysis."""

from .analyzer import GraphAnalyzer
from .builder import DependencyGraph
from .extractors import EdgeExtractor, FrontmatterListExtractor, PatternExtractor, default_extractors
from .types import UNRESOLVED_PREFIX, EdgeKind, RawReference, ReferenceEdge

__all__ = [
    "DependencyGraph",
    "GraphAnalyzer",
    "EdgeExtractor",
    "PatternExtractor",
    "FrontmatterListExtractor",
    "default_extractors",
    "EdgeKind",
    "RawReference",
    "ReferenceEdge",
    "UNRESOLVED_PREFIX",
]
