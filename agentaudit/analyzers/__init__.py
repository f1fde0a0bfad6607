"""Analyzer plugins: the opaque per-component scoring collaborators."""

from .base import AnalysisContext, AnalysisResult, Analyzer, Verdict
from .builtin import FrontmatterAnalyzer, GraphSignalAnalyzer
from .registry import AnalyzerRegistry, default_registry

__all__ = [
    "Analyzer",
    "AnalysisContext",
    "AnalysisResult",
    "Verdict",
    "AnalyzerRegistry",
    "default_registry",
    "FrontmatterAnalyzer",
    "GraphSignalAnalyzer",
]
