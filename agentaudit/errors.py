"""Typed error taxonomy for the audit pipeline.

Only DiscoveryError/FatalDiscoveryError and CancellationRequested may end a
run early. Everything else is captured where it happens, recorded in the
ledger and the synthesis coverage notes, and the run continues.
"""

from pathlib import Path


class AgentAuditError(Exception):
    """Base class for all agentaudit errors."""


class DiscoveryError(AgentAuditError):
    """A root path is missing or unreadable."""

    def __init__(self, path: Path | str, reason: str = "root path does not exist"):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"{reason}: {self.path}")


class FatalDiscoveryError(AgentAuditError):
    """An explicit, non-empty scope matched zero components."""

    def __init__(self, roots: list[str], kinds: list[str]):
        self.roots = roots
        self.kinds = kinds
        kinds_str = ", ".join(kinds) if kinds else "any kind"
        super().__init__(f"No components of {kinds_str} found under {', '.join(roots)}")


class AnalyzerError(AgentAuditError):
    """An analyzer failed on one unit."""

    def __init__(self, unit_id: str, reason: str, analyzer: str | None = None):
        self.unit_id = unit_id
        self.reason = reason
        self.analyzer = analyzer
        prefix = f"[{analyzer}] " if analyzer else ""
        super().__init__(f"{prefix}{unit_id}: {reason}")


class AnalyzerTimeout(AnalyzerError):
    """An analyzer did not finish within its unit timeout."""

    def __init__(self, unit_id: str, timeout: float, analyzer: str | None = None):
        self.timeout = timeout
        super().__init__(unit_id, f"timed out after {timeout:g}s", analyzer)


class CacheCorrupt(AgentAuditError):
    """The persisted cache is malformed or from another schema version."""

    def __init__(self, path: Path | str, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Cache at {self.path} unusable: {reason}")


class LedgerWriteError(AgentAuditError):
    """The run ledger could not be persisted; resume is no longer possible."""

    def __init__(self, path: Path | str, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Ledger write to {self.path} failed: {reason}")


class GraphBuildError(AgentAuditError):
    """A component hashed during discovery could not be read during extraction."""

    def __init__(self, component_id: str, reason: str):
        self.component_id = component_id
        self.reason = reason
        super().__init__(f"Edge extraction for {component_id} failed: {reason}")


class CancellationRequested(AgentAuditError):
    """Raised at a stage boundary once the run's cancellation token is set."""

    def __init__(self, stage: str | None = None):
        self.stage = stage
        super().__init__(f"Cancellation requested{' during ' + stage if stage else ''}")
