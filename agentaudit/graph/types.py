"""Shared data structures for the graph module.

Kept separate from builder/extractors to prevent circular imports:
- RawReference: what an extractor saw, before resolution against the inventory
- ReferenceEdge: a resolved (or explicitly unresolved) directed edge
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentaudit.inventory import ComponentKind

# Target marker for references that did not resolve to a known component
UNRESOLVED_PREFIX = "unresolved:"

MAX_EVIDENCE_CHARS = 120


class EdgeKind(Enum):
    """Relationship carried by a reference edge."""

    INVOKES = "invokes"
    REFERENCES = "references"
    DELEGATES = "delegates"
    INTEGRATES = "integrates"


def clip_evidence(text: str) -> str:
    """Normalize whitespace and bound the evidence snippet."""
    text = " ".join(text.split())
    return text if len(text) <= MAX_EVIDENCE_CHARS else text[: MAX_EVIDENCE_CHARS - 3] + "..."


@dataclass(frozen=True)
class RawReference:
    """An extracted mention of another component, by name."""

    source: str
    target_name: str
    target_kind: ComponentKind
    kind: EdgeKind
    evidence: str
    report_unresolved: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "target_name": self.target_name,
            "target_kind": self.target_kind.value,
            "kind": self.kind.value,
            "evidence": self.evidence,
            "report_unresolved": self.report_unresolved,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawReference":
        return cls(
            source=data["source"],
            target_name=data["target_name"],
            target_kind=ComponentKind(data["target_kind"]),
            kind=EdgeKind(data["kind"]),
            evidence=data.get("evidence", ""),
            report_unresolved=bool(data.get("report_unresolved", True)),
        )


@dataclass(frozen=True)
class ReferenceEdge:
    """Directed edge source -> target. Identity is (source, target, kind)."""

    source: str
    target: str
    kind: EdgeKind
    evidence: str = field(default="", compare=False)

    @property
    def is_resolved(self) -> bool:
        return not self.target.startswith(UNRESOLVED_PREFIX)

    def sort_key(self) -> tuple[str, str, str]:
        return (self.source, self.target, self.kind.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "kind": self.kind.value,
            "evidence": self.evidence,
        }
