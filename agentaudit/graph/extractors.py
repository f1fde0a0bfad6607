"""Edge extraction rules.

An extractor scans one component's text for mentions of other components and
returns RawReference records. Extractors never look at the inventory; name
resolution happens once, in DependencyGraph.build, against the full
component set.
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from agentaudit.inventory import Component, ComponentKind

from .types import EdgeKind, RawReference, clip_evidence

ALL_KINDS = frozenset(ComponentKind)
TEXT_KINDS = frozenset({ComponentKind.COMMAND, ComponentKind.AGENT, ComponentKind.SKILL, ComponentKind.HOOK})


class EdgeExtractor(ABC):
    """Base class for a reference extraction rule."""

    name: str = "extractor"
    source_kinds: frozenset[ComponentKind] = ALL_KINDS

    def applies_to(self, component: Component) -> bool:
        return component.kind in self.source_kinds

    @abstractmethod
    def extract(self, component: Component, content: str) -> list[RawReference]:
        """Return every reference this rule finds in the component's content."""


class PatternExtractor(EdgeExtractor):
    """Regex rule: group 1 of each match names the target component."""

    def __init__(
        self,
        name: str,
        pattern: str,
        target_kind: ComponentKind,
        edge_kind: EdgeKind,
        source_kinds: Iterable[ComponentKind] = TEXT_KINDS,
        flags: int = 0,
        report_unresolved: bool = True,
    ):
        self.name = name
        self.regex = re.compile(pattern, flags | re.MULTILINE)
        self.target_kind = target_kind
        self.edge_kind = edge_kind
        self.source_kinds = frozenset(source_kinds)
        self.report_unresolved = report_unresolved

    def extract(self, component: Component, content: str) -> list[RawReference]:
        refs = []
        for match in self.regex.finditer(content):
            target = match.group(1).strip().lower()
            if not target:
                continue
            refs.append(
                RawReference(
                    source=component.id,
                    target_name=target,
                    target_kind=self.target_kind,
                    kind=self.edge_kind,
                    evidence=clip_evidence(match.group(0)),
                    report_unresolved=self.report_unresolved,
                )
            )
        return refs

    def __repr__(self) -> str:
        return f"PatternExtractor({self.name!r})"


class FrontmatterListExtractor(EdgeExtractor):
    """Reads a frontmatter field holding a list (or comma string) of names."""

    def __init__(
        self,
        name: str,
        field_name: str,
        target_kind: ComponentKind,
        edge_kind: EdgeKind,
        source_kinds: Iterable[ComponentKind] = TEXT_KINDS,
    ):
        self.name = name
        self.field_name = field_name
        self.target_kind = target_kind
        self.edge_kind = edge_kind
        self.source_kinds = frozenset(source_kinds)

    @staticmethod
    def _as_names(value: Any) -> list[str]:
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        if isinstance(value, list):
            return [str(v).strip() for v in value if str(v).strip()]
        return []

    def extract(self, component: Component, content: str) -> list[RawReference]:
        names = self._as_names(component.metadata.get(self.field_name))
        return [
            RawReference(
                source=component.id,
                target_name=target.lower(),
                target_kind=self.target_kind,
                kind=self.edge_kind,
                evidence=clip_evidence(f"{self.field_name}: {target}"),
            )
            for target in names
        ]

    def __repr__(self) -> str:
        return f"FrontmatterListExtractor({self.name!r})"


_NAME = r"[A-Za-z0-9][A-Za-z0-9_.-]*"


def default_extractors() -> list[EdgeExtractor]:
    """Built-in reference rules for command/agent/skill/hook/mcp trees."""
    return [
        # Command/agent -> agent delegation
        PatternExtractor(
            "subagent-type",
            rf"subagent_type[\"']?\s*[:=]\s*[\"']?({_NAME})",
            ComponentKind.AGENT,
            EdgeKind.DELEGATES,
        ),
        PatternExtractor(
            "agent-mention",
            r"@agent-([A-Za-z0-9][A-Za-z0-9_-]*)",
            ComponentKind.AGENT,
            EdgeKind.DELEGATES,
        ),
        PatternExtractor(
            "agent-phrase",
            r"\b(?:use|invoke|launch|delegate to|spawn) (?:the )?[`\"']?([a-z0-9][a-z0-9_-]*)[`\"']? (?:sub-?)?agent\b",
            ComponentKind.AGENT,
            EdgeKind.DELEGATES,
            flags=re.IGNORECASE,
        ),
        # Slash-command invocation; bare "/word" tokens are too ambiguous
        # (paths, URLs) to report as broken when they do not resolve
        PatternExtractor(
            "slash-command",
            r"(?:^|(?<=[\s`(]))/([a-z][a-z0-9_-]*(?::[a-z0-9_-]+)*)(?![\w/:-]|\.\w)",
            ComponentKind.COMMAND,
            EdgeKind.INVOKES,
            report_unresolved=False,
        ),
        # Skill references
        PatternExtractor(
            "skill-call",
            r"\bSkill\(\s*[\"']?([A-Za-z0-9][A-Za-z0-9_:-]*)[\"']?\s*\)",
            ComponentKind.SKILL,
            EdgeKind.REFERENCES,
        ),
        PatternExtractor(
            "skill-key",
            r"^\s*skill:\s*[\"']?([a-z0-9][a-z0-9_-]*)",
            ComponentKind.SKILL,
            EdgeKind.REFERENCES,
        ),
        FrontmatterListExtractor(
            "skills-frontmatter",
            "skills",
            ComponentKind.SKILL,
            EdgeKind.REFERENCES,
        ),
        # MCP tool usage: mcp__<server>__<tool>
        PatternExtractor(
            "mcp-tool",
            r"\bmcp__([A-Za-z0-9][A-Za-z0-9_-]*?)__\w+",
            ComponentKind.MCP,
            EdgeKind.INTEGRATES,
            source_kinds=ALL_KINDS - {ComponentKind.MCP},
        ),
    ]
