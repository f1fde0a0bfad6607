"""Built-in rule-based analyzers.

These make the pipeline usable without an LLM backend. They are deliberately
simple structural checks; richer judgment plugs in through the same
Analyzer interface.
"""

from agentaudit.inventory import Component, ComponentKind, parse_frontmatter

from .base import AnalysisContext, AnalysisResult, Analyzer


class FrontmatterAnalyzer(Analyzer):
    """Checks frontmatter completeness and body substance of markdown components."""

    name = "frontmatter"
    kinds = frozenset({ComponentKind.COMMAND, ComponentKind.AGENT, ComponentKind.SKILL})

    REQUIRED_FIELDS = {
        ComponentKind.COMMAND: ("description",),
        ComponentKind.AGENT: ("name", "description", "tools"),
        ComponentKind.SKILL: ("name", "description"),
    }

    MIN_BODY_CHARS = 200
    MIN_DESCRIPTION_CHARS = 20

    def analyze(self, component: Component, context: AnalysisContext) -> AnalysisResult:
        content = component.read_content()
        metadata = component.metadata or parse_frontmatter(content)
        score = 10.0
        findings = []

        if not metadata:
            score -= 4.0
            findings.append("missing YAML frontmatter")
        else:
            for field_name in self.REQUIRED_FIELDS.get(component.kind, ()):
                value = metadata.get(field_name)
                if value is None or (isinstance(value, str) and not value.strip()):
                    score -= 2.0
                    findings.append(f"frontmatter field '{field_name}' is missing or empty")

            description = metadata.get("description")
            if isinstance(description, str) and 0 < len(description.strip()) < self.MIN_DESCRIPTION_CHARS:
                score -= 1.0
                findings.append(f"description shorter than {self.MIN_DESCRIPTION_CHARS} characters")

        body = content
        if content.startswith("---") and "\n---" in content:
            body = content.split("\n---", 1)[1]
        if len(body.strip()) < self.MIN_BODY_CHARS:
            score -= 2.0
            findings.append(f"body shorter than {self.MIN_BODY_CHARS} characters")

        return AnalysisResult(score=score, findings=tuple(findings), source_hash=component.content_hash)


class GraphSignalAnalyzer(Analyzer):
    """Scores a component by its position in the dependency graph."""

    name = "graph-signals"
    weight = 0.5

    def analyze(self, component: Component, context: AnalysisContext) -> AnalysisResult:
        score = 10.0
        findings = []

        if context.is_orphan(component.id):
            score -= 3.0
            findings.append("orphan: nothing references this component")

        if context.in_cycle(component.id):
            score -= 3.0
            findings.append("participates in a reference cycle")

        if context.graph is not None:
            broken = [e for e in context.graph.outgoing(component.id) if not e.is_resolved]
            for edge in broken:
                findings.append(f"broken reference to {edge.target} ({edge.evidence})")
            score -= min(4.0, 1.0 * len(broken))

        return AnalysisResult(score=score, findings=tuple(findings), source_hash=component.content_hash)
