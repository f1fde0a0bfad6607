"""agentaudit - staged audit pipeline for AI assistant configuration components."""

__version__ = "0.3.0"
