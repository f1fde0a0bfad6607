"""agentaudit CLI commands."""
