"""Centralized exit codes for the agentaudit CLI."""


class ExitCodes:
    """Standard exit codes for agentaudit CLI commands."""

    SUCCESS = 0

    COMPLETED_WITH_FAILURES = 1
    ABORTED = 2

    TASK_INCOMPLETE = 3

    CANCELLED = 130

    @classmethod
    def for_outcome(cls, outcome) -> int:
        """Map a pipeline RunOutcome to a process exit code."""
        from agentaudit.pipeline.structures import RunOutcome

        mapping = {
            RunOutcome.COMPLETED_CLEAN: cls.SUCCESS,
            RunOutcome.COMPLETED_WITH_FAILURES: cls.COMPLETED_WITH_FAILURES,
            RunOutcome.ABORTED: cls.ABORTED,
        }
        return mapping[outcome]
