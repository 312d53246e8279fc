"""
Exception taxonomy for the audit scheduler.

Every error raised by this package derives from SchedulerError so callers at
the process boundary can catch the whole family with one clause.
"""


class SchedulerError(Exception):
    """Base class for all scheduler errors."""


class InvalidCronExpression(SchedulerError, ValueError):
    """A cron expression violates the 5-field grammar or can never fire."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression '{expression}': {reason}")


class ScheduleNotFound(SchedulerError, LookupError):
    """A manual trigger named a schedule that is missing or inactive."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Schedule not found or inactive: {name}")


class RepositoryError(SchedulerError):
    """Loading definitions, selecting work or persisting an outcome failed."""


class QueueError(SchedulerError):
    """Submitting a single job to the work queue failed."""
