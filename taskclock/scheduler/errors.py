"""Scheduler exception types."""


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class TaskValidationError(SchedulerError, ValueError):
    """A task definition was rejected: bad cron, metadata, or dependencies."""


class PersistenceError(SchedulerError):
    """The task file could not be read or written."""
