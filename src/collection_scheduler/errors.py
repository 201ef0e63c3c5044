from typing import Optional


class SchedulerError(Exception):
    """
    Base class for every error raised by the scheduling engine.
    """


class ConfigurationError(SchedulerError):
    """
    Raised for an invalid schedule window or collection setting, e.g. an empty days_of_week.
    """


class NotFoundError(SchedulerError):
    """
    Raised when a task or entity does not exist.
    """


class ExternalFetchError(SchedulerError):
    """
    Raised when the external data source fails (transport error or non-success response).
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class QueueError(SchedulerError):
    """
    Raised when a job cannot be enqueued or inspected.
    """


class PersistenceError(SchedulerError):
    """
    Raised when the task store cannot be read or written.
    """
