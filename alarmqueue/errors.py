"""
Exceptions for the alarm notification queue.

Enqueue-side errors propagate to the producer. Dispatch-side errors are
contained per entry by the scheduler.
"""


class QueueError(Exception):
    """Base error for queue operations."""

    pass


class ValidationError(QueueError):
    """Bad input rejected before anything is persisted. Never retried."""

    pass


class InvalidTransition(ValidationError):
    """Status change not allowed by the entry state machine."""

    pass


class EntryNotFound(ValidationError):
    """No stored entry for the given queue id."""

    pass


class StoreError(QueueError):
    """Key-value store read or write failure."""

    pass


class ConfigError(QueueError):
    """Tenant configuration missing required fields or corrupt."""

    pass


class TransportError(QueueError):
    """Outbound send failure, classified retryable or fatal by the sender."""

    def __init__(self, message, status_code=None, retry_after=None, response=None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after
        self.response = response
