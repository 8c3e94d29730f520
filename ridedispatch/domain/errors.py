"""Dispatch error taxonomy.

Every error raised out of the dispatch core is a ``DispatchError``.  The API
layer maps each subclass to an HTTP status; the core itself never deals with
HTTP.
"""


class DispatchError(Exception):
    """Base class for errors surfaced to the caller."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class Unauthorized(DispatchError):
    """Actor or role does not match the ride's ownership."""


class NotFound(DispatchError):
    """Unknown ride, driver presence or trip completion."""


class InvalidState(DispatchError):
    """Transition precondition not met (wrong status, driver unavailable)."""


class Conflict(InvalidState):
    """An at-most-once record already exists."""


class RetryableError(DispatchError):
    """The attempt left no trace and may be retried."""


class Busy(RetryableError):
    """Could not acquire the per-key lock within the bounded wait."""


class StoreUnavailable(RetryableError):
    """The data store failed while the operation was in flight."""
