"""Error taxonomy for background processing.

Every error raised inside an account run carries ``retryable`` so the worker
can decide between backing off and giving up without inspecting types.
"""

from typing import Optional


class ProcessingError(Exception):
    """Base class for failures scoped to one account run."""

    retryable = False
    kind = "processing"

    def __init__(self, message: str, account_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.account_id = account_id


class ConfigError(ProcessingError):
    """Invalid account, rule, feed or service definition. Never retried."""

    kind = "config"


class MailConnectionError(ProcessingError):
    """The mail server could not be reached or dropped the connection."""

    retryable = True
    kind = "connection"


class ProtocolError(ProcessingError):
    """A folder select, search, fetch or action command failed."""

    retryable = True
    kind = "protocol"


class RunTimeoutError(ProcessingError):
    """The run's hard deadline expired while waiting on I/O."""

    kind = "timeout"


class RunCancelled(ProcessingError):
    """The service asked the run to stop between messages."""

    kind = "cancelled"


class ConcurrencyConflict(ProcessingError):
    """A run was requested for an account that already has one in flight."""

    kind = "conflict"


class LifecycleConflict(Exception):
    """A lifecycle command arrived while another transition was in progress."""


class ServiceInvariantError(Exception):
    """Supervisor-level invariant violation. Fatal to the service."""
