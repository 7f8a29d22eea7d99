# engine/exceptions.py

"""
Runtime error taxonomy for Cumulus.

Transient errors are retried inside executors and never reach callers.
Everything else is recorded on the task it belongs to and only surfaces
when that task is inspected.
"""

from typing import Optional


class CumulusError(Exception):
    """Base class for all Cumulus errors"""


# -------------------------
# INFRASTRUCTURE
# -------------------------

class TransientInfraError(CumulusError):
    """Throttling, network blips, temporarily unavailable capacity."""


class FatalLaunchError(CumulusError):
    """Malformed descriptor or permanent resource denial. Never retried."""


class CancelError(CumulusError):
    """Remote side refused or failed a cancellation request."""


# -------------------------
# TASK OUTCOMES
# -------------------------

class TaskRuntimeError(CumulusError):
    """
    The work unit itself raised.

    Carries the remote exception's type name, message and traceback text.
    When the original exception object survived transport it is chained
    as __cause__.
    """

    def __init__(
        self,
        message: str,
        *,
        error_type: Optional[str] = None,
        remote_traceback: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.remote_traceback = remote_traceback

    def __str__(self) -> str:
        base = super().__str__()
        if self.error_type:
            return f"{self.error_type}: {base}"
        return base


class TaskTimeoutError(CumulusError, TimeoutError):
    """Task produced no terminal report within its timeout."""


class WorkerVanishedError(CumulusError):
    """Worker disappeared without a terminal report past the grace period."""


class TaskCancelledError(CumulusError):
    """Raised by value() for a task that was cancelled."""


class ResolutionTimeout(CumulusError, TimeoutError):
    """Caller-side wait bound elapsed before the task resolved."""


# -------------------------
# REGISTRY / STORE
# -------------------------

class UnknownTaskError(CumulusError, KeyError):
    """No task registered under this identifier."""

    def __str__(self) -> str:
        return f"Unknown task: {self.args[0]}" if self.args else "Unknown task"


class InvalidTransition(CumulusError):
    """Transition not permitted by the task state machine."""


class ResultAlreadyExists(CumulusError):
    """Write-once violation: a result was already stored for this task."""


class ResultNotFound(CumulusError, KeyError):
    """No stored object under the requested key."""


class StorageError(CumulusError):
    """Non-retryable object store failure."""
