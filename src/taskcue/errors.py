"""Exception hierarchy and registry failure classification."""

from __future__ import annotations


class TaskcueError(Exception):
    """Base class for all taskcue errors."""


class ConfigError(TaskcueError):
    """Missing or malformed startup configuration."""


# --- Registry ---


class RegistryError(TaskcueError):
    """The registry rejected a call or could not be reached."""


class TaskRejected(RegistryError):
    """The registry reverted a state transition."""

    reason = "Transaction reverted"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.reason)


class InvalidTaskId(TaskRejected):
    reason = "Invalid task ID"


class AlreadyClaimed(TaskRejected):
    reason = "Task already claimed"


class AlreadyCompleted(TaskRejected):
    reason = "Task already completed"


class NotAssignedWorker(TaskRejected):
    reason = "Not the assigned worker"


class NoBalance(TaskRejected):
    reason = "No balance to withdraw"


class OrderingConflict(RegistryError):
    """The submission was stale or superseded; safe to retry after resync."""


class StaleNonce(OrderingConflict):
    pass


class Underpriced(OrderingConflict):
    pass


class InsufficientFunds(RegistryError):
    """The sender cannot pay for gas and value."""


class RegistryUnavailable(RegistryError):
    """Network or node failure; the call may not have reached the registry."""


# --- Execution ---


class ExecutionError(TaskcueError):
    """The task payload could not be executed."""


class ExecutionTimeout(ExecutionError, TimeoutError):
    """Execution exceeded its time bound."""


class UnsupportedOperation(ExecutionError):
    """The payload names an operation the executor does not implement."""


# Ordered: first matching pattern wins. Revert reasons are checked before
# node-level errors because reverts are wrapped in generic RPC messages.
_PATTERNS: tuple[tuple[str, type[RegistryError]], ...] = (
    ("invalid task id", InvalidTaskId),
    ("already claimed", AlreadyClaimed),
    ("task not available", AlreadyClaimed),
    ("already completed", AlreadyCompleted),
    ("not the assigned worker", NotAssignedWorker),
    ("no balance to withdraw", NoBalance),
    ("insufficient funds", InsufficientFunds),
    ("replacement transaction underpriced", Underpriced),
    ("transaction underpriced", Underpriced),
    ("higher priority", Underpriced),
    ("fee cap", Underpriced),
    ("nonce too low", StaleNonce),
    ("nonce too high", StaleNonce),
    ("already known", StaleNonce),
    ("known transaction", StaleNonce),
    ("invalid nonce", StaleNonce),
    ("can't be queued", StaleNonce),
    ("nonce", StaleNonce),
    ("execution reverted", TaskRejected),
    ("timed out", RegistryUnavailable),
    ("timeout", RegistryUnavailable),
    ("connection", RegistryUnavailable),
    ("temporarily unavailable", RegistryUnavailable),
)


def classify_registry_error(message: str) -> RegistryError:
    """Map a raw node or contract error message onto the taxonomy.

    Unrecognised messages become a plain ``RegistryError``, which callers treat
    as a transient infrastructure failure.
    """
    haystack = message.lower()
    for pattern, error_class in _PATTERNS:
        if pattern in haystack:
            return error_class(message)
    return RegistryError(message)
