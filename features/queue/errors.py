"""
Error taxonomy for queue operations.

Single-item operations raise these to the caller. Batch operations
(convoy/epic fan-out, multi-bead enqueue) collect them per item and only
raise BatchEnqueueError when nothing succeeded.
"""

from __future__ import annotations


class QueueError(Exception):
    """Base class for all queue errors."""


class NotFoundError(QueueError):
    """Target bead or rig does not exist."""


class GuardRejectedError(QueueError):
    """A precondition guard refused the operation (overridable with force)."""


class FormulaInvalidError(QueueError):
    """Formula lookup or pre-validation (cook) failed."""


class StoreUnavailableError(QueueError):
    """The issue store could not be reached or rejected a command."""


class ExecutionFailedError(QueueError):
    """The execution runtime reported a failed dispatch."""


class QuarantinedError(QueueError):
    """Queued bead has no usable dispatch metadata."""


class BatchEnqueueError(QueueError):
    """Every enqueue attempt in a batch failed."""

    def __init__(self, message: str, failures: dict[str, str] | None = None):
        super().__init__(message)
        self.failures = failures or {}
