from __future__ import annotations


class WorkflowError(RuntimeError):
    """Base class for every error raised by the workflow engine."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.phase = phase


class ClassificationError(WorkflowError):
    """Raised when a task description cannot be assigned a complexity level."""


class InvalidModeError(WorkflowError):
    """Raised when a focus dimension and the execution mode disagree."""


class InvalidWorkflowError(WorkflowError):
    """Raised when a phase sequence breaks the workflow definition rules."""


class PhaseMismatchError(WorkflowError):
    """Raised when an executor result is tagged with a phase other than the current one."""


class ConcurrentTransitionError(WorkflowError):
    """Raised when a transition arrives while the task cannot accept it."""


class ArchivedTaskImmutableError(WorkflowError):
    """Raised when writing to a task record that has already been archived."""


class TaskNotFoundError(WorkflowError):
    """Raised when a task id has no stored record."""


class WorkflowStateError(WorkflowError):
    """Raised when persisted task state is unreadable or would be corrupted."""


class ExecutorFaultError(WorkflowError):
    """Raised when a phase executor fails in a way the task cannot recover from."""
