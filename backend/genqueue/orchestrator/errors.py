"""Exception types raised by the scheduler and its collaborators."""


class GenqueueError(Exception):
    """Base class for all scheduler errors."""


class StageValidationError(GenqueueError):
    """Raised at enqueue time for an invalid stage combination.

    The task set is never created when this is raised.
    """


class TaskNotFound(GenqueueError):
    """Raised when a task id does not exist in the store."""


class ProjectNotFound(GenqueueError):
    """Raised when a project id does not exist in the store."""


class ProjectBusy(GenqueueError):
    """Raised when a project still has pending or processing tasks."""


class InvalidTransition(GenqueueError):
    """Raised when a status change is not part of the task lifecycle."""


class RetryRejected(GenqueueError):
    """Raised when retry_task targets a task that is not failed."""


class DependencyFailure(GenqueueError):
    """Reason recorded on a task cancelled because its predecessor did not complete."""


class ExecutionError(GenqueueError):
    """Raised by or on behalf of a stage executor whose call failed."""


class TaskCancelled(GenqueueError):
    """Raised by a stage executor that stopped after a cancellation signal."""
