"""Task state machine constants and transition logic.

Defines the forward-only lifecycle of a TaskRecord, the merge rule used
when a status report arrives for a task, and the coarse processing flags
that are derived from the live task set rather than stored independently.
"""

from typing import Iterable, Optional

from avatarpipe.errors import ErrorKind
from avatarpipe.schemas.tasks import TaskError, TaskKind, TaskRecord, TaskResult, TaskStatus, utcnow
from avatarpipe.services.base import StatusReport

TERMINAL_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
    TaskStatus.DOWNLOADED,
})

# Statuses that hold a provider-side slot
ACTIVE_STATUSES = frozenset({TaskStatus.SUBMITTED, TaskStatus.PROCESSING})

# Allowed transitions; re-entering PROCESSING records another poll tick
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.SUBMITTED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.SUBMITTED: frozenset({
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.PROCESSING: frozenset({
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.COMPLETED: frozenset({TaskStatus.DOWNLOADED}),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
    TaskStatus.DOWNLOADED: frozenset(),
}

# Progress order used to pick the winner between two views of one task
STATUS_RANK = {
    TaskStatus.QUEUED: 0,
    TaskStatus.SUBMITTED: 1,
    TaskStatus.PROCESSING: 2,
    TaskStatus.COMPLETED: 3,
    TaskStatus.FAILED: 3,
    TaskStatus.CANCELLED: 3,
    TaskStatus.DOWNLOADED: 4,
}


def is_terminal(status: TaskStatus) -> bool:
    """Check if no further automatic transition occurs from ``status``."""
    return status in TERMINAL_STATUSES


def can_transition(task: TaskRecord, new_status: TaskStatus) -> bool:
    """Check if ``task`` may move to ``new_status``.

    COMPLETED -> DOWNLOADED is only valid for video tasks.
    """
    if new_status not in ALLOWED_TRANSITIONS[task.status]:
        return False
    if new_status == TaskStatus.DOWNLOADED and task.kind != TaskKind.VIDEO:
        return False
    return True


def transition(
    task: TaskRecord,
    new_status: TaskStatus,
    *,
    provider_id: Optional[str] = None,
    result: Optional[TaskResult] = None,
    error: Optional[TaskError] = None,
    attempts: Optional[int] = None,
) -> Optional[TaskRecord]:
    """Return a copy of ``task`` moved to ``new_status``, or None if not allowed.

    Result fields are merged, never cleared. Errors are only recorded on
    FAILED and CANCELLED.
    """
    if not can_transition(task, new_status):
        return None

    update: dict = {"status": new_status, "updated_at": utcnow()}
    if provider_id is not None:
        update["id"] = provider_id
    if result is not None:
        update["result"] = (task.result or TaskResult()).merged_with(result)
    if new_status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
        update["error"] = error
    if attempts is not None:
        update["attempts"] = attempts
    return task.model_copy(update=update)


def merge_report(task: TaskRecord, report: StatusReport) -> Optional[TaskRecord]:
    """Apply a status report, honouring the last-writer rule.

    Returns the updated task, or None when the report must be ignored:
    the task is already terminal (repeated checks never touch its result
    or error), or the report would move the task backwards.
    """
    if is_terminal(task.status):
        return None
    if STATUS_RANK[report.status] < STATUS_RANK[task.status]:
        return None

    error = report.error
    if report.status == TaskStatus.FAILED and error is None:
        error = TaskError(kind=ErrorKind.PROVIDER_REJECTION, message="Provider reported failure")
    if report.status == TaskStatus.CANCELLED and error is None:
        error = TaskError(kind=ErrorKind.CANCELLED, message="Cancelled by provider")

    return transition(task, report.status, result=report.result, error=error)


def timeout_task(task: TaskRecord, message: str) -> Optional[TaskRecord]:
    """Fail ``task`` with a Timeout error, keeping any partial result."""
    return transition(
        task,
        TaskStatus.FAILED,
        error=TaskError(kind=ErrorKind.TIMEOUT, message=message),
    )


def pick_latest(a: TaskRecord, b: TaskRecord) -> TaskRecord:
    """Choose between two records of the same provider task.

    The further-progressed record wins; ties go to the most recently
    updated one. Result fields from the loser are kept where the winner
    has none.
    """
    rank_a, rank_b = STATUS_RANK[a.status], STATUS_RANK[b.status]
    if rank_a != rank_b:
        winner, loser = (a, b) if rank_a > rank_b else (b, a)
    else:
        winner, loser = (a, b) if a.updated_at >= b.updated_at else (b, a)

    if loser.result is not None:
        merged = loser.result.merged_with(winner.result)
        winner = winner.model_copy(update={"result": merged})
    return winner


# ---------------------------------------------------------------------------
# Derived processing flags
# ---------------------------------------------------------------------------

def _any_open(tasks: Iterable[TaskRecord], kind: TaskKind) -> bool:
    return any(t.kind == kind and not is_terminal(t.status) for t in tasks)


def is_channel_occupied(tasks: Iterable[TaskRecord]) -> bool:
    """True while any task holds a provider slot."""
    return any(t.status in ACTIVE_STATUSES for t in tasks)


def derive_flags(tasks: Iterable[TaskRecord]) -> dict[str, bool]:
    """Compute the snapshot's coarse UI flags from the task set.

    Returns:
        Dict with keys is_generating_video, is_adding_motion,
        is_uploading and is_channel_occupied.
    """
    tasks = list(tasks)
    return {
        "is_generating_video": _any_open(tasks, TaskKind.VIDEO),
        "is_adding_motion": _any_open(tasks, TaskKind.MOTION),
        "is_uploading": _any_open(tasks, TaskKind.IMAGE),
        "is_channel_occupied": is_channel_occupied(tasks),
    }
