"""Pydantic models shared by the orchestrator, the store and the API."""

from avatarpipe.schemas.tasks import TaskError, TaskKind, TaskRecord, TaskResult, TaskStatus
from avatarpipe.schemas.session import PipelineRun, RunStatus, SessionSnapshot, StageResult

__all__ = [
    "TaskError",
    "TaskKind",
    "TaskRecord",
    "TaskResult",
    "TaskStatus",
    "PipelineRun",
    "RunStatus",
    "SessionSnapshot",
    "StageResult",
]
