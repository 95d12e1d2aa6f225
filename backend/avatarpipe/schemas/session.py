"""PipelineRun and SessionSnapshot models."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from avatarpipe.schemas.tasks import TaskError, TaskKind, TaskRecord, TaskStatus, utcnow


class RunStatus(str, Enum):
    """Status of a user-initiated multi-stage job."""

    RUNNING = "running"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.PARTIALLY_SUCCEEDED,
    RunStatus.SUCCEEDED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
})


class StageResult(BaseModel):
    """Outcome of one executed stage.

    Task lists hold ``local_id`` values into the snapshot's task set.
    ``pending`` holds fan-out siblings that were still running when the
    stage proceeded without them.
    """

    succeeded: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    output: dict[str, Any] = Field(default_factory=dict)
    error: Optional[TaskError] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class PipelineRun(BaseModel):
    """One user-initiated multi-stage job."""

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    request: dict[str, Any] = Field(default_factory=dict)
    stages: list[str] = Field(default_factory=list)
    stage_results: dict[str, StageResult] = Field(default_factory=dict)
    status: RunStatus = RunStatus.RUNNING
    error: Optional[TaskError] = None
    warnings: list[str] = Field(default_factory=list)
    # Per-stage wall time in seconds
    log: dict[str, float] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class SessionSnapshot(BaseModel):
    """Serializable state for one user session.

    The processing flags are recomputed from ``tasks`` on every mutation
    and are stored only so a reloaded UI can restore its affordances.
    """

    session_id: str
    name: str = ""
    tasks: dict[str, TaskRecord] = Field(default_factory=dict)
    runs: dict[str, PipelineRun] = Field(default_factory=dict)
    is_generating_video: bool = False
    is_adding_motion: bool = False
    is_uploading: bool = False
    is_channel_occupied: bool = False
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def tasks_for_run(self, run_id: str) -> list[TaskRecord]:
        return [t for t in self.tasks.values() if t.run_id == run_id]

    def count(self, status: TaskStatus, kind: Optional[TaskKind] = None) -> int:
        return sum(
            1 for t in self.tasks.values()
            if t.status == status and (kind is None or t.kind == kind)
        )
