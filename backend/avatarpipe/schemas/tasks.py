"""TaskRecord: one external unit of work tracked through its lifecycle."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from avatarpipe.errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskKind(str, Enum):
    """Provider-facing kind of work."""

    IMAGE = "image"
    AUDIO = "audio"
    MOTION = "motion"
    VIDEO = "video"


class TaskStatus(str, Enum):
    """Lifecycle status of a TaskRecord."""

    QUEUED = "queued"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DOWNLOADED = "downloaded"


class TaskResult(BaseModel):
    """Artifact fields reported by a provider.

    Partial fields (a thumbnail seen while still processing) may be present
    before completion; ``url`` is only set once the provider reports success.
    """

    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = None
    local_path: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def merged_with(self, other: Optional["TaskResult"]) -> "TaskResult":
        """Overlay the non-empty fields of ``other`` onto this result."""
        if other is None:
            return self
        data = self.model_dump()
        for key, value in other.model_dump().items():
            if key == "extra":
                data["extra"] = {**data["extra"], **value}
            elif value is not None:
                data[key] = value
        return TaskResult.model_validate(data)


class TaskError(BaseModel):
    """Failure or cancellation detail, provider message kept verbatim."""

    kind: ErrorKind
    message: str


class TaskRecord(BaseModel):
    """One external unit of work.

    ``local_id`` tracks the task from creation; ``id`` is the provider's
    identifier and stays None until the provider accepts the submission.
    """

    local_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    id: Optional[str] = None
    kind: TaskKind
    status: TaskStatus = TaskStatus.QUEUED
    input: dict[str, Any] = Field(default_factory=dict)
    result: Optional[TaskResult] = None
    error: Optional[TaskError] = None
    attempts: int = 0
    # Provider client name; None means the default provider for ``kind``
    provider: Optional[str] = None
    run_id: Optional[str] = None
    label: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
