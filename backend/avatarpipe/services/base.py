"""Abstract collaborator interfaces consumed by the orchestration core.

Provider clients, asset relocation and their result types. Each provider
kind implements the same submit / check_status / cancel contract so the
dispatcher, poller and quorum waiter never see provider-specific payloads.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel

from avatarpipe.errors import ConfigurationError
from avatarpipe.schemas.tasks import TaskError, TaskKind, TaskResult, TaskStatus


class StatusReport(BaseModel):
    """Normalized answer to a status check."""

    status: TaskStatus
    result: Optional[TaskResult] = None
    error: Optional[TaskError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class SubmitResult(BaseModel):
    """Provider acceptance of a submission.

    Synchronous providers (asset uploads) attach a terminal ``report`` so
    the task completes without being polled.
    """

    provider_task_id: str
    report: Optional[StatusReport] = None


class ProviderClient(ABC):
    """Submit / poll / cancel contract for one provider kind."""

    kind: TaskKind
    name: str = "provider"
    # Input keys holding local references that must be made public before submit
    relocatable_inputs: tuple[str, ...] = ()

    @abstractmethod
    async def submit(self, payload: dict[str, Any]) -> SubmitResult:
        """Submit work to the provider.

        Raises:
            TransientNetworkError: network failure or throttling (retryable)
            ProviderRejection: the provider refused the input
        """
        ...

    @abstractmethod
    async def check_status(self, provider_task_id: str) -> StatusReport:
        """Return the current normalized status.

        Must be safe to call after the task is already terminal.

        Raises:
            TransientNetworkError: network failure or malformed response
        """
        ...

    async def cancel(self, provider_task_id: str) -> None:
        """Best-effort provider-side cancellation. Default: nothing to cancel."""
        return None


class AssetRelocator(ABC):
    """Makes local or opaque asset references reachable by a provider."""

    @abstractmethod
    async def ensure_publicly_reachable(self, local_ref: str) -> str:
        """Return a public URL for ``local_ref`` (uploading it if needed)."""
        ...


def is_public_url(ref: str) -> bool:
    """True for http(s) URLs that are not served from the local machine."""
    lowered = ref.lower()
    if not lowered.startswith(("http://", "https://")):
        return False
    return not any(host in lowered for host in ("localhost", "127.0.0.1", "0.0.0.0"))


class PassthroughRelocator(AssetRelocator):
    """Relocator for deployments whose assets are already public URLs."""

    async def ensure_publicly_reachable(self, local_ref: str) -> str:
        if not is_public_url(local_ref):
            raise ConfigurationError(
                f"Asset {local_ref!r} is not publicly reachable and no relocation bucket is configured"
            )
        return local_ref
