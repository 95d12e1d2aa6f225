"""User-initiated cancellation of tasks and runs.

Cancelling stops local tracking first, records CANCELLED and persists it
immediately; the provider-side cancel is best effort and never blocks or
fails the local transition. Late reports for a cancelled task are ignored
by the state merge rule.
"""

import asyncio
import logging
from typing import Iterable, Optional

from avatarpipe.errors import ConfigurationError, ErrorKind, RunCancelled
from avatarpipe.orchestrator.limiter import ConcurrencyLimiter
from avatarpipe.orchestrator.poller import StatusPoller
from avatarpipe.orchestrator.session import SessionStateManager
from avatarpipe.orchestrator.state import is_terminal, transition
from avatarpipe.schemas.tasks import TaskError, TaskRecord, TaskStatus
from avatarpipe.services.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative stop signal checked between pipeline stages."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self.reason or "Cancelled by user")

    async def wait(self) -> None:
        await self._event.wait()


class CancellationController:
    """Cancels individual tasks and whole runs.

    Args:
        state: Session state holding the task records
        poller: StatusPoller whose loops are stopped on cancel
        providers: Registry used for the best-effort provider-side cancel
        limiters: Limiters whose slots or queue entries must be released
    """

    def __init__(
        self,
        state: SessionStateManager,
        poller: StatusPoller,
        providers: ProviderRegistry,
        limiters: Iterable[ConcurrencyLimiter] = (),
    ):
        self.state = state
        self.poller = poller
        self.providers = providers
        self.limiters = list(limiters)
        self._tokens: dict[str, CancellationToken] = {}
        self._remote_cancels: set[asyncio.Task] = set()

    def token_for(self, run_id: str) -> CancellationToken:
        token = self._tokens.get(run_id)
        if token is None:
            token = CancellationToken()
            self._tokens[run_id] = token
        return token

    def forget(self, run_id: str) -> None:
        self._tokens.pop(run_id, None)

    async def cancel_task(self, local_id: str, reason: str = "Cancelled by user") -> bool:
        """Cancel one task.

        Returns:
            True if the task moved to CANCELLED, False if it was unknown or
            already terminal (a completed task is never rewritten).
        """
        task = self.state.get_task(local_id)
        if task is None or is_terminal(task.status):
            return False

        await self.poller.stop(local_id)

        updated = await self.state.update_task(
            local_id,
            lambda t: transition(
                t, TaskStatus.CANCELLED, error=TaskError(kind=ErrorKind.CANCELLED, message=reason)
            ),
            flush=True,
        )
        if updated is None:
            # Reached a terminal status between the check and the stop
            return False
        logger.info(f"Cancelled {updated.kind.value} task {local_id}")

        if updated.id is not None:
            self._fire_remote_cancel(updated)

        for limiter in self.limiters:
            if limiter.owns(local_id):
                await limiter.release(local_id)
        return True

    async def cancel_run(self, run_id: str, reason: str = "Cancelled by user") -> list[str]:
        """Trip the run's token and cancel every open task it launched.

        Returns:
            local_ids of the tasks that were cancelled
        """
        self.token_for(run_id).cancel(reason)
        cancelled = []
        for task in self.state.snapshot.tasks_for_run(run_id):
            if not is_terminal(task.status) and await self.cancel_task(task.local_id, reason):
                cancelled.append(task.local_id)
        logger.info(f"Cancel requested for run {run_id}, {len(cancelled)} open task(s) cancelled")
        return cancelled

    async def drain(self) -> None:
        """Wait for outstanding provider-side cancel requests."""
        if self._remote_cancels:
            await asyncio.gather(*self._remote_cancels, return_exceptions=True)

    def _fire_remote_cancel(self, task: TaskRecord) -> None:
        try:
            provider = self.providers.for_task(task)
        except ConfigurationError:
            return
        provider_task_id = task.id

        async def _cancel() -> None:
            try:
                await provider.cancel(provider_task_id)
                logger.debug(f"Provider cancel sent for {provider_task_id}")
            except Exception as e:
                logger.warning(f"Provider cancel of {provider_task_id} failed: {e}")

        remote = asyncio.create_task(_cancel())
        self._remote_cancels.add(remote)
        remote.add_done_callback(self._remote_cancels.discard)
