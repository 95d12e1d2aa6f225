"""Per-task status polling with a bounded attempt budget.

One asyncio task per tracked TaskRecord: sleep, check, merge the report
into the session state, repeat until the task is terminal or the attempt
budget runs out. Transient check failures are logged and retried on the
next tick without consuming an attempt.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

import httpx

from avatarpipe.config import settings
from avatarpipe.errors import ErrorKind, ProviderRejection, TransientNetworkError, timeout_message
from avatarpipe.orchestrator.session import SessionStateManager
from avatarpipe.orchestrator.state import is_terminal, merge_report, timeout_task
from avatarpipe.schemas.tasks import TaskError, TaskRecord, TaskStatus
from avatarpipe.services.base import StatusReport

logger = logging.getLogger(__name__)

CheckFn = Callable[[str], Awaitable[StatusReport]]
TerminalCallback = Callable[[TaskRecord], Union[Awaitable[None], None]]

# Failures of a single check that say nothing about the task itself
TRANSIENT_CHECK_ERRORS = (TransientNetworkError, httpx.TransportError, ValueError)


def merge_tick(task: TaskRecord, report: StatusReport, attempts: int) -> Optional[TaskRecord]:
    """Merge one poll tick into a task and record the attempt count.

    Stale or backwards reports still count the attempt; terminal tasks are
    left untouched.
    """
    if is_terminal(task.status):
        return None
    merged = merge_report(task, report) or task
    return merged.model_copy(update={"attempts": attempts})


class StatusPoller:
    """Drives status checks for in-flight tasks.

    Args:
        state: Session state the reports are merged into
        interval: Default seconds between checks (settings.pipeline.poll_interval)
    """

    def __init__(self, state: SessionStateManager, *, interval: Optional[float] = None):
        self.state = state
        self.interval = settings.pipeline.poll_interval if interval is None else interval
        self._loops: dict[str, asyncio.Task] = {}
        self._callbacks: dict[str, list[TerminalCallback]] = {}

    def start(
        self,
        local_id: str,
        check_fn: CheckFn,
        *,
        max_attempts: int,
        interval: Optional[float] = None,
        on_terminal: Optional[TerminalCallback] = None,
    ) -> asyncio.Task:
        """Begin polling a task; a second start for the same task is a no-op.

        Args:
            local_id: Task to poll; it must already carry a provider id
            check_fn: Provider status check, called with the provider id
            max_attempts: Non-terminal checks allowed before the task times out
            interval: Seconds between checks, overriding the default
            on_terminal: Called once with the final record

        Returns:
            The asyncio task running the poll loop
        """
        if on_terminal is not None:
            self._callbacks.setdefault(local_id, []).append(on_terminal)

        existing = self._loops.get(local_id)
        if existing is not None and not existing.done():
            logger.debug(f"Task {local_id} already polling, start ignored")
            return existing

        loop_task = asyncio.create_task(
            self._poll_loop(
                local_id,
                check_fn,
                max_attempts,
                self.interval if interval is None else interval,
            ),
            name=f"poll-{local_id}",
        )
        self._loops[local_id] = loop_task
        return loop_task

    def is_polling(self, local_id: str) -> bool:
        loop_task = self._loops.get(local_id)
        return loop_task is not None and not loop_task.done()

    async def wait(self, local_id: str) -> Optional[TaskRecord]:
        """Wait for a poll loop to finish and return the task's final record."""
        loop_task = self._loops.get(local_id)
        if loop_task is not None:
            try:
                await asyncio.shield(loop_task)
            except asyncio.CancelledError:
                if not loop_task.cancelled():
                    raise
        return self.state.get_task(local_id)

    async def stop(self, local_id: str) -> None:
        """Stop polling a task without touching its status."""
        loop_task = self._loops.pop(local_id, None)
        self._callbacks.pop(local_id, None)
        if loop_task is None or loop_task.done():
            return
        loop_task.cancel()
        try:
            await loop_task
        except asyncio.CancelledError:
            pass

    async def stop_all(self) -> None:
        for local_id in list(self._loops):
            await self.stop(local_id)

    # ------------------------------------------------------------------

    async def _poll_loop(
        self,
        local_id: str,
        check_fn: CheckFn,
        max_attempts: int,
        interval: float,
    ) -> Optional[TaskRecord]:
        task = self.state.get_task(local_id)
        if task is None:
            logger.warning(f"Task {local_id} vanished before polling started")
            return None
        attempts = task.attempts
        logger.info(
            f"Polling {task.kind.value} task {local_id} (provider id {task.id}, "
            f"{attempts}/{max_attempts} attempts used)"
        )

        while True:
            await asyncio.sleep(interval)

            task = self.state.get_task(local_id)
            if task is None:
                return None
            if is_terminal(task.status):
                # Cancelled or completed elsewhere
                await self._fire_terminal(task)
                return task

            try:
                report = await check_fn(task.id)
            except ProviderRejection as e:
                report = StatusReport(
                    status=TaskStatus.FAILED,
                    error=TaskError(kind=ErrorKind.PROVIDER_REJECTION, message=e.message),
                )
            except TRANSIENT_CHECK_ERRORS as e:
                logger.warning(f"Transient status check failure for {local_id}: {e}")
                continue
            except Exception as e:
                logger.exception(f"Unexpected status check failure for {local_id}: {e}")
                attempts += 1
                report = None

            if report is not None:
                attempts += 1
                task = await self.state.update_task(
                    local_id, lambda t: merge_tick(t, report, attempts)
                ) or self.state.get_task(local_id)

            if task is None:
                return None
            if is_terminal(task.status):
                logger.info(f"Task {local_id} reached {task.status.value} after {attempts} checks")
                await self.state.flush()
                await self._fire_terminal(task)
                return task

            if attempts >= max_attempts:
                message = timeout_message(attempts)
                timed_out = await self.state.update_task(
                    local_id, lambda t: timeout_task(t, message), flush=True
                )
                final = timed_out or self.state.get_task(local_id)
                logger.warning(f"Task {local_id} timed out: {message}")
                await self._fire_terminal(final)
                return final

    async def _fire_terminal(self, task: Optional[TaskRecord]) -> None:
        if task is None:
            return
        self._loops.pop(task.local_id, None)
        for callback in self._callbacks.pop(task.local_id, []):
            try:
                result = callback(task)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Terminal callback failed for {task.local_id}: {e}")
