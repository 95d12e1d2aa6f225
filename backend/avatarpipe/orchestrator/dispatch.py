"""Submission of queued tasks to their provider.

The dispatcher is the single place a QUEUED task becomes SUBMITTED. It
relocates local asset references just before submission, so restored
queued tasks never carry stale URLs, retries transient submit failures,
records the provider id and hands the task to the StatusPoller.
"""

import logging
from typing import Any, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from avatarpipe.config import settings
from avatarpipe.errors import AvatarPipeError, ErrorKind, TransientNetworkError
from avatarpipe.orchestrator.limiter import ReleaseFn
from avatarpipe.orchestrator.poller import StatusPoller
from avatarpipe.orchestrator.session import SessionStateManager
from avatarpipe.orchestrator.state import is_terminal, merge_report, transition
from avatarpipe.schemas.tasks import TaskError, TaskRecord, TaskStatus
from avatarpipe.services.base import AssetRelocator, PassthroughRelocator, ProviderClient
from avatarpipe.services.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class TaskDispatcher:
    """Submits tasks and starts their polls.

    Args:
        state: Session state holding the task records
        providers: Registry resolving each task to its provider client
        poller: StatusPoller used for asynchronous providers
        relocator: Makes local inputs publicly reachable before submit
    """

    def __init__(
        self,
        state: SessionStateManager,
        providers: ProviderRegistry,
        poller: StatusPoller,
        relocator: Optional[AssetRelocator] = None,
    ):
        self.state = state
        self.providers = providers
        self.poller = poller
        self.relocator = relocator or PassthroughRelocator()
        self._submitting: set[str] = set()

    def is_submitting(self, local_id: str) -> bool:
        """True while a submit for ``local_id`` is in flight."""
        return local_id in self._submitting

    async def dispatch(
        self,
        task: TaskRecord,
        on_terminal: Optional[ReleaseFn] = None,
        *,
        poll: bool = True,
    ) -> bool:
        """Submit one QUEUED task.

        A second dispatch of a task whose submit is still in flight is a
        no-op, so the provider never sees the same task twice.

        Args:
            task: The task to submit
            on_terminal: Called with the task's local_id once it is terminal
            poll: Start a StatusPoller loop for the accepted task; False when
                the caller polls it itself (quorum siblings)

        Returns:
            True when the provider accepted the task, False when the
            submission failed (the task is then FAILED).
        """
        if task.local_id in self._submitting:
            logger.debug(f"Task {task.local_id} is already being submitted")
            return True
        self._submitting.add(task.local_id)
        try:
            return await self._dispatch(task, on_terminal, poll)
        finally:
            self._submitting.discard(task.local_id)

    async def _dispatch(self, task: TaskRecord, on_terminal: Optional[ReleaseFn], poll: bool) -> bool:
        try:
            provider = self.providers.for_task(task)
            payload = await self._relocate_inputs(provider, task.input)
            submitted = await self._submit_with_retry(provider, payload)
        except AvatarPipeError as e:
            await self._fail(task.local_id, e.kind, e.message)
            return False
        except Exception as e:
            logger.exception(f"Unexpected submit failure for {task.local_id}")
            await self._fail(task.local_id, ErrorKind.TRANSIENT_NETWORK, str(e))
            return False

        updated = await self.state.update_task(
            task.local_id,
            lambda t: transition(
                t, TaskStatus.SUBMITTED, provider_id=submitted.provider_task_id
            ) if t.status == TaskStatus.QUEUED else None,
            flush=True,
        )
        if updated is None:
            # Cancelled while the submission was in flight
            current = self.state.get_task(task.local_id)
            now = current.status.value if current else "missing"
            logger.info(
                f"Task {task.local_id} left QUEUED during submit (now {now}); "
                f"provider id {submitted.provider_task_id} dropped"
            )
            if current is not None and current.status == TaskStatus.CANCELLED:
                try:
                    await provider.cancel(submitted.provider_task_id)
                except Exception as e:
                    logger.warning(f"Provider cancel of {submitted.provider_task_id} failed: {e}")
            if on_terminal is not None:
                await on_terminal(task.local_id)
            return True

        logger.info(
            f"Submitted {task.kind.value} task {task.local_id} to {provider.name} "
            f"as {submitted.provider_task_id}"
        )

        if submitted.report is not None and submitted.report.is_terminal:
            done = await self.state.update_task(
                task.local_id, lambda t: merge_report(t, submitted.report), flush=True
            )
            if on_terminal is not None and done is not None and is_terminal(done.status):
                await on_terminal(task.local_id)
            return True

        if poll:
            self.track(updated, on_terminal=on_terminal)
        return True

    def track(self, task: TaskRecord, on_terminal: Optional[ReleaseFn] = None) -> None:
        """Start (or join) the status poll for an already-submitted task."""
        provider = self.providers.for_task(task)

        async def _release(record: TaskRecord) -> None:
            if on_terminal is not None:
                await on_terminal(record.local_id)

        self.poller.start(
            task.local_id,
            provider.check_status,
            max_attempts=settings.pipeline.attempts_for(task.kind.value),
            on_terminal=_release if on_terminal is not None else None,
        )

    async def _relocate_inputs(self, provider: ProviderClient, payload: dict[str, Any]) -> dict[str, Any]:
        if not provider.relocatable_inputs:
            return payload
        relocated = dict(payload)
        for key in provider.relocatable_inputs:
            value = relocated.get(key)
            if isinstance(value, str):
                relocated[key] = await self.relocator.ensure_publicly_reachable(value)
            elif isinstance(value, list):
                relocated[key] = [
                    await self.relocator.ensure_publicly_reachable(v) for v in value
                ]
        return relocated

    async def _submit_with_retry(self, provider: ProviderClient, payload: dict[str, Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.providers.submit_retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(TransientNetworkError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await provider.submit(payload)

    async def _fail(self, local_id: str, kind: ErrorKind, message: str) -> None:
        logger.warning(f"Submission of {local_id} failed ({kind.value}): {message}")
        await self.state.update_task(
            local_id,
            lambda t: transition(
                t, TaskStatus.FAILED, error=TaskError(kind=kind, message=message)
            ),
            flush=True,
        )
