"""Admission control for providers with a concurrent-job cap.

At most ``cap`` tasks may be in flight (SUBMITTED or PROCESSING) at once.
Excess tasks wait in FIFO order and are dispatched as slots free up. Slot
bookkeeping happens synchronously, so concurrent terminal callbacks can
never over-dispatch.
"""

import logging
from collections import deque
from enum import Enum
from typing import Awaitable, Callable

from avatarpipe.config import settings
from avatarpipe.orchestrator.session import SessionStateManager
from avatarpipe.schemas.tasks import TaskRecord, TaskStatus

logger = logging.getLogger(__name__)

# dispatch(task, on_terminal) submits the task and arranges for
# on_terminal(local_id) to run once it leaves the provider's slot
ReleaseFn = Callable[[str], Awaitable[None]]
DispatchFn = Callable[[TaskRecord, ReleaseFn], Awaitable[bool]]


class Admission(str, Enum):
    DISPATCHED = "dispatched"
    QUEUED = "queued"
    FAILED = "failed"


class ConcurrencyLimiter:
    """FIFO admission queue in front of one capped provider.

    Args:
        state: Session state holding the task records
        dispatch: Coroutine that submits one task; returns False when the
            submission failed and the slot should be freed immediately
        cap: Maximum in-flight tasks (settings.pipeline.concurrency_cap)
        name: Label used in log lines
    """

    def __init__(
        self,
        state: SessionStateManager,
        dispatch: DispatchFn,
        *,
        cap: int = 0,
        name: str = "limiter",
    ):
        self.state = state
        self.dispatch = dispatch
        self.cap = cap or settings.pipeline.concurrency_cap
        self.name = name
        self._queue: deque[str] = deque()
        self._active: set[str] = set()

    @property
    def in_flight(self) -> int:
        return len(self._active)

    @property
    def queued(self) -> list[str]:
        return list(self._queue)

    def owns(self, local_id: str) -> bool:
        return local_id in self._active or local_id in self._queue

    def adopt(self, local_id: str) -> None:
        """Count a task that is already in flight (restored after reload) against the cap."""
        self._active.add(local_id)

    async def admit(self, task: TaskRecord) -> Admission:
        """Dispatch ``task`` now if a slot is free, otherwise queue it.

        The task must already be in the session state with status QUEUED.
        """
        if task.local_id in self._active or task.local_id in self._queue:
            return Admission.DISPATCHED if task.local_id in self._active else Admission.QUEUED

        if len(self._active) >= self.cap:
            self._queue.append(task.local_id)
            logger.info(
                f"[{self.name}] cap {self.cap} reached, queued {task.local_id} "
                f"({len(self._queue)} waiting)"
            )
            return Admission.QUEUED

        ok = await self._dispatch_one(task.local_id)
        return Admission.DISPATCHED if ok else Admission.FAILED

    async def release(self, local_id: str) -> None:
        """Free a slot (the task reached a terminal status) and pump the queue."""
        if local_id in self._active:
            self._active.discard(local_id)
            logger.debug(f"[{self.name}] released {local_id} ({len(self._active)} in flight)")
        elif local_id in self._queue:
            # Cancelled while still waiting
            self._queue.remove(local_id)
        await self._pump()

    async def _pump(self) -> None:
        while self._queue and len(self._active) < self.cap:
            local_id = self._queue.popleft()
            task = self.state.get_task(local_id)
            if task is None or task.status != TaskStatus.QUEUED:
                logger.debug(f"[{self.name}] skipping {local_id}, no longer queued")
                continue
            await self._dispatch_one(local_id)

    async def _dispatch_one(self, local_id: str) -> bool:
        task = self.state.get_task(local_id)
        if task is None:
            return False
        # Claim the slot before awaiting so concurrent pumps see it taken
        self._active.add(local_id)
        try:
            ok = await self.dispatch(task, self.release)
        except Exception as e:
            logger.error(f"[{self.name}] dispatch of {local_id} raised: {e}")
            ok = False
        if not ok and local_id in self._active:
            self._active.discard(local_id)
            logger.info(f"[{self.name}] dispatch of {local_id} failed, slot freed")
            # Failed dispatches never reach release, so advance the queue here
            await self._pump()
        return ok
