"""Partial-success waiting across fan-out siblings.

The waiter checks every open sibling once per cycle, so "cycle N" means
the same thing for all of them. It returns as soon as every sibling is
terminal, or once a grace window of ``min_wait_cycles`` has elapsed since
the first sibling completed. Siblings still running at that point are
reported as pending and handed to the StatusPoller so they still reach a
terminal status of their own.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from avatarpipe.config import settings
from avatarpipe.errors import ErrorKind, ProviderRejection, timeout_message
from avatarpipe.orchestrator.cancellation import CancellationToken
from avatarpipe.orchestrator.poller import TRANSIENT_CHECK_ERRORS, CheckFn, StatusPoller, merge_tick
from avatarpipe.orchestrator.session import SessionStateManager
from avatarpipe.orchestrator.state import is_terminal, timeout_task
from avatarpipe.schemas.tasks import TaskError, TaskStatus
from avatarpipe.services.base import StatusReport

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.DOWNLOADED})

# Returned by _check when check_fn raised something unexpected
_CHECK_ERRORED = object()


@dataclass
class QuorumOutcome:
    """Sibling partition at the moment the waiter proceeded."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    cycles: int = 0
    first_success_cycle: Optional[int] = None
    budget_exhausted: bool = False

    @property
    def has_quorum(self) -> bool:
        return bool(self.succeeded)

    @property
    def is_complete(self) -> bool:
        return not self.failed and not self.pending


class QuorumWaiter:
    """Waits for a quorum of siblings with a bounded grace window.

    Args:
        state: Session state holding the sibling records
        interval: Seconds between cycles (settings.pipeline.poll_interval)
        min_wait_cycles: Grace cycles after the first success
        max_attempts: Global cycle budget for the whole fan-out
        poller: Receives siblings still running when the waiter proceeds
    """

    def __init__(
        self,
        state: SessionStateManager,
        *,
        interval: Optional[float] = None,
        min_wait_cycles: Optional[int] = None,
        max_attempts: Optional[int] = None,
        poller: Optional[StatusPoller] = None,
    ):
        self.state = state
        self.interval = settings.pipeline.poll_interval if interval is None else interval
        self.min_wait_cycles = (
            settings.pipeline.min_wait_cycles if min_wait_cycles is None else min_wait_cycles
        )
        self.max_attempts = (
            settings.pipeline.quorum_max_attempts if max_attempts is None else max_attempts
        )
        self.poller = poller

    async def wait(
        self,
        local_ids: Sequence[str],
        check_fn: CheckFn,
        *,
        token: Optional[CancellationToken] = None,
    ) -> QuorumOutcome:
        """Poll the siblings until the quorum rule lets the stage proceed.

        Args:
            local_ids: Sibling tasks, all already accepted by the provider
            check_fn: Provider status check shared by the siblings
            token: Checked once per cycle; raises RunCancelled when tripped

        Returns:
            QuorumOutcome; the caller decides what zero successes means
        """
        ids = list(local_ids)
        outcome = QuorumOutcome()
        if self._any_succeeded(ids):
            outcome.first_success_cycle = 0

        cycle = 0
        while True:
            open_ids = self._open(ids)
            if not open_ids:
                break
            if (
                outcome.first_success_cycle is not None
                and cycle - outcome.first_success_cycle >= self.min_wait_cycles
            ):
                logger.info(
                    f"Quorum grace window elapsed at cycle {cycle} "
                    f"(first success at {outcome.first_success_cycle}), "
                    f"proceeding without {len(open_ids)} sibling(s)"
                )
                break
            if cycle >= self.max_attempts:
                outcome.budget_exhausted = True
                break
            if token is not None:
                token.raise_if_cancelled()

            await asyncio.sleep(self.interval)
            cycle += 1

            reports = await asyncio.gather(*(self._check(i, check_fn) for i in open_ids))
            for local_id, report in zip(open_ids, reports):
                if report is None:
                    continue
                attempts = self.state.get_task(local_id).attempts + 1
                if report is _CHECK_ERRORED:
                    # Counts against the budget without touching the status
                    await self.state.update_task(
                        local_id,
                        lambda t: None if is_terminal(t.status)
                        else t.model_copy(update={"attempts": attempts}),
                    )
                    continue
                await self.state.update_task(
                    local_id, lambda t: merge_tick(t, report, attempts)
                )

            if outcome.first_success_cycle is None and self._any_succeeded(ids):
                outcome.first_success_cycle = cycle
                logger.info(f"First sibling completed at cycle {cycle}")

        outcome.cycles = cycle

        if outcome.budget_exhausted:
            message = timeout_message(cycle)
            for local_id in self._open(ids):
                await self.state.update_task(local_id, lambda t: timeout_task(t, message))
            await self.state.flush()
            logger.warning(f"Quorum budget of {self.max_attempts} cycles exhausted")

        for local_id in ids:
            task = self.state.get_task(local_id)
            if task is None:
                continue
            if task.status in SUCCESS_STATUSES:
                outcome.succeeded.append(local_id)
            elif is_terminal(task.status):
                outcome.failed.append(local_id)
            else:
                outcome.pending.append(local_id)

        if outcome.pending and self.poller is not None:
            for local_id in outcome.pending:
                task = self.state.get_task(local_id)
                self.poller.start(
                    local_id,
                    check_fn,
                    max_attempts=settings.pipeline.attempts_for(task.kind.value),
                )

        logger.info(
            f"Quorum result after {cycle} cycles: {len(outcome.succeeded)} succeeded, "
            f"{len(outcome.failed)} failed, {len(outcome.pending)} pending"
        )
        return outcome

    def _open(self, ids: list[str]) -> list[str]:
        open_ids = []
        for local_id in ids:
            task = self.state.get_task(local_id)
            if task is not None and not is_terminal(task.status):
                open_ids.append(local_id)
        return open_ids

    def _any_succeeded(self, ids: list[str]) -> bool:
        for local_id in ids:
            task = self.state.get_task(local_id)
            if task is not None and task.status in SUCCESS_STATUSES:
                return True
        return False

    async def _check(self, local_id: str, check_fn: CheckFn) -> Any:
        task = self.state.get_task(local_id)
        try:
            return await check_fn(task.id)
        except ProviderRejection as e:
            return StatusReport(
                status=TaskStatus.FAILED,
                error=TaskError(kind=ErrorKind.PROVIDER_REJECTION, message=e.message),
            )
        except TRANSIENT_CHECK_ERRORS as e:
            logger.warning(f"Transient status check failure for {local_id}: {e}")
            return None
        except Exception as e:
            logger.exception(f"Unexpected status check failure for {local_id}: {e}")
            return _CHECK_ERRORED
