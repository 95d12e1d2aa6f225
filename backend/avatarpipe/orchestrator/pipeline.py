"""Generic stage runner for multi-stage pipeline runs.

A pipeline is an ordered list of StageDescriptors. The coordinator runs
them one after another with:
- Cancellation checks at every stage boundary
- Abort on any failure of a mandatory (non fan-out) stage, error verbatim
- Partial-success handling for fan-out stages (NoQuorum on zero successes)
- Per-stage timing and StageResult persistence
- Progress callback interface for CLI/API integration
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from avatarpipe.errors import AvatarPipeError, ErrorKind, RunCancelled, StageFailed
from avatarpipe.orchestrator.cancellation import CancellationToken
from avatarpipe.orchestrator.session import SessionStateManager
from avatarpipe.schemas.session import PipelineRun, RunStatus, StageResult
from avatarpipe.schemas.tasks import TaskError, utcnow

logger = logging.getLogger(__name__)


class MinSuccess(str, Enum):
    """How many of a stage's tasks must succeed for the run to continue."""

    ALL = "all"
    ANY = "any"


@dataclass
class StageOutcome:
    """What a stage hands back to the runner.

    ``output`` feeds the next stage; the task lists hold local_ids of the
    TaskRecords the stage launched.
    """

    output: Any = None
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)


@dataclass
class RunContext:
    """Run-level context shared by every stage of one run."""

    run_id: str
    request: Any
    state: SessionStateManager
    token: CancellationToken
    outputs: dict[str, Any] = field(default_factory=dict)
    services: Any = None

    def output_of(self, stage_name: str) -> Any:
        if stage_name not in self.outputs:
            raise KeyError(f"Stage {stage_name!r} has not produced output")
        return self.outputs[stage_name]


StageFn = Callable[[RunContext, Any], Awaitable[StageOutcome]]
InputFn = Callable[[RunContext], Any]


@dataclass
class StageDescriptor:
    """One stage of a fixed pipeline shape.

    Attributes:
        name: Stage name recorded in PipelineRun.stages
        run: Coroutine executing the stage
        fan_out: True for stages launching independent sibling tasks
        min_success: ALL aborts on any failure; ANY proceeds with a non-empty subset
        select_input: Maps the run context to the stage input; defaults to
            the previous stage's output
    """

    name: str
    run: StageFn
    fan_out: bool = False
    min_success: MinSuccess = MinSuccess.ALL
    select_input: Optional[InputFn] = None


class PipelineCoordinator:
    """Runs a list of StageDescriptors against one PipelineRun.

    Args:
        state: Session state the run and its tasks live in
        stages: The fixed stage chain
        progress_callback: Optional callback for status updates
    """

    def __init__(
        self,
        state: SessionStateManager,
        stages: list[StageDescriptor],
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.state = state
        self.stages = stages
        self.progress_callback = progress_callback

    async def execute(self, run: PipelineRun, ctx: RunContext) -> PipelineRun:
        """Execute every stage in order and settle the run's final status.

        Raises:
            Exception: Re-raises unexpected failures after persisting the
                failed run state
        """
        run_id = run.run_id
        if self.state.get_run(run_id) is None:
            await self.state.put_run(run, flush=True)
        logger.info(f"Starting run {run_id} with {len(self.stages)} stages")

        partial = False
        previous: Optional[str] = None
        pipeline_start = time.monotonic()

        for stage in self.stages:
            if ctx.token.cancelled:
                return await self._finish_cancelled(run_id, ctx.token.reason, stage.name)

            if self.progress_callback:
                self.progress_callback(f"{stage.name}...")
            await self._begin_stage(run_id, stage.name)
            step_start = time.monotonic()

            try:
                if stage.select_input is not None:
                    stage_input = stage.select_input(ctx)
                else:
                    stage_input = ctx.outputs.get(previous) if previous else ctx.request
                outcome = await stage.run(ctx, stage_input)
            except RunCancelled as e:
                await self._end_stage(run_id, stage.name, StageOutcome(), step_start)
                return await self._finish_cancelled(run_id, e.message, stage.name)
            except AvatarPipeError as e:
                await self._end_stage(run_id, stage.name, StageOutcome(), step_start, e.kind, e.message)
                return await self._finish_failed(run_id, stage.name, e.kind, e.message)
            except Exception as e:
                logger.error(f"Run {run_id} failed at {stage.name}: {type(e).__name__}: {e}")
                message = f"{stage.name} failed: {type(e).__name__}: {e}"
                await self._end_stage(
                    run_id, stage.name, StageOutcome(), step_start, ErrorKind.PROVIDER_REJECTION, message
                )
                await self._finish_failed(run_id, stage.name, ErrorKind.PROVIDER_REJECTION, message)
                raise

            if ctx.token.cancelled:
                await self._end_stage(run_id, stage.name, outcome, step_start)
                return await self._finish_cancelled(run_id, ctx.token.reason, stage.name)

            verdict = self._judge(stage, outcome)
            if verdict is not None:
                kind, message = verdict
                await self._end_stage(run_id, stage.name, outcome, step_start, kind, message)
                return await self._finish_failed(run_id, stage.name, kind, message)

            await self._end_stage(run_id, stage.name, outcome, step_start)
            if outcome.failed or outcome.pending:
                partial = True
                warning = (
                    f"{ErrorKind.PARTIAL_FAILURE.value}: {stage.name} proceeded with "
                    f"{len(outcome.succeeded)} of "
                    f"{len(outcome.succeeded) + len(outcome.failed) + len(outcome.pending)} tasks"
                )
                await self.state.update_run(run_id, lambda r: r.warnings.append(warning))
                logger.warning(f"Run {run_id}: {warning}")

            ctx.outputs[stage.name] = outcome.output
            previous = stage.name

        final_status = RunStatus.PARTIALLY_SUCCEEDED if partial else RunStatus.SUCCEEDED

        def _complete(r: PipelineRun) -> None:
            r.status = final_status
            r.completed_at = utcnow()

        await self.state.update_run(run_id, _complete, flush=True)
        logger.info(
            f"Run {run_id} finished {final_status.value} in {time.monotonic() - pipeline_start:.2f}s"
        )
        return self.state.get_run(run_id)

    def _judge(self, stage: StageDescriptor, outcome: StageOutcome) -> Optional[tuple[ErrorKind, str]]:
        """Apply the stage's success policy; returns (kind, message) on failure."""
        if stage.fan_out or stage.min_success == MinSuccess.ANY:
            if outcome.succeeded or not (outcome.failed or outcome.pending):
                return None
            total = len(outcome.failed) + len(outcome.pending)
            detail = self._first_error(outcome.failed)
            message = f"No {stage.name} task succeeded ({total} launched)"
            if detail:
                message = f"{message}: {detail}"
            return ErrorKind.NO_QUORUM, message

        if outcome.failed or outcome.pending:
            task = self.state.get_task((outcome.failed or outcome.pending)[0])
            if task is not None and task.error is not None:
                return task.error.kind, task.error.message
            return ErrorKind.PROVIDER_REJECTION, f"{stage.name} did not complete"
        return None

    def _first_error(self, local_ids: list[str]) -> Optional[str]:
        for local_id in local_ids:
            task = self.state.get_task(local_id)
            if task is not None and task.error is not None:
                return task.error.message
        return None

    async def _begin_stage(self, run_id: str, name: str) -> None:
        def _begin(r: PipelineRun) -> None:
            r.stages.append(name)
            r.stage_results[name] = StageResult()

        await self.state.update_run(run_id, _begin)
        logger.info(f"Run {run_id}: starting {name}")

    async def _end_stage(
        self,
        run_id: str,
        name: str,
        outcome: StageOutcome,
        step_start: float,
        kind: Optional[ErrorKind] = None,
        message: Optional[str] = None,
    ) -> None:
        duration = time.monotonic() - step_start

        def _end(r: PipelineRun) -> None:
            result = r.stage_results.setdefault(name, StageResult())
            result.succeeded = list(outcome.succeeded)
            result.failed = list(outcome.failed)
            result.pending = list(outcome.pending)
            if isinstance(outcome.output, dict):
                result.output = outcome.output
            elif outcome.output is not None:
                result.output = {"value": outcome.output}
            if kind is not None:
                result.error = TaskError(kind=kind, message=message or "")
            result.completed_at = utcnow()
            r.log[name] = duration

        await self.state.update_run(run_id, _end)
        logger.info(f"Run {run_id}: {name} completed in {duration:.2f}s")

    async def _finish_failed(self, run_id: str, stage: str, kind: ErrorKind, message: str) -> PipelineRun:
        def _fail(r: PipelineRun) -> None:
            r.status = RunStatus.FAILED
            r.error = TaskError(kind=kind, message=message)
            r.completed_at = utcnow()

        await self.state.update_run(run_id, _fail, flush=True)
        logger.error(f"Run {run_id} failed at {stage} ({kind.value}): {message}")
        return self.state.get_run(run_id)

    async def _finish_cancelled(self, run_id: str, reason: Optional[str], stage: str) -> PipelineRun:
        def _cancel(r: PipelineRun) -> None:
            r.status = RunStatus.CANCELLED
            r.completed_at = utcnow()
            r.warnings.append(f"Cancelled at {stage}: {reason or 'Cancelled by user'}")

        await self.state.update_run(run_id, _cancel, flush=True)
        logger.info(f"Run {run_id} cancelled at {stage} boundary")
        return self.state.get_run(run_id)


def raise_stage_failure(stage: str, error: Optional[TaskError], fallback: str) -> None:
    """Raise StageFailed carrying a task's error verbatim."""
    if error is not None:
        raise StageFailed(stage, error.message, error.kind)
    raise StageFailed(stage, fallback)
