"""Orchestrator facade for one session.

Wires the session state, poller, dispatcher, limiters, quorum waiter and
cancellation controller together and exposes the commands the UI surface
issues: start_run, submit_batch, generate_avatar_images, cancel_task,
cancel_run and restore.
"""

import logging
import random
from typing import Any, Callable, Optional, Sequence

from avatarpipe.config import settings
from avatarpipe.db.store import SessionStore
from avatarpipe.errors import ConfigurationError
from avatarpipe.orchestrator.cancellation import CancellationController
from avatarpipe.orchestrator.dispatch import TaskDispatcher
from avatarpipe.orchestrator.limiter import Admission, ConcurrencyLimiter, ReleaseFn
from avatarpipe.orchestrator.pipeline import PipelineCoordinator, RunContext
from avatarpipe.orchestrator.poller import StatusPoller
from avatarpipe.orchestrator.quorum import SUCCESS_STATUSES, QuorumWaiter
from avatarpipe.orchestrator.session import (
    RestorePlan,
    SessionStateManager,
    dedupe_tasks,
    mark_run_interrupted,
    plan_restore,
)
from avatarpipe.orchestrator.stages import (
    AUDIO_ASSET_PROVIDER,
    AvatarPipelineServices,
    avatar_video_stages,
    await_terminal,
    download_image,
    download_video,
)
from avatarpipe.schemas.requests import (
    AvatarImageReport,
    AvatarImageRequest,
    AvatarVideoRequest,
    BatchRequest,
    GeneratedImage,
)
from avatarpipe.schemas.session import PipelineRun, SessionSnapshot
from avatarpipe.schemas.tasks import TaskKind, TaskRecord, TaskResult, TaskStatus
from avatarpipe.services.asset_relocator import build_relocator
from avatarpipe.services.base import AssetRelocator
from avatarpipe.services.file_manager import FileManager
from avatarpipe.services.registry import ProviderRegistry, build_registry
from avatarpipe.services.runway_client import MAX_SEED

logger = logging.getLogger(__name__)

BATCH_PROVIDER = "seedance_i2v"
AVATAR_IMAGE_PROVIDER = "runway_image"


class Orchestrator:
    """All orchestration components bound to one session.

    Args:
        store: SessionStore the session snapshot lives in
        session_id: Session to operate on
        providers: Provider registry (built from settings when omitted)
        relocator: Asset relocation for the image-to-video batch flow
        avatars: Photo-avatar API used by the group/looks stages
        files: Artifact directory manager
        poll_interval: Seconds between status checks
        min_wait_cycles: Quorum grace window
        quorum_max_attempts: Quorum cycle budget
        concurrency_cap: Admission cap for uploads, batch submissions and
            avatar image generations
        auto_download: Fetch completed videos into the session directory
        progress_callback: Receives "<stage>..." lines as runs advance
    """

    def __init__(
        self,
        store: SessionStore,
        session_id: str,
        *,
        providers: Optional[ProviderRegistry] = None,
        relocator: Optional[AssetRelocator] = None,
        avatars: Any = None,
        files: Optional[FileManager] = None,
        poll_interval: Optional[float] = None,
        min_wait_cycles: Optional[int] = None,
        quorum_max_attempts: Optional[int] = None,
        concurrency_cap: int = 0,
        auto_download: Optional[bool] = None,
        debounce_seconds: Optional[float] = None,
        min_write_interval: Optional[float] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        self.session_id = session_id
        self.state = SessionStateManager(
            store,
            session_id,
            debounce_seconds=debounce_seconds,
            min_write_interval=min_write_interval,
        )
        self._owns_providers = providers is None
        self.providers = build_registry() if providers is None else providers
        self.poller = StatusPoller(self.state, interval=poll_interval)
        self.dispatcher = TaskDispatcher(
            self.state, self.providers, self.poller, relocator or build_relocator()
        )
        self.upload_limiter = ConcurrencyLimiter(
            self.state, self.dispatcher.dispatch, cap=concurrency_cap, name="uploads"
        )
        self.batch_limiter = ConcurrencyLimiter(
            self.state, self._dispatch_batch, cap=concurrency_cap, name="i2v"
        )
        self.image_limiter = ConcurrencyLimiter(
            self.state, self.dispatcher.dispatch, cap=concurrency_cap, name="avatar-images"
        )
        self.quorum = QuorumWaiter(
            self.state,
            interval=poll_interval,
            min_wait_cycles=min_wait_cycles,
            max_attempts=quorum_max_attempts,
            poller=self.poller,
        )
        self.cancellation = CancellationController(
            self.state,
            self.poller,
            self.providers,
            limiters=[self.upload_limiter, self.batch_limiter, self.image_limiter],
        )
        self.avatars = avatars
        self.files = files or FileManager()
        self.auto_download = settings.pipeline.auto_download if auto_download is None else auto_download
        self.progress_callback = progress_callback
        # Runs executing in this process; restore() leaves them alone
        self._executing: set[str] = set()

    async def open(self, name: str = "") -> SessionSnapshot:
        """Load (or create) the session snapshot."""
        return await self.state.load(name)

    @property
    def snapshot(self) -> SessionSnapshot:
        return self.state.snapshot

    def subscribe(self, callback: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        return self.state.subscribe(callback)

    # -- avatar-video runs ---------------------------------------------------

    def require_avatar_providers(self) -> None:
        """Raise ConfigurationError naming every provider the avatar chain lacks."""
        missing = []
        for kind in (TaskKind.AUDIO, TaskKind.IMAGE, TaskKind.MOTION, TaskKind.VIDEO):
            try:
                self.providers.for_kind(kind)
            except ConfigurationError as e:
                missing.append(e.message)
        if AUDIO_ASSET_PROVIDER not in self.providers:
            missing.append(f"No provider named {AUDIO_ASSET_PROVIDER!r} is configured")
        if missing:
            raise ConfigurationError("; ".join(missing))

    async def start_run(self, request: AvatarVideoRequest) -> PipelineRun:
        """Record a new run; execute() drives it.

        Raises:
            ConfigurationError: A provider the chain needs is not configured;
                nothing is recorded in that case
        """
        self.require_avatar_providers()
        run = PipelineRun(request=request.model_dump(mode="json"))
        await self.state.put_run(run, flush=True)
        self._executing.add(run.run_id)
        self.cancellation.token_for(run.run_id)
        logger.info(f"Session {self.session_id}: run {run.run_id} started")
        return run

    async def execute(self, run: PipelineRun) -> PipelineRun:
        """Run the avatar-video chain for a run created by start_run()."""
        if self.avatars is None:
            from avatarpipe.services.heygen_client import get_heygen_client

            self.avatars = get_heygen_client()

        ctx = RunContext(
            run_id=run.run_id,
            request=AvatarVideoRequest.model_validate(run.request),
            state=self.state,
            token=self.cancellation.token_for(run.run_id),
            services=AvatarPipelineServices(
                dispatcher=self.dispatcher,
                providers=self.providers,
                poller=self.poller,
                quorum=self.quorum,
                upload_limiter=self.upload_limiter,
                avatars=self.avatars,
                files=self.files,
                auto_download=self.auto_download,
            ),
        )
        coordinator = PipelineCoordinator(self.state, avatar_video_stages(), self.progress_callback)
        self._executing.add(run.run_id)
        try:
            return await coordinator.execute(run, ctx)
        finally:
            self._executing.discard(run.run_id)
            self.cancellation.forget(run.run_id)

    async def run(self, request: AvatarVideoRequest) -> PipelineRun:
        """Start and execute a run to completion."""
        return await self.execute(await self.start_run(request))

    # -- image-to-video batches ----------------------------------------------

    async def submit_batch(self, batch: BatchRequest) -> list[tuple[TaskRecord, Admission]]:
        """Admit one image-to-video task per image through the batch limiter.

        Local image references are relocated when each task is actually
        dispatched, not here.
        """
        if BATCH_PROVIDER not in self.providers:
            raise ConfigurationError(f"No provider named {BATCH_PROVIDER!r} is configured")

        tasks = [
            TaskRecord(
                kind=TaskKind.VIDEO,
                provider=BATCH_PROVIDER,
                label=image.filename,
                input={
                    "prompt": batch.prompt,
                    "image_url": image.url,
                    "duration": batch.duration,
                    "aspect_ratio": batch.aspect_ratio,
                    "seed": batch.seed,
                },
            )
            for image in batch.images
        ]
        for task in tasks:
            await self.state.put_task(task)
        await self.state.flush()

        admissions = []
        for task in tasks:
            admissions.append((task, await self.batch_limiter.admit(task)))
        dispatched = sum(1 for _, a in admissions if a == Admission.DISPATCHED)
        queued = sum(1 for _, a in admissions if a == Admission.QUEUED)
        logger.info(f"Batch of {len(tasks)}: {dispatched} dispatched, {queued} queued")
        return admissions

    async def _dispatch_batch(self, task: TaskRecord, release: ReleaseFn) -> bool:
        return await self.dispatcher.dispatch(task, self._batch_terminal(release))

    def _batch_terminal(self, release: ReleaseFn) -> ReleaseFn:
        async def _on_terminal(local_id: str) -> None:
            await release(local_id)
            if self.auto_download:
                await self.download_video(local_id)

        return _on_terminal

    # -- avatar image generation ---------------------------------------------

    async def submit_avatar_images(
        self, request: AvatarImageRequest
    ) -> list[tuple[TaskRecord, Admission]]:
        """Admit ``image_count`` independent generations through the image limiter.

        Each generation carries its own seed so the candidates differ.
        """
        if AVATAR_IMAGE_PROVIDER not in self.providers:
            raise ConfigurationError(f"No provider named {AVATAR_IMAGE_PROVIDER!r} is configured")

        tasks = [
            TaskRecord(
                kind=TaskKind.IMAGE,
                provider=AVATAR_IMAGE_PROVIDER,
                label=f"avatar {i + 1}",
                input={
                    "prompt": request.prompt,
                    "aspect_ratio": request.aspect_ratio,
                    "reference_images": list(request.reference_images),
                    "seed": random.randint(0, MAX_SEED),
                },
            )
            for i in range(request.image_count)
        ]
        for task in tasks:
            await self.state.put_task(task)
        await self.state.flush()

        admissions = [(task, await self.image_limiter.admit(task)) for task in tasks]
        logger.info(
            f"Avatar images: {len(tasks)} requested, "
            f"{sum(1 for _, a in admissions if a == Admission.FAILED)} rejected at submit"
        )
        return admissions

    async def collect_avatar_images(self, local_ids: Sequence[str]) -> AvatarImageReport:
        """Wait for the generations to finish and report what succeeded.

        Completed images are downloaded into the session directory when
        auto_download is set. A failed generation never fails the others.
        """
        report = AvatarImageReport(requested=len(local_ids))
        for task in await await_terminal(self.state, local_ids):
            if task.status not in SUCCESS_STATUSES:
                report.failed.append(task.local_id)
                continue
            if self.auto_download:
                task = await download_image(self.state, self.files, task.local_id) or task
            result = task.result or TaskResult()
            report.images.append(
                GeneratedImage(
                    task_id=task.local_id,
                    url=result.url,
                    local_path=result.local_path,
                    seed=task.input.get("seed"),
                )
            )
        if report.is_partial:
            logger.warning(f"Partially successful: {report.generated}/{report.requested} images generated")
        else:
            logger.info(f"Avatar images: {report.generated}/{report.requested} generated")
        return report

    async def generate_avatar_images(self, request: AvatarImageRequest) -> AvatarImageReport:
        """Submit and collect in one call."""
        admissions = await self.submit_avatar_images(request)
        return await self.collect_avatar_images([task.local_id for task, _ in admissions])

    # -- cancellation --------------------------------------------------------

    async def cancel_task(self, local_id: str, reason: str = "Cancelled by user") -> bool:
        return await self.cancellation.cancel_task(local_id, reason)

    async def cancel_run(self, run_id: str, reason: str = "Cancelled by user") -> list[str]:
        return await self.cancellation.cancel_run(run_id, reason)

    # -- downloads -----------------------------------------------------------

    async def download_video(self, local_id: str) -> Optional[TaskRecord]:
        return await download_video(self.state, self.files, local_id)

    # -- reload --------------------------------------------------------------

    def _limiter_for(self, task: TaskRecord) -> Optional[ConcurrencyLimiter]:
        if task.provider == BATCH_PROVIDER:
            return self.batch_limiter
        if task.provider == AVATAR_IMAGE_PROVIDER:
            return self.image_limiter
        if task.kind == TaskKind.IMAGE:
            return self.upload_limiter
        return None

    def _is_live(self, task: TaskRecord) -> bool:
        """True for tasks this process is already driving."""
        return (
            task.run_id in self._executing
            or self.dispatcher.is_submitting(task.local_id)
            or self.poller.is_polling(task.local_id)
            or any(
                limiter.owns(task.local_id)
                for limiter in (self.upload_limiter, self.batch_limiter, self.image_limiter)
            )
        )

    async def restore(self) -> RestorePlan:
        """Reconcile a freshly loaded snapshot and resume its in-flight work.

        - Duplicate records of one provider task are merged
        - Runs that were executing are closed as interrupted
        - Submitted/processing tasks resume polling from their persisted
          attempt count
        - Queued tasks are re-admitted
        - Completed videos are downloaded (when auto_download is set)

        Safe to call on a live session: tasks this process is already
        submitting, polling, holding in a limiter or running as part of an
        executing run are left alone.
        """
        merged: list[str] = []
        self.state.mutate(lambda snapshot: merged.extend(dedupe_tasks(snapshot)))
        plan = plan_restore(self.state.snapshot, auto_download=self.auto_download)
        plan.merged_duplicates = merged
        plan.interrupted_runs = [r for r in plan.interrupted_runs if r not in self._executing]
        plan.resume_polling = [
            i for i in plan.resume_polling if not self._is_live(self.state.get_task(i))
        ]
        plan.requeue = [i for i in plan.requeue if not self._is_live(self.state.get_task(i))]

        for run_id in plan.interrupted_runs:
            await self.state.update_run(run_id, mark_run_interrupted)
        await self.state.flush()

        for local_id in plan.resume_polling:
            task = self.state.get_task(local_id)
            on_terminal = None
            limiter = self._limiter_for(task)
            if limiter is not None:
                limiter.adopt(local_id)
                on_terminal = limiter.release
                if limiter is self.batch_limiter:
                    on_terminal = self._batch_terminal(limiter.release)
            try:
                self.dispatcher.track(task, on_terminal=on_terminal)
            except ConfigurationError as e:
                logger.error(f"Cannot resume polling {local_id}: {e.message}")

        for local_id in plan.requeue:
            task = self.state.get_task(local_id)
            if task is None or task.status != TaskStatus.QUEUED:
                continue
            limiter = self._limiter_for(task)
            if limiter is not None:
                await limiter.admit(task)
            else:
                await self.dispatcher.dispatch(task)

        for local_id in plan.download:
            await self.download_video(local_id)

        logger.info(
            f"Restored session {self.session_id}: {len(plan.resume_polling)} polling, "
            f"{len(plan.requeue)} re-admitted, {len(plan.download)} downloads, "
            f"{len(plan.interrupted_runs)} interrupted run(s), "
            f"{len(plan.merged_duplicates)} duplicate(s) merged"
        )
        return plan

    async def close(self) -> None:
        """Stop polling, persist the snapshot and release provider clients."""
        await self.poller.stop_all()
        await self.cancellation.drain()
        await self.state.close()
        if self._owns_providers:
            await self.providers.aclose()
