"""The avatar-video stage chain.

select_voice → synthesize_audio → upload_assets → create_group → add_looks
→ add_motion → quorum_wait → upload_audio_asset → render_video → poll_videos

Each stage is a coroutine ``(ctx, stage_input) -> StageOutcome``. Stages that
launch provider work create TaskRecords in the session state and hand them
to the dispatcher; the PipelineCoordinator applies the success policy that
each StageDescriptor declares.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from avatarpipe.errors import AvatarPipeError, StageFailed
from avatarpipe.orchestrator.dispatch import TaskDispatcher
from avatarpipe.orchestrator.limiter import ConcurrencyLimiter
from avatarpipe.orchestrator.pipeline import (
    MinSuccess,
    RunContext,
    StageDescriptor,
    StageOutcome,
    raise_stage_failure,
)
from avatarpipe.orchestrator.poller import StatusPoller
from avatarpipe.orchestrator.quorum import SUCCESS_STATUSES, QuorumWaiter
from avatarpipe.orchestrator.session import SessionStateManager
from avatarpipe.orchestrator.state import is_terminal, transition
from avatarpipe.schemas.requests import AvatarVideoRequest
from avatarpipe.schemas.tasks import TaskKind, TaskRecord, TaskResult, TaskStatus
from avatarpipe.services.file_manager import FileManager
from avatarpipe.services.registry import ProviderRegistry
from avatarpipe.services.volcengine_tts import select_voice as choose_voice

logger = logging.getLogger(__name__)

AUDIO_ASSET_PROVIDER = "heygen_audio_asset"


@dataclass
class AvatarPipelineServices:
    """Collaborators the avatar-video stages need, carried on RunContext.services.

    ``avatars`` is the photo-avatar API (group creation, looks, listing);
    HeyGenClient in production.
    """

    dispatcher: TaskDispatcher
    providers: ProviderRegistry
    poller: StatusPoller
    quorum: QuorumWaiter
    upload_limiter: ConcurrencyLimiter
    avatars: Any
    files: FileManager
    auto_download: bool = True


# ---------------------------------------------------------------------------
# Task helpers
# ---------------------------------------------------------------------------

async def await_terminal(state: SessionStateManager, local_ids: Sequence[str]) -> list[TaskRecord]:
    """Wait until every listed task is terminal.

    Woken by snapshot changes rather than a timer, so it works for tasks
    driven by the poller, the limiter or a synchronous provider alike.
    """
    ids = list(local_ids)
    done = asyncio.Event()

    def _check(_snapshot=None) -> None:
        for local_id in ids:
            task = state.get_task(local_id)
            if task is not None and not is_terminal(task.status):
                return
        done.set()

    unsubscribe = state.subscribe(_check)
    try:
        _check()
        await done.wait()
    finally:
        unsubscribe()
    return [t for t in (state.get_task(i) for i in ids) if t is not None]


async def run_task(
    ctx: RunContext,
    kind: TaskKind,
    payload: dict[str, Any],
    *,
    provider: Optional[str] = None,
    label: Optional[str] = None,
) -> TaskRecord:
    """Create, submit and wait out a single task of the run."""
    services: AvatarPipelineServices = ctx.services
    task = TaskRecord(kind=kind, input=payload, provider=provider, run_id=ctx.run_id, label=label)
    await ctx.state.put_task(task, flush=True)
    await services.dispatcher.dispatch(task)
    final = await await_terminal(ctx.state, [task.local_id])
    return final[0] if final else task


async def launch_siblings(
    ctx: RunContext,
    kind: TaskKind,
    payloads: Sequence[dict[str, Any]],
    *,
    poll: bool,
    label: Optional[str] = None,
) -> tuple[list[str], list[str]]:
    """Submit fan-out siblings concurrently.

    Returns:
        (accepted local_ids, local_ids whose submission failed)
    """
    services: AvatarPipelineServices = ctx.services
    tasks = [
        TaskRecord(kind=kind, input=payload, run_id=ctx.run_id, label=label)
        for payload in payloads
    ]
    for task in tasks:
        await ctx.state.put_task(task)
    await ctx.state.flush()

    results = await asyncio.gather(
        *(services.dispatcher.dispatch(task, poll=poll) for task in tasks)
    )
    accepted = [t.local_id for t, ok in zip(tasks, results) if ok]
    rejected = [t.local_id for t, ok in zip(tasks, results) if not ok]
    logger.info(
        f"Run {ctx.run_id}: launched {len(accepted)} {kind.value} task(s), "
        f"{len(rejected)} rejected at submit"
    )
    return accepted, rejected


async def download_video(
    state: SessionStateManager, files: FileManager, local_id: str
) -> Optional[TaskRecord]:
    """Fetch a completed video into the session directory and mark it DOWNLOADED.

    Download errors are logged and leave the task COMPLETED with its
    provider URL intact.
    """
    return await _download_result(state, local_id, files.download_video, "video")


async def download_image(
    state: SessionStateManager, files: FileManager, local_id: str
) -> Optional[TaskRecord]:
    """Same as download_video, for generated images."""
    return await _download_result(state, local_id, files.download_image, "image")


async def _download_result(state, local_id, fetch, label) -> Optional[TaskRecord]:
    task = state.get_task(local_id)
    if task is None or task.status != TaskStatus.COMPLETED or task.result is None or not task.result.url:
        return task
    try:
        path = await fetch(state.session_id, local_id, task.result.url)
    except AvatarPipeError as e:
        logger.warning(f"Download of {label} {local_id} failed: {e.message}")
        return task

    return await state.update_task(
        local_id,
        lambda t: transition(t, TaskStatus.DOWNLOADED, result=TaskResult(local_path=str(path))),
        flush=True,
    ) or state.get_task(local_id)


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

async def select_voice_stage(ctx: RunContext, request: AvatarVideoRequest) -> StageOutcome:
    choice = choose_voice(request.voice_id, request.voice_style)
    logger.info(f"Run {ctx.run_id}: voice {choice.voice_type} ({choice.reasoning})")
    return StageOutcome(output={
        "voice_type": choice.voice_type,
        "reasoning": choice.reasoning,
        "fallback_used": choice.fallback_used,
    })


async def synthesize_audio_stage(ctx: RunContext, voice: dict) -> StageOutcome:
    services: AvatarPipelineServices = ctx.services
    request: AvatarVideoRequest = ctx.request
    output_path = services.files.audio_path(ctx.state.session_id, ctx.run_id)

    task = await run_task(
        ctx,
        TaskKind.AUDIO,
        {
            "text": request.script,
            "voice_type": voice["voice_type"],
            "speed": request.speed,
            "output_path": str(output_path),
        },
        label="speech",
    )
    if task.status != TaskStatus.COMPLETED:
        return StageOutcome(failed=[task.local_id])

    result = task.result or TaskResult()
    return StageOutcome(
        output={
            "audio_path": result.local_path or str(output_path),
            "duration": result.duration,
            "voice_type": result.extra.get("voice_type", voice["voice_type"]),
        },
        succeeded=[task.local_id],
    )


async def upload_assets_stage(ctx: RunContext, request: AvatarVideoRequest) -> StageOutcome:
    """Upload every avatar photo through the admission limiter."""
    services: AvatarPipelineServices = ctx.services
    tasks = [
        TaskRecord(kind=TaskKind.IMAGE, input={"source": image}, run_id=ctx.run_id, label=f"photo {i + 1}")
        for i, image in enumerate(request.images)
    ]
    for task in tasks:
        await ctx.state.put_task(task)
    await ctx.state.flush()

    for task in tasks:
        admission = await services.upload_limiter.admit(task)
        logger.debug(f"Upload {task.local_id}: {admission.value}")

    final = await await_terminal(ctx.state, [t.local_id for t in tasks])
    succeeded = [t for t in final if t.status in SUCCESS_STATUSES]
    failed = [t.local_id for t in final if t.status not in SUCCESS_STATUSES]

    image_keys = []
    for task in succeeded:
        extra = task.result.extra if task.result else {}
        image_keys.append(extra.get("image_key") or extra.get("asset_id") or task.id)

    return StageOutcome(
        output={"image_keys": image_keys, "asset_ids": [t.id for t in succeeded]},
        succeeded=[t.local_id for t in succeeded],
        failed=failed,
    )


async def create_group_stage(ctx: RunContext, uploads: dict) -> StageOutcome:
    services: AvatarPipelineServices = ctx.services
    request: AvatarVideoRequest = ctx.request
    image_keys = uploads["image_keys"]

    group = await services.avatars.create_avatar_group(request.avatar_name, image_keys[0])
    group_id = group.get("id") or group.get("group_id")
    if not group_id:
        raise StageFailed("create_group", "Avatar group creation returned no group id")
    logger.info(f"Run {ctx.run_id}: created avatar group {group_id}")
    return StageOutcome(output={"group_id": group_id, "image_keys": image_keys})


async def add_looks_stage(ctx: RunContext, group: dict) -> StageOutcome:
    services: AvatarPipelineServices = ctx.services
    request: AvatarVideoRequest = ctx.request
    group_id = group["group_id"]
    remaining = group["image_keys"][1:]

    if remaining:
        await services.avatars.add_looks(group_id, remaining, name=f"{request.avatar_name} look")
        logger.info(f"Run {ctx.run_id}: added {len(remaining)} look(s) to {group_id}")

    avatars = await services.avatars.list_group_avatars(group_id)
    avatar_ids = [a["id"] for a in avatars if a.get("id")]
    if not avatar_ids:
        raise StageFailed("add_looks", f"Avatar group {group_id} has no avatars")
    return StageOutcome(output={"group_id": group_id, "avatar_ids": avatar_ids})


async def add_motion_stage(ctx: RunContext, looks: dict) -> StageOutcome:
    accepted, rejected = await launch_siblings(
        ctx,
        TaskKind.MOTION,
        [{"avatar_id": avatar_id} for avatar_id in looks["avatar_ids"]],
        poll=False,
        label="motion",
    )
    return StageOutcome(output={"motion_tasks": accepted}, succeeded=accepted, failed=rejected)


async def quorum_wait_stage(ctx: RunContext, motion: dict) -> StageOutcome:
    """Wait for motion siblings with the quorum grace window."""
    services: AvatarPipelineServices = ctx.services
    local_ids = motion["motion_tasks"]
    check_fn = services.providers.for_kind(TaskKind.MOTION).check_status

    outcome = await services.quorum.wait(local_ids, check_fn, token=ctx.token)

    avatar_ids = []
    for local_id in outcome.succeeded:
        task = ctx.state.get_task(local_id)
        extra = task.result.extra if task.result else {}
        avatar_ids.append(extra.get("avatar_id") or task.id)

    return StageOutcome(
        output={"avatar_ids": avatar_ids, "cycles": outcome.cycles},
        succeeded=outcome.succeeded,
        failed=outcome.failed,
        pending=outcome.pending,
    )


async def upload_audio_asset_stage(ctx: RunContext, audio: dict) -> StageOutcome:
    task = await run_task(
        ctx,
        TaskKind.AUDIO,
        {"source": audio["audio_path"], "content_type": "audio/mpeg"},
        provider=AUDIO_ASSET_PROVIDER,
        label="audio asset",
    )
    if task.status != TaskStatus.COMPLETED:
        raise_stage_failure("upload_audio_asset", task.error, "Audio upload did not complete")

    extra = task.result.extra if task.result else {}
    return StageOutcome(
        output={"audio_asset_id": extra.get("asset_id") or task.id},
        succeeded=[task.local_id],
    )


async def render_video_stage(ctx: RunContext, inputs: dict) -> StageOutcome:
    """Submit one render per surviving avatar; each is polled independently."""
    request: AvatarVideoRequest = ctx.request
    payloads = [
        {
            "talking_photo_id": avatar_id,
            "audio_asset_id": inputs["audio_asset_id"],
            "title": f"{request.title} ({i + 1})" if len(inputs["avatar_ids"]) > 1 else request.title,
        }
        for i, avatar_id in enumerate(inputs["avatar_ids"])
    ]
    accepted, rejected = await launch_siblings(ctx, TaskKind.VIDEO, payloads, poll=True, label="video")
    return StageOutcome(output={"video_tasks": accepted}, succeeded=accepted, failed=rejected)


async def poll_videos_stage(ctx: RunContext, render: dict) -> StageOutcome:
    """Wait for every render, downloading finished videos when enabled."""
    services: AvatarPipelineServices = ctx.services
    final = await await_terminal(ctx.state, render["video_tasks"])

    videos = []
    succeeded, failed = [], []
    for task in final:
        if task.status == TaskStatus.COMPLETED and services.auto_download:
            task = await download_video(ctx.state, services.files, task.local_id) or task
        if task.status in SUCCESS_STATUSES:
            succeeded.append(task.local_id)
            result = task.result or TaskResult()
            videos.append({
                "local_id": task.local_id,
                "video_id": task.id,
                "url": result.url,
                "local_path": result.local_path,
                "thumbnail_url": result.thumbnail_url,
                "duration": result.duration,
            })
        else:
            failed.append(task.local_id)

    return StageOutcome(output={"videos": videos}, succeeded=succeeded, failed=failed)


def avatar_video_stages() -> list[StageDescriptor]:
    """The fixed avatar-video chain with its per-stage success policy."""
    return [
        StageDescriptor("select_voice", select_voice_stage),
        StageDescriptor("synthesize_audio", synthesize_audio_stage),
        StageDescriptor(
            "upload_assets",
            upload_assets_stage,
            min_success=MinSuccess.ANY,
            select_input=lambda ctx: ctx.request,
        ),
        StageDescriptor("create_group", create_group_stage),
        StageDescriptor("add_looks", add_looks_stage),
        StageDescriptor("add_motion", add_motion_stage, fan_out=True, min_success=MinSuccess.ANY),
        StageDescriptor("quorum_wait", quorum_wait_stage, fan_out=True, min_success=MinSuccess.ANY),
        StageDescriptor(
            "upload_audio_asset",
            upload_audio_asset_stage,
            select_input=lambda ctx: ctx.output_of("synthesize_audio"),
        ),
        StageDescriptor(
            "render_video",
            render_video_stage,
            fan_out=True,
            min_success=MinSuccess.ANY,
            select_input=lambda ctx: {
                **ctx.output_of("quorum_wait"),
                **ctx.output_of("upload_audio_asset"),
            },
        ),
        StageDescriptor("poll_videos", poll_videos_stage, fan_out=True, min_success=MinSuccess.ANY),
    ]
