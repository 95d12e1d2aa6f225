"""Tests for the stage runner and the avatar-video chain end to end over fakes."""

import asyncio

import pytest

from avatarpipe.errors import ConfigurationError, ErrorKind, ProviderRejection, StageFailed
from avatarpipe.orchestrator.cancellation import CancellationToken
from avatarpipe.orchestrator.limiter import Admission
from avatarpipe.orchestrator.pipeline import (
    MinSuccess,
    PipelineCoordinator,
    RunContext,
    StageDescriptor,
    StageOutcome,
)
from avatarpipe.orchestrator.service import AVATAR_IMAGE_PROVIDER
from avatarpipe.schemas.requests import AvatarImageRequest, AvatarVideoRequest
from avatarpipe.schemas.session import PipelineRun, RunStatus
from avatarpipe.schemas.tasks import TaskKind, TaskStatus
from avatarpipe.services.registry import ProviderRegistry

from conftest import FakeAvatars, FakeProvider, avatar_providers, registry_of, wait_for

P, C, F = TaskStatus.PROCESSING, TaskStatus.COMPLETED, TaskStatus.FAILED

STAGE_NAMES = [
    "select_voice",
    "synthesize_audio",
    "upload_assets",
    "create_group",
    "add_looks",
    "add_motion",
    "quorum_wait",
    "upload_audio_asset",
    "render_video",
    "poll_videos",
]


def _request(**overrides) -> AvatarVideoRequest:
    fields = {
        "images": ["https://img.example.com/front.jpg", "https://img.example.com/side.jpg"],
        "script": "Welcome to the spring collection.",
        "voice_style": "narrator",
        "avatar_name": "Spring Host",
    }
    fields.update(overrides)
    return AvatarVideoRequest(**fields)


# ---------------------------------------------------------------------------
# PipelineCoordinator
# ---------------------------------------------------------------------------

def _ctx(state, run_id: str, token=None) -> RunContext:
    return RunContext(run_id=run_id, request={"n": 1}, state=state, token=token or CancellationToken())


async def _passthrough(ctx, value):
    return StageOutcome(output=value)


@pytest.mark.asyncio
async def test_stage_outputs_chain_and_timing_recorded(state):
    seen = []

    async def double(ctx, value):
        seen.append(value)
        return StageOutcome(output={"n": value["n"] * 2})

    progress = []
    coordinator = PipelineCoordinator(
        state,
        [StageDescriptor("first", double), StageDescriptor("second", double)],
        progress_callback=progress.append,
    )
    run = PipelineRun()

    final = await coordinator.execute(run, _ctx(state, run.run_id))

    assert final.status == RunStatus.SUCCEEDED
    assert seen == [{"n": 1}, {"n": 2}]
    assert final.stages == ["first", "second"]
    assert final.stage_results["second"].output == {"n": 4}
    assert set(final.log) == {"first", "second"}
    assert progress == ["first...", "second..."]
    assert final.completed_at is not None


@pytest.mark.asyncio
async def test_mandatory_failure_aborts_with_message_verbatim(state):
    ran = []

    async def explode(ctx, value):
        raise StageFailed("create_group", "Group limit reached for this account")

    async def never(ctx, value):
        ran.append("never")
        return StageOutcome()

    coordinator = PipelineCoordinator(
        state, [StageDescriptor("create_group", explode), StageDescriptor("after", never)]
    )
    run = PipelineRun()
    final = await coordinator.execute(run, _ctx(state, run.run_id))

    assert final.status == RunStatus.FAILED
    assert final.error.kind == ErrorKind.PROVIDER_REJECTION
    assert final.error.message == "Group limit reached for this account"
    assert final.stage_results["create_group"].error.message == "Group limit reached for this account"
    assert ran == []
    assert final.stages == ["create_group"]


@pytest.mark.asyncio
async def test_fan_out_partial_success_proceeds_with_warning(state):
    async def fan(ctx, value):
        return StageOutcome(output={"ok": 2}, succeeded=["a", "b"], failed=["c"])

    coordinator = PipelineCoordinator(
        state,
        [StageDescriptor("fan", fan, fan_out=True, min_success=MinSuccess.ANY), StageDescriptor("next", _passthrough)],
    )
    run = PipelineRun()
    final = await coordinator.execute(run, _ctx(state, run.run_id))

    assert final.status == RunStatus.PARTIALLY_SUCCEEDED
    assert final.stages == ["fan", "next"]
    assert len(final.warnings) == 1
    assert final.warnings[0].startswith("PartialFailure")
    assert final.stage_results["fan"].failed == ["c"]


@pytest.mark.asyncio
async def test_fan_out_zero_successes_is_no_quorum(state):
    async def fan(ctx, value):
        return StageOutcome(failed=["a"], pending=["b"])

    coordinator = PipelineCoordinator(
        state,
        [StageDescriptor("fan", fan, fan_out=True, min_success=MinSuccess.ANY), StageDescriptor("next", _passthrough)],
    )
    run = PipelineRun()
    final = await coordinator.execute(run, _ctx(state, run.run_id))

    assert final.status == RunStatus.FAILED
    assert final.error.kind == ErrorKind.NO_QUORUM
    assert final.stages == ["fan"]


@pytest.mark.asyncio
async def test_cancel_between_stages(state):
    token = CancellationToken()

    async def cancel_during(ctx, value):
        token.cancel("User pressed stop")
        return StageOutcome(output={})

    ran = []

    async def later(ctx, value):
        ran.append(True)
        return StageOutcome()

    coordinator = PipelineCoordinator(
        state, [StageDescriptor("first", cancel_during), StageDescriptor("second", later)]
    )
    run = PipelineRun()
    final = await coordinator.execute(run, _ctx(state, run.run_id, token))

    assert final.status == RunStatus.CANCELLED
    assert ran == []
    assert "User pressed stop" in final.warnings[-1]


@pytest.mark.asyncio
async def test_unexpected_exception_is_recorded_and_raised(state):
    async def bug(ctx, value):
        raise KeyError("image_keys")

    coordinator = PipelineCoordinator(state, [StageDescriptor("broken", bug)])
    run = PipelineRun()

    with pytest.raises(KeyError):
        await coordinator.execute(run, _ctx(state, run.run_id))

    stored = state.get_run(run.run_id)
    assert stored.status == RunStatus.FAILED
    assert "KeyError" in stored.error.message


# ---------------------------------------------------------------------------
# Avatar-video chain through the Orchestrator
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_full_chain_succeeds(make_orchestrator):
    fakes = avatar_providers(motion_scripts=[[P, C], [C]], video_scripts=[[P, C], [C]])
    avatars = FakeAvatars(avatar_count=2)
    progress = []
    orch = make_orchestrator(registry_of(fakes), avatars=avatars, progress_callback=progress.append)
    await orch.open()

    final = await orch.run(_request())

    assert final.status == RunStatus.SUCCEEDED, final.error
    assert final.stages == STAGE_NAMES
    assert progress == [f"{name}..." for name in STAGE_NAMES]

    # Voice chosen by style and passed to synthesis
    assert fakes["tts"].submitted[0]["voice_type"] == "zh_male_jieshuonansheng_mars_bigtts"
    assert fakes["tts"].submitted[0]["text"] == "Welcome to the spring collection."

    # First photo creates the group, the rest become looks
    assert avatars.calls[0] == ("create_avatar_group", "Spring Host", "key-heygen_image_asset-0")
    assert avatars.calls[1] == ("add_looks", "group-1", ["key-heygen_image_asset-1"])

    # Motion on every avatar, one render per motion avatar with the uploaded audio
    assert sorted(p["avatar_id"] for p in fakes["motion"].submitted) == ["avatar-0", "avatar-1"]
    audio_asset_id = "heygen_audio_asset-0"
    assert {p["audio_asset_id"] for p in fakes["video"].submitted} == {audio_asset_id}
    assert {p["talking_photo_id"] for p in fakes["video"].submitted} == {"heygen_motion-0", "heygen_motion-1"}

    videos = final.stage_results["poll_videos"].output["videos"]
    assert len(videos) == 2
    assert all(v["url"].startswith("https://cdn.example.com/") for v in videos)

    snapshot = orch.snapshot
    assert snapshot.count(TaskStatus.COMPLETED, TaskKind.VIDEO) == 2
    assert not snapshot.is_channel_occupied
    assert all(t.run_id == final.run_id for t in snapshot.tasks.values())


@pytest.mark.asyncio
async def test_motion_partial_failure_renders_survivors(make_orchestrator):
    fakes = avatar_providers(motion_scripts=[[F], [P, C]])
    orch = make_orchestrator(registry_of(fakes), avatars=FakeAvatars(avatar_count=2))
    await orch.open()

    final = await orch.run(_request())

    assert final.status == RunStatus.PARTIALLY_SUCCEEDED
    assert any(w.startswith("PartialFailure: quorum_wait") for w in final.warnings)
    assert len(fakes["video"].submitted) == 1
    assert fakes["video"].submitted[0]["talking_photo_id"] == "heygen_motion-1"


@pytest.mark.asyncio
async def test_motion_straggler_left_to_poller(make_orchestrator):
    fakes = avatar_providers(motion_scripts=[[C], [P]])
    orch = make_orchestrator(registry_of(fakes), avatars=FakeAvatars(avatar_count=2), min_wait_cycles=2)
    await orch.open()

    final = await orch.run(_request())

    assert final.status == RunStatus.PARTIALLY_SUCCEEDED
    straggler = final.stage_results["quorum_wait"].pending
    assert len(straggler) == 1
    assert orch.poller.is_polling(straggler[0])
    assert len(fakes["video"].submitted) == 1


@pytest.mark.asyncio
async def test_all_motion_failed_is_no_quorum(make_orchestrator):
    fakes = avatar_providers(motion_scripts=[[F], [F]])
    orch = make_orchestrator(registry_of(fakes), avatars=FakeAvatars(avatar_count=2))
    await orch.open()

    final = await orch.run(_request())

    assert final.status == RunStatus.FAILED
    assert final.error.kind == ErrorKind.NO_QUORUM
    assert "Image rejected by moderation" in final.error.message
    assert fakes["video"].submitted == []
    assert final.stages[-1] == "quorum_wait"


@pytest.mark.asyncio
async def test_speech_rejection_fails_run_verbatim(make_orchestrator):
    fakes = avatar_providers(tts_errors={0: ProviderRejection("Text contains unsupported characters")})
    orch = make_orchestrator(registry_of(fakes))
    await orch.open()

    final = await orch.run(_request())

    assert final.status == RunStatus.FAILED
    assert final.error.kind == ErrorKind.PROVIDER_REJECTION
    assert final.error.message == "Text contains unsupported characters"
    assert final.stages == ["select_voice", "synthesize_audio"]
    assert fakes["image"].submitted == []


@pytest.mark.asyncio
async def test_missing_provider_refused_before_any_task(make_orchestrator, store):
    fakes = avatar_providers()
    del fakes["motion"]
    orch = make_orchestrator(registry_of(fakes))
    await orch.open()

    with pytest.raises(ConfigurationError, match="motion"):
        await orch.start_run(_request())

    assert orch.snapshot.runs == {}
    assert orch.snapshot.tasks == {}


@pytest.mark.asyncio
async def test_cancel_run_during_quorum_wait(make_orchestrator):
    fakes = avatar_providers(motion_scripts=[[P], [P]])
    orch = make_orchestrator(registry_of(fakes), avatars=FakeAvatars(avatar_count=2))
    await orch.open()
    run = await orch.start_run(_request())
    execution = asyncio.create_task(orch.execute(run))

    await wait_for(lambda: orch.snapshot.count(TaskStatus.PROCESSING, TaskKind.MOTION) == 2)
    cancelled = await orch.cancel_run(run.run_id)
    final = await asyncio.wait_for(execution, timeout=5)

    assert len(cancelled) == 2
    assert final.status == RunStatus.CANCELLED
    assert final.stages[-1] == "quorum_wait"
    assert fakes["video"].submitted == []
    assert all(
        t.status == TaskStatus.CANCELLED
        for t in orch.snapshot.tasks.values()
        if t.kind == TaskKind.MOTION
    )
    await orch.cancellation.drain()
    assert sorted(fakes["motion"].cancels) == ["heygen_motion-0", "heygen_motion-1"]


@pytest.mark.asyncio
async def test_failed_upload_does_not_block_the_others(make_orchestrator):
    fakes = avatar_providers()
    fakes["image"].submit_errors = {0: ProviderRejection("Invalid file type: image/gif")}
    avatars = FakeAvatars(avatar_count=1)
    orch = make_orchestrator(registry_of(fakes), avatars=avatars)
    await orch.open()

    final = await orch.run(_request(images=["a.gif", "https://img.example.com/b.jpg", "https://img.example.com/c.jpg"]))

    assert final.status == RunStatus.PARTIALLY_SUCCEEDED
    uploads = final.stage_results["upload_assets"]
    assert len(uploads.succeeded) == 2
    assert len(uploads.failed) == 1
    assert avatars.calls[0][2] == "key-heygen_image_asset-1"
    assert orch.upload_limiter.in_flight == 0


# ---------------------------------------------------------------------------
# Avatar photo generation
# ---------------------------------------------------------------------------

def _image_registry(scripts) -> tuple[FakeProvider, ProviderRegistry]:
    fakes = avatar_providers()
    runway = FakeProvider(TaskKind.IMAGE, AVATAR_IMAGE_PROVIDER, scripts=scripts)
    return runway, ProviderRegistry([*fakes.values(), runway])


@pytest.mark.asyncio
async def test_avatar_images_report_partial_success(make_orchestrator):
    runway, registry = _image_registry([[C], [P, F], [P, P, C]])
    orch = make_orchestrator(registry)
    await orch.open()

    report = await orch.generate_avatar_images(
        AvatarImageRequest(prompt="  Friendly presenter in a navy blazer ", image_count=3, aspect_ratio="9:16")
    )

    assert report.requested == 3
    assert report.generated == 2
    assert len(report.failed) == 1
    assert report.is_partial
    assert all(image.url for image in report.images)
    assert [p["prompt"] for p in runway.submitted] == ["Friendly presenter in a navy blazer"] * 3
    assert {p["aspect_ratio"] for p in runway.submitted} == {"9:16"}
    seeds = [p["seed"] for p in runway.submitted]
    assert len(set(seeds)) == 3
    assert sorted(image.seed for image in report.images) == sorted(
        seeds[i] for i in (0, 2)
    )
    failed = orch.snapshot.tasks[report.failed[0]]
    assert failed.error.message == "Image rejected by moderation"
    assert orch.image_limiter.in_flight == 0


@pytest.mark.asyncio
async def test_avatar_images_respect_concurrency_cap(make_orchestrator):
    runway, registry = _image_registry([[P, C], [C], [C]])
    orch = make_orchestrator(registry, concurrency_cap=1)
    await orch.open()

    admissions = await orch.submit_avatar_images(AvatarImageRequest(prompt="Studio headshot", image_count=3))

    assert [a for _, a in admissions] == [Admission.DISPATCHED, Admission.QUEUED, Admission.QUEUED]
    assert len(runway.submitted) == 1
    report = await orch.collect_avatar_images([task.local_id for task, _ in admissions])
    assert report.generated == 3
    assert not report.is_partial
    assert len(runway.submitted) == 3


@pytest.mark.asyncio
async def test_avatar_images_need_the_image_provider(make_orchestrator):
    orch = make_orchestrator(registry_of(avatar_providers()))
    await orch.open()

    with pytest.raises(ConfigurationError, match="runway_image"):
        await orch.generate_avatar_images(AvatarImageRequest(prompt="Studio headshot"))

    assert orch.snapshot.tasks == {}


def test_avatar_image_prompt_cannot_be_blank():
    with pytest.raises(ValueError):
        AvatarImageRequest(prompt="   ")
    with pytest.raises(ValueError):
        AvatarImageRequest(prompt="Headshot", image_count=9)
