"""Tests for snapshot persistence, reconciliation and restore after reload."""

import asyncio

import pytest
import pytest_asyncio

from avatarpipe.db.engine import build_engine, build_session_factory
from avatarpipe.db.store import SqlSessionStore
from avatarpipe.errors import ErrorKind
from avatarpipe.orchestrator.session import SessionStateManager, dedupe_tasks, plan_restore
from avatarpipe.orchestrator.stages import await_terminal
from avatarpipe.schemas.requests import AvatarVideoRequest
from avatarpipe.schemas.session import PipelineRun, RunStatus, SessionSnapshot, StageResult
from avatarpipe.schemas.tasks import TaskKind, TaskRecord, TaskResult, TaskStatus, utcnow
from avatarpipe.services.registry import ProviderRegistry

from conftest import FakeProvider, avatar_providers, registry_of, wait_for

P, C = TaskStatus.PROCESSING, TaskStatus.COMPLETED


# ---------------------------------------------------------------------------
# Write-back
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_new_session_is_persisted_on_load(store):
    manager = SessionStateManager(store, "fresh", debounce_seconds=0.01, min_write_interval=0.0)
    snapshot = await manager.load("Product demo")

    stored = await store.load_snapshot("fresh")
    assert stored.name == "Product demo"
    assert stored.session_id == snapshot.session_id
    await manager.close()


@pytest.mark.asyncio
async def test_rapid_changes_coalesce_into_one_write(store):
    manager = SessionStateManager(store, "s", debounce_seconds=0.05, min_write_interval=0.0)
    await manager.load()
    baseline = store.save_count

    for i in range(10):
        await manager.put_task(TaskRecord(kind=TaskKind.IMAGE, label=f"photo {i}"))
    assert store.save_count == baseline

    await asyncio.sleep(0.2)
    assert store.save_count == baseline + 1
    assert len((await store.load_snapshot("s")).tasks) == 10
    await manager.close()


@pytest.mark.asyncio
async def test_flush_bypasses_debounce(store):
    manager = SessionStateManager(store, "s", debounce_seconds=30.0, min_write_interval=30.0)
    await manager.load()

    task = await manager.put_task(TaskRecord(kind=TaskKind.VIDEO), flush=True)

    assert task.local_id in (await store.load_snapshot("s")).tasks
    await manager.close()


@pytest.mark.asyncio
async def test_close_writes_pending_changes(store):
    manager = SessionStateManager(store, "s", debounce_seconds=30.0, min_write_interval=30.0)
    await manager.load()
    task = await manager.put_task(TaskRecord(kind=TaskKind.MOTION))

    await manager.close()

    assert task.local_id in (await store.load_snapshot("s")).tasks


@pytest.mark.asyncio
async def test_mutations_refresh_flags_and_version(state):
    version = state.snapshot.version
    task = await state.put_task(TaskRecord(kind=TaskKind.MOTION, status=TaskStatus.SUBMITTED, id="m-1"))

    assert state.snapshot.is_adding_motion
    assert state.snapshot.is_channel_occupied
    assert state.snapshot.version == version + 1

    await state.update_task(task.local_id, lambda t: t.model_copy(update={"status": TaskStatus.COMPLETED}))
    assert not state.snapshot.is_adding_motion
    assert not state.snapshot.is_channel_occupied


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}")
    sql = SqlSessionStore(build_session_factory(engine))
    await sql.init_schema()
    yield sql
    await engine.dispose()


@pytest.mark.asyncio
async def test_sql_store_round_trip(sql_store):
    snapshot = SessionSnapshot(session_id="abc", name="Launch video")
    task = TaskRecord(
        kind=TaskKind.VIDEO,
        status=C,
        id="vid-1",
        result=TaskResult(url="https://cdn.example.com/v.mp4", thumbnail_url="https://cdn.example.com/t.jpg"),
    )
    snapshot.tasks[task.local_id] = task
    run = PipelineRun(status=RunStatus.SUCCEEDED, stages=["render_video"])
    snapshot.runs[run.run_id] = run

    assert await sql_store.load_snapshot("abc") is None
    await sql_store.save_snapshot("abc", snapshot)
    loaded = await sql_store.load_snapshot("abc")

    assert loaded == snapshot

    snapshot.name = "Renamed"
    await sql_store.save_snapshot("abc", snapshot)
    assert (await sql_store.load_snapshot("abc")).name == "Renamed"


@pytest.mark.asyncio
async def test_sql_store_lists_sessions(sql_store):
    for session_id in ("one", "two"):
        await sql_store.save_snapshot(session_id, SessionSnapshot(session_id=session_id))

    listed = await sql_store.list_sessions()

    assert sorted(s.session_id for s in listed) == ["one", "two"]


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def test_dedupe_keeps_furthest_progress_and_repoints_runs():
    snapshot = SessionSnapshot(session_id="s")
    stale = TaskRecord(kind=TaskKind.VIDEO, status=P, id="vid-1", result=TaskResult(thumbnail_url="https://t.jpg"))
    done = TaskRecord(kind=TaskKind.VIDEO, status=C, id="vid-1", result=TaskResult(url="https://v.mp4"))
    other = TaskRecord(kind=TaskKind.MOTION, status=P, id="vid-1")
    for task in (stale, done, other):
        snapshot.tasks[task.local_id] = task
    run = PipelineRun(stage_results={"render_video": StageResult(succeeded=[stale.local_id, done.local_id])})
    snapshot.runs[run.run_id] = run

    removed = dedupe_tasks(snapshot)

    assert removed == [stale.local_id]
    assert set(snapshot.tasks) == {done.local_id, other.local_id}
    merged = snapshot.tasks[done.local_id]
    assert merged.result.url == "https://v.mp4"
    assert merged.result.thumbnail_url == "https://t.jpg"
    assert run.stage_results["render_video"].succeeded == [done.local_id]


def test_plan_restore_sorts_work():
    snapshot = SessionSnapshot(session_id="s")
    polling = TaskRecord(kind=TaskKind.MOTION, status=P, id="m-1")
    queued = TaskRecord(kind=TaskKind.VIDEO)
    finished = TaskRecord(kind=TaskKind.VIDEO, status=C, id="v-1", result=TaskResult(url="https://v.mp4"))
    downloaded = TaskRecord(kind=TaskKind.VIDEO, status=TaskStatus.DOWNLOADED, id="v-2")
    for task in (polling, queued, finished, downloaded):
        snapshot.tasks[task.local_id] = task
    running = PipelineRun()
    done = PipelineRun(status=RunStatus.SUCCEEDED)
    snapshot.runs.update({running.run_id: running, done.run_id: done})

    plan = plan_restore(snapshot)

    assert plan.resume_polling == [polling.local_id]
    assert plan.requeue == [queued.local_id]
    assert plan.download == [finished.local_id]
    assert plan.interrupted_runs == [running.run_id]
    assert plan_restore(snapshot, auto_download=False).download == []


# ---------------------------------------------------------------------------
# Orchestrator.restore
# ---------------------------------------------------------------------------

async def _seed(store, *tasks, runs=()):
    snapshot = SessionSnapshot(session_id="session-1")
    for task in tasks:
        snapshot.tasks[task.local_id] = task
    for run in runs:
        snapshot.runs[run.run_id] = run
    await store.save_snapshot("session-1", snapshot)


@pytest.mark.asyncio
async def test_restore_resumes_polling_from_saved_attempts(store, make_orchestrator):
    provider = FakeProvider(TaskKind.VIDEO, "heygen_video", scripts=[[P, C]])
    accepted = await provider.submit({})
    task = TaskRecord(kind=TaskKind.VIDEO, status=P, id=accepted.provider_task_id, attempts=7)
    running = PipelineRun()
    await _seed(store, task, runs=[running])

    orch = make_orchestrator(ProviderRegistry([provider]))
    await orch.open()
    plan = await orch.restore()

    assert plan.resume_polling == [task.local_id]
    assert plan.interrupted_runs == [running.run_id]
    interrupted = orch.state.get_run(running.run_id)
    assert interrupted.status == RunStatus.FAILED
    assert interrupted.error.kind == ErrorKind.INTERRUPTED
    stored_run = (await store.load_snapshot("session-1")).runs[running.run_id]
    assert stored_run.error.kind == ErrorKind.INTERRUPTED

    [final] = await await_terminal(orch.state, [task.local_id])
    assert final.status == C
    assert final.attempts == 9


@pytest.mark.asyncio
async def test_restore_respects_batch_cap(store, make_orchestrator):
    provider = FakeProvider(
        TaskKind.VIDEO, "seedance_i2v", relocatable=("image_url",), scripts=[[P], [P, C]]
    )
    in_flight = []
    for _ in range(2):
        accepted = await provider.submit({})
        in_flight.append(
            TaskRecord(kind=TaskKind.VIDEO, status=P, id=accepted.provider_task_id, provider="seedance_i2v")
        )
    waiting = TaskRecord(
        kind=TaskKind.VIDEO, provider="seedance_i2v", input={"prompt": "zoom", "image_url": "/uploads/late.png"}
    )
    await _seed(store, *in_flight, waiting)

    orch = make_orchestrator(ProviderRegistry([provider]))
    await orch.open()
    plan = await orch.restore()

    assert plan.requeue == [waiting.local_id]
    assert orch.batch_limiter.in_flight == 2
    assert orch.batch_limiter.queued == [waiting.local_id]
    assert orch.state.get_task(waiting.local_id).status == TaskStatus.QUEUED

    # Once the second restored task completes the queued one is relocated and submitted
    await await_terminal(orch.state, [in_flight[1].local_id])
    await wait_for(lambda: orch.state.get_task(waiting.local_id).status != TaskStatus.QUEUED)
    assert provider.submitted[-1]["image_url"] == "https://bucket.example.com/late.png"


@pytest.mark.asyncio
async def test_restore_downloads_completed_videos(store, make_orchestrator, tmp_path):
    finished = TaskRecord(
        kind=TaskKind.VIDEO, status=C, id="v-1", result=TaskResult(url="https://cdn.example.com/v-1.mp4")
    )
    await _seed(store, finished)
    orch = make_orchestrator(ProviderRegistry(), auto_download=True)

    async def fake_download(session_id, name, url):
        path = tmp_path / f"{name}.mp4"
        path.write_bytes(b"mp4")
        return path

    orch.files.download_video = fake_download
    await orch.open()
    plan = await orch.restore()

    assert plan.download == [finished.local_id]
    record = orch.state.get_task(finished.local_id)
    assert record.status == TaskStatus.DOWNLOADED
    assert record.result.local_path.endswith(f"{finished.local_id}.mp4")
    assert record.result.url == "https://cdn.example.com/v-1.mp4"


@pytest.mark.asyncio
async def test_restore_merges_duplicates(store, make_orchestrator):
    provider = FakeProvider(TaskKind.VIDEO, "heygen_video")
    older = TaskRecord(kind=TaskKind.VIDEO, status=P, id="heygen_video-0")
    newer = TaskRecord(
        kind=TaskKind.VIDEO, status=C, id="heygen_video-0", result=TaskResult(url="https://v.mp4"),
        updated_at=utcnow(),
    )
    await _seed(store, older, newer)

    orch = make_orchestrator(ProviderRegistry([provider]))
    await orch.open()
    plan = await orch.restore()

    assert plan.merged_duplicates == [older.local_id]
    assert plan.resume_polling == []
    assert list(orch.snapshot.tasks) == [newer.local_id]


@pytest.mark.asyncio
@pytest.mark.asyncio
async def test_restore_leaves_live_runs_alone(store, make_orchestrator):
    fakes = avatar_providers()
    orch = make_orchestrator(registry_of(fakes))
    await orch.open()
    run = await orch.start_run(AvatarVideoRequest(images=["https://img.example.com/a.jpg"], script="Hi"))
    # A stage has recorded its task but not dispatched it yet
    pending = TaskRecord(kind=TaskKind.MOTION, run_id=run.run_id, input={"prompt": "nod"})
    await orch.state.put_task(pending)

    plan = await orch.restore()

    assert plan.interrupted_runs == []
    assert plan.requeue == []
    assert orch.state.get_run(run.run_id).status == RunStatus.RUNNING
    assert orch.state.get_task(pending.local_id).status == TaskStatus.QUEUED
    assert fakes["motion"].submitted == []


class SlowSubmitProvider(FakeProvider):
    """Takes a while to accept each submission."""

    async def submit(self, payload):
        await asyncio.sleep(0.05)
        return await super().submit(payload)


@pytest.mark.asyncio
async def test_restore_skips_task_with_submit_in_flight(store, make_orchestrator):
    provider = SlowSubmitProvider(TaskKind.VIDEO, "heygen_video", scripts=[[P, C]])
    orch = make_orchestrator(ProviderRegistry([provider]))
    await orch.open()
    task = TaskRecord(kind=TaskKind.VIDEO, input={"script": "Hi"})
    await orch.state.put_task(task)

    submitting = asyncio.create_task(orch.dispatcher.dispatch(task))
    await asyncio.sleep(0)
    assert orch.dispatcher.is_submitting(task.local_id)

    plan = await orch.restore()
    assert await submitting

    assert plan.requeue == []
    assert len(provider.submitted) == 1
    [final] = await await_terminal(orch.state, [task.local_id])
    assert final.status == C


@pytest.mark.asyncio
async def test_restore_does_not_repoll_live_tasks(store, make_orchestrator):
    provider = FakeProvider(TaskKind.VIDEO, "heygen_video", scripts=[[P, P, C]])
    orch = make_orchestrator(ProviderRegistry([provider]))
    await orch.open()
    task = TaskRecord(kind=TaskKind.VIDEO, input={"script": "Hi"})
    await orch.state.put_task(task)
    assert await orch.dispatcher.dispatch(task)
    assert orch.poller.is_polling(task.local_id)

    plan = await orch.restore()

    assert plan.resume_polling == []
    [final] = await await_terminal(orch.state, [task.local_id])
    assert final.status == C
    assert len(provider.submitted) == 1
