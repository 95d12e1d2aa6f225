"""Tests for ConcurrencyLimiter admission and release."""

import asyncio
import logging

import pytest

from avatarpipe.errors import ErrorKind
from avatarpipe.orchestrator.dispatch import TaskDispatcher
from avatarpipe.orchestrator.limiter import Admission, ConcurrencyLimiter
from avatarpipe.orchestrator.state import ACTIVE_STATUSES, transition
from avatarpipe.orchestrator.stages import await_terminal
from avatarpipe.schemas.tasks import TaskKind, TaskRecord, TaskStatus
from avatarpipe.services.base import PassthroughRelocator
from avatarpipe.services.registry import ProviderRegistry

from conftest import FakeProvider, RecordingRelocator


class ManualDispatch:
    """Dispatch function that marks tasks SUBMITTED and lets the test finish them."""

    def __init__(self, state, fail_ids=(), delay=0.0):
        self.state = state
        self.fail_ids = set(fail_ids)
        self.delay = delay
        self.order: list[str] = []
        self.releases = {}

    async def __call__(self, task, release) -> bool:
        self.order.append(task.local_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if task.local_id in self.fail_ids:
            await self.state.update_task(task.local_id, lambda t: transition(t, TaskStatus.FAILED))
            return False
        await self.state.update_task(
            task.local_id, lambda t: transition(t, TaskStatus.SUBMITTED, provider_id=f"p-{t.local_id}")
        )
        self.releases[task.local_id] = release
        return True

    async def finish(self, local_id: str) -> None:
        await self.state.update_task(local_id, lambda t: transition(t, TaskStatus.COMPLETED))
        await self.releases[local_id](local_id)


async def _queued(state, count: int) -> list[TaskRecord]:
    tasks = [TaskRecord(kind=TaskKind.VIDEO, label=f"clip {i}") for i in range(count)]
    for task in tasks:
        await state.put_task(task)
    return tasks


def _track_peak(state) -> list[int]:
    peak = [0]

    def _observe(snapshot):
        active = sum(1 for t in snapshot.tasks.values() if t.status in ACTIVE_STATUSES)
        peak[0] = max(peak[0], active)

    state.subscribe(_observe)
    return peak


@pytest.mark.asyncio
async def test_cap_of_two_with_five_tasks(state):
    dispatch = ManualDispatch(state)
    limiter = ConcurrencyLimiter(state, dispatch, cap=2)
    peak = _track_peak(state)
    tasks = await _queued(state, 5)
    ids = [t.local_id for t in tasks]

    admissions = [await limiter.admit(t) for t in tasks]
    assert admissions == [Admission.DISPATCHED] * 2 + [Admission.QUEUED] * 3
    assert limiter.in_flight == 2
    assert limiter.queued == ids[2:]
    assert state.snapshot.is_channel_occupied

    # Each completion dispatches exactly one waiting task, in FIFO order
    await dispatch.finish(ids[0])
    assert dispatch.order == ids[:3]
    await dispatch.finish(ids[1])
    await dispatch.finish(ids[2])
    assert dispatch.order == ids
    await dispatch.finish(ids[3])
    await dispatch.finish(ids[4])

    assert peak[0] == 2
    assert limiter.in_flight == 0 and limiter.queued == []
    assert all(state.get_task(i).status == TaskStatus.COMPLETED for i in ids)
    assert not state.snapshot.is_channel_occupied


@pytest.mark.asyncio
async def test_failed_dispatch_frees_slot(state):
    tasks = await _queued(state, 3)
    dispatch = ManualDispatch(state, fail_ids={tasks[0].local_id})
    limiter = ConcurrencyLimiter(state, dispatch, cap=2)

    admissions = [await limiter.admit(t) for t in tasks]

    assert admissions == [Admission.FAILED, Admission.DISPATCHED, Admission.DISPATCHED]
    assert limiter.in_flight == 2
    assert state.get_task(tasks[0].local_id).status == TaskStatus.FAILED


@pytest.mark.asyncio
async def test_failure_while_draining_keeps_pumping(state):
    tasks = await _queued(state, 4)
    ids = [t.local_id for t in tasks]
    dispatch = ManualDispatch(state, fail_ids={ids[2]})
    limiter = ConcurrencyLimiter(state, dispatch, cap=2)
    for task in tasks:
        await limiter.admit(task)

    await dispatch.finish(ids[0])

    # ids[2] failed at submit, so ids[3] takes the freed slot
    assert state.get_task(ids[2]).status == TaskStatus.FAILED
    assert state.get_task(ids[3]).status == TaskStatus.SUBMITTED
    assert limiter.in_flight == 2


@pytest.mark.asyncio
async def test_cancelled_queued_task_is_skipped(state):
    tasks = await _queued(state, 3)
    ids = [t.local_id for t in tasks]
    dispatch = ManualDispatch(state)
    limiter = ConcurrencyLimiter(state, dispatch, cap=1)
    for task in tasks:
        await limiter.admit(task)

    await state.update_task(ids[1], lambda t: transition(t, TaskStatus.CANCELLED))
    await limiter.release(ids[1])
    assert limiter.queued == [ids[2]]

    await dispatch.finish(ids[0])
    assert dispatch.order == [ids[0], ids[2]]


@pytest.mark.asyncio
async def test_concurrent_releases_never_over_dispatch(state):
    tasks = await _queued(state, 6)
    ids = [t.local_id for t in tasks]
    dispatch = ManualDispatch(state)
    limiter = ConcurrencyLimiter(state, dispatch, cap=2)
    peak = _track_peak(state)
    for task in tasks:
        await limiter.admit(task)

    await asyncio.gather(dispatch.finish(ids[0]), dispatch.finish(ids[1]))

    assert limiter.in_flight == 2
    assert len(dispatch.order) == 4
    assert peak[0] == 2


@pytest.mark.asyncio
async def test_admit_is_idempotent(state):
    tasks = await _queued(state, 3)
    limiter = ConcurrencyLimiter(state, ManualDispatch(state), cap=2)
    for task in tasks:
        await limiter.admit(task)

    assert await limiter.admit(tasks[0]) == Admission.DISPATCHED
    assert await limiter.admit(tasks[2]) == Admission.QUEUED
    assert limiter.queued == [tasks[2].local_id]


# ---------------------------------------------------------------------------
# Concurrent admission
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_failed_dispatches_drain_the_queue(state):
    tasks = await _queued(state, 3)
    ids = [t.local_id for t in tasks]
    dispatch = ManualDispatch(state, fail_ids=ids, delay=0.01)
    limiter = ConcurrencyLimiter(state, dispatch, cap=2)

    admissions = await asyncio.gather(*(limiter.admit(t) for t in tasks))

    # The third admit queued behind two in-flight submits that later failed
    assert admissions == [Admission.FAILED, Admission.FAILED, Admission.QUEUED]
    assert dispatch.order == ids
    assert all(state.get_task(i).status == TaskStatus.FAILED for i in ids)
    assert limiter.in_flight == 0 and limiter.queued == []


@pytest.mark.asyncio
async def test_queued_task_takes_slot_of_concurrent_failure(state):
    tasks = await _queued(state, 3)
    ids = [t.local_id for t in tasks]
    dispatch = ManualDispatch(state, fail_ids={ids[0]}, delay=0.01)
    limiter = ConcurrencyLimiter(state, dispatch, cap=2)

    await asyncio.gather(*(limiter.admit(t) for t in tasks))

    assert state.get_task(ids[0]).status == TaskStatus.FAILED
    assert state.get_task(ids[1]).status == TaskStatus.SUBMITTED
    assert state.get_task(ids[2]).status == TaskStatus.SUBMITTED
    assert limiter.in_flight == 2 and limiter.queued == []


@pytest.mark.asyncio
async def test_interleaved_admits_respect_cap(state):
    tasks = await _queued(state, 6)
    ids = [t.local_id for t in tasks]
    dispatch = ManualDispatch(state, fail_ids={ids[1]}, delay=0.01)
    limiter = ConcurrencyLimiter(state, dispatch, cap=2)
    peak = _track_peak(state)

    first = await asyncio.gather(*(limiter.admit(t) for t in tasks[:4]))
    assert first == [Admission.DISPATCHED, Admission.FAILED, Admission.QUEUED, Admission.QUEUED]
    # ids[2] took the slot ids[1] gave up
    assert limiter.in_flight == 2
    assert limiter.queued == [ids[3]]

    # Completions and fresh admits race; the cap still holds
    await asyncio.gather(
        dispatch.finish(ids[0]),
        limiter.admit(tasks[4]),
        limiter.admit(tasks[5]),
    )
    await dispatch.finish(ids[2])

    assert peak[0] == 2
    assert limiter.in_flight == 2
    assert len(limiter.queued) == 1
    submitted = [i for i in ids if state.get_task(i).status == TaskStatus.SUBMITTED]
    assert len(submitted) == 2


@pytest.mark.asyncio
async def test_failed_dispatch_log_names_the_task(state, caplog):
    [task] = await _queued(state, 1)
    limiter = ConcurrencyLimiter(state, ManualDispatch(state, fail_ids={task.local_id}), cap=2, name="i2v")

    with caplog.at_level(logging.INFO, logger="avatarpipe.orchestrator.limiter"):
        await limiter.admit(task)

    assert f"[i2v] dispatch of {task.local_id} failed, slot freed" in caplog.messages


# ---------------------------------------------------------------------------
# Relocation happens at dispatch, not at admission
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_relocation_deferred_until_dispatch(state, poller):
    provider = FakeProvider(
        TaskKind.VIDEO,
        "fake_i2v",
        relocatable=("image_url",),
        scripts=[
            [TaskStatus.PROCESSING, TaskStatus.COMPLETED],
            [TaskStatus.PROCESSING],
            [TaskStatus.COMPLETED],
        ],
    )
    relocator = RecordingRelocator()
    dispatcher = TaskDispatcher(state, ProviderRegistry([provider]), poller, relocator)
    limiter = ConcurrencyLimiter(state, dispatcher.dispatch, cap=2)

    tasks = [
        TaskRecord(kind=TaskKind.VIDEO, input={"prompt": "wave", "image_url": f"/uploads/photo{i}.png"})
        for i in range(3)
    ]
    for task in tasks:
        await state.put_task(task)
    for task in tasks:
        await limiter.admit(task)

    assert relocator.calls == ["/uploads/photo0.png", "/uploads/photo1.png"]
    assert provider.submitted[0]["image_url"] == "https://bucket.example.com/photo0.png"
    # The stored input keeps the original reference
    assert state.get_task(tasks[0].local_id).input["image_url"] == "/uploads/photo0.png"

    await await_terminal(state, [tasks[0].local_id, tasks[2].local_id])

    assert relocator.calls[-1] == "/uploads/photo2.png"
    assert state.get_task(tasks[2].local_id).status == TaskStatus.COMPLETED
    assert state.get_task(tasks[1].local_id).status == TaskStatus.PROCESSING


@pytest.mark.asyncio
async def test_unreachable_asset_fails_with_configuration_error(state, poller):
    provider = FakeProvider(TaskKind.VIDEO, "fake_i2v", relocatable=("image_url",))
    dispatcher = TaskDispatcher(state, ProviderRegistry([provider]), poller, PassthroughRelocator())
    limiter = ConcurrencyLimiter(state, dispatcher.dispatch, cap=2)
    task = TaskRecord(kind=TaskKind.VIDEO, input={"image_url": "/uploads/local.png"})
    await state.put_task(task)

    assert await limiter.admit(task) == Admission.FAILED
    failed = state.get_task(task.local_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error.kind == ErrorKind.CONFIGURATION
    assert provider.submitted == []
    assert limiter.in_flight == 0
