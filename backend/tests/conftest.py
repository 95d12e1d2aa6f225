"""Shared fixtures: scripted fake providers, an in-memory store and tiny intervals."""

import asyncio
from typing import Any, Callable, Optional, Sequence, Union

import pytest
import pytest_asyncio

from avatarpipe.config import settings
from avatarpipe.db.store import InMemorySessionStore
from avatarpipe.errors import ErrorKind
from avatarpipe.orchestrator.poller import StatusPoller
from avatarpipe.orchestrator.service import Orchestrator
from avatarpipe.orchestrator.session import SessionStateManager
from avatarpipe.schemas.tasks import TaskError, TaskKind, TaskRecord, TaskResult, TaskStatus
from avatarpipe.services.base import PassthroughRelocator, ProviderClient, StatusReport, SubmitResult
from avatarpipe.services.file_manager import FileManager
from avatarpipe.services.registry import ProviderRegistry

POLL = 0.01

Outcome = Union[TaskStatus, StatusReport, Exception]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeProvider(ProviderClient):
    """Provider whose status answers are scripted per submission.

    ``scripts[n]`` is the sequence of outcomes for the n-th submission; the
    last outcome repeats forever. Submissions without a script complete on
    their first check. ``sync=True`` completes at submit time like an
    asset upload.
    """

    def __init__(
        self,
        kind: TaskKind,
        name: Optional[str] = None,
        *,
        scripts: Sequence[Sequence[Outcome]] = (),
        submit_errors: Optional[dict[int, Exception]] = None,
        sync: bool = False,
        relocatable: tuple[str, ...] = (),
        result_factory: Optional[Callable[[str, dict], TaskResult]] = None,
    ):
        self.kind = kind
        self.name = name or f"fake_{kind.value}"
        self.relocatable_inputs = relocatable
        self.scripts = [list(s) for s in scripts]
        self.submit_errors = submit_errors or {}
        self.sync = sync
        self.result_factory = result_factory
        self.submitted: list[dict[str, Any]] = []
        self.checks: dict[str, int] = {}
        self.cancels: list[str] = []
        self._pending: dict[str, list[Outcome]] = {}

    def provider_id(self, index: int) -> str:
        return f"{self.name}-{index}"

    def result_for(self, provider_id: str, payload: dict) -> TaskResult:
        if self.result_factory is not None:
            return self.result_factory(provider_id, payload)
        return TaskResult(
            url=f"https://cdn.example.com/{provider_id}.mp4",
            extra={"avatar_id": provider_id, "asset_id": provider_id, "image_key": f"key-{provider_id}"},
        )

    async def submit(self, payload: dict[str, Any]) -> SubmitResult:
        index = len(self.submitted)
        self.submitted.append(payload)
        error = self.submit_errors.get(index)
        if error is not None:
            raise error

        provider_id = self.provider_id(index)
        self.checks[provider_id] = 0
        if self.sync:
            return SubmitResult(
                provider_task_id=provider_id,
                report=StatusReport(status=TaskStatus.COMPLETED, result=self.result_for(provider_id, payload)),
            )
        script = self.scripts[index] if index < len(self.scripts) else [TaskStatus.COMPLETED]
        self._pending[provider_id] = list(script)
        return SubmitResult(provider_task_id=provider_id)

    async def check_status(self, provider_task_id: str) -> StatusReport:
        self.checks[provider_task_id] = self.checks.get(provider_task_id, 0) + 1
        script = self._pending.setdefault(provider_task_id, [TaskStatus.COMPLETED])
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, StatusReport):
            return outcome
        return self.report(provider_task_id, outcome)

    def report(self, provider_task_id: str, status: TaskStatus) -> StatusReport:
        if status == TaskStatus.COMPLETED:
            index = int(provider_task_id.rsplit("-", 1)[1])
            payload = self.submitted[index] if index < len(self.submitted) else {}
            return StatusReport(status=status, result=self.result_for(provider_task_id, payload))
        if status == TaskStatus.FAILED:
            return StatusReport(
                status=status,
                error=TaskError(kind=ErrorKind.PROVIDER_REJECTION, message="Image rejected by moderation"),
            )
        return StatusReport(status=status)

    async def cancel(self, provider_task_id: str) -> None:
        self.cancels.append(provider_task_id)


class FakeAvatars:
    """Photo-avatar API double recording every call."""

    def __init__(self, avatar_count: int = 2, group_id: str = "group-1"):
        self.avatar_count = avatar_count
        self.group_id = group_id
        self.calls: list[tuple] = []

    async def create_avatar_group(self, name: str, image_key: str) -> dict:
        self.calls.append(("create_avatar_group", name, image_key))
        return {"id": self.group_id}

    async def add_looks(self, group_id: str, image_keys: list[str], name: str = "New Look") -> dict:
        self.calls.append(("add_looks", group_id, list(image_keys)))
        return {}

    async def list_group_avatars(self, group_id: str) -> list[dict]:
        self.calls.append(("list_group_avatars", group_id))
        return [{"id": f"avatar-{i}"} for i in range(self.avatar_count)]


class RecordingRelocator(PassthroughRelocator):
    """Relocator that maps any reference to a public URL and records calls."""

    def __init__(self):
        self.calls: list[str] = []

    async def ensure_publicly_reachable(self, local_ref: str) -> str:
        self.calls.append(local_ref)
        return f"https://bucket.example.com/{local_ref.rsplit('/', 1)[-1]}"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Spin the loop until ``predicate`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(POLL)


async def submitted_task(
    state: SessionStateManager,
    provider: FakeProvider,
    *,
    kind: Optional[TaskKind] = None,
    attempts: int = 0,
    **fields,
) -> TaskRecord:
    """Submit through ``provider`` and record the task as SUBMITTED."""
    accepted = await provider.submit(fields.get("input", {}))
    task = TaskRecord(
        kind=kind or provider.kind,
        status=TaskStatus.SUBMITTED,
        id=accepted.provider_task_id,
        attempts=attempts,
        **fields,
    )
    await state.put_task(task)
    return task


def avatar_providers(
    *,
    motion_scripts: Sequence[Sequence[Outcome]] = (),
    video_scripts: Sequence[Sequence[Outcome]] = (),
    tts_errors: Optional[dict[int, Exception]] = None,
) -> dict[str, FakeProvider]:
    """One fake per provider the avatar-video chain routes to."""
    return {
        "tts": FakeProvider(
            TaskKind.AUDIO,
            "volcengine_tts",
            sync=True,
            submit_errors=tts_errors,
            result_factory=lambda pid, payload: TaskResult(
                url=payload["output_path"],
                local_path=payload["output_path"],
                duration=3.5,
                extra={"voice_type": payload["voice_type"]},
            ),
        ),
        "image": FakeProvider(TaskKind.IMAGE, "heygen_image_asset", sync=True),
        "audio_asset": FakeProvider(TaskKind.AUDIO, "heygen_audio_asset", sync=True),
        "motion": FakeProvider(TaskKind.MOTION, "heygen_motion", scripts=motion_scripts),
        "video": FakeProvider(TaskKind.VIDEO, "heygen_video", scripts=video_scripts),
    }


def registry_of(fakes: dict[str, FakeProvider]) -> ProviderRegistry:
    # tts is registered first, so it stays the audio default
    return ProviderRegistry(fakes.values())


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def fast_settings(monkeypatch, tmp_path):
    """Tiny intervals and a throwaway artifact directory for every test."""
    monkeypatch.setattr(settings.pipeline, "poll_interval", POLL)
    monkeypatch.setattr(settings.pipeline, "auto_download", False)
    monkeypatch.setattr(settings.session, "debounce_seconds", 0.01)
    monkeypatch.setattr(settings.session, "min_write_interval", 0.0)
    monkeypatch.setattr(settings.storage, "tmp_dir", tmp_path / "artifacts")
    monkeypatch.setattr(settings.relocation, "bucket", "")


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest_asyncio.fixture
async def state(store):
    manager = SessionStateManager(store, "session-1", debounce_seconds=0.01, min_write_interval=0.0)
    await manager.load("Test session")
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def poller(state):
    status_poller = StatusPoller(state, interval=POLL)
    yield status_poller
    await status_poller.stop_all()


@pytest_asyncio.fixture
async def make_orchestrator(store, tmp_path):
    """Build Orchestrators over fakes; every one built is closed after the test."""
    built: list[Orchestrator] = []

    def _make(
        providers: ProviderRegistry,
        session_id: str = "session-1",
        *,
        avatars: Any = None,
        relocator=None,
        **kwargs,
    ) -> Orchestrator:
        kwargs.setdefault("poll_interval", POLL)
        kwargs.setdefault("min_wait_cycles", 3)
        kwargs.setdefault("quorum_max_attempts", 200)
        kwargs.setdefault("auto_download", False)
        orchestrator = Orchestrator(
            kwargs.pop("store", store),
            session_id,
            providers=providers,
            relocator=relocator or RecordingRelocator(),
            avatars=avatars or FakeAvatars(),
            files=FileManager(tmp_path / "artifacts"),
            **kwargs,
        )
        built.append(orchestrator)
        return orchestrator

    yield _make

    for orchestrator in built:
        await orchestrator.close()
