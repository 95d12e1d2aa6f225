"""Session-bound state: the single shared mutable resource.

SessionStateManager owns the latest SessionSnapshot for one session. Every
component mutates it through read-modify-write helpers that run without an
await between the read and the write, so two pollers finishing in
overlapping ticks can never lose each other's updates. Writes to the store
are debounced; user-initiated actions call flush() to persist immediately.

The reconciliation helpers at the bottom turn a freshly loaded snapshot
into a restore plan: duplicate records are merged and in-flight work is
sorted into what must be polled, re-admitted or downloaded.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from avatarpipe.config import settings
from avatarpipe.db.store import SessionStore
from avatarpipe.errors import ErrorKind
from avatarpipe.orchestrator.state import (
    ACTIVE_STATUSES,
    derive_flags,
    merge_report,
    pick_latest,
)
from avatarpipe.schemas.session import PipelineRun, RunStatus, SessionSnapshot
from avatarpipe.schemas.tasks import TaskError, TaskKind, TaskRecord, TaskStatus, utcnow
from avatarpipe.services.base import StatusReport

logger = logging.getLogger(__name__)

Subscriber = Callable[[SessionSnapshot], None]


class SessionStateManager:
    """Latest-snapshot holder with debounced write-back.

    Args:
        store: SessionStore the snapshot is loaded from and saved to
        session_id: Session this manager is bound to
        debounce_seconds: Coalescing window for background writes
        min_write_interval: Minimum spacing between background writes
    """

    def __init__(
        self,
        store: SessionStore,
        session_id: str,
        *,
        debounce_seconds: Optional[float] = None,
        min_write_interval: Optional[float] = None,
    ):
        self.store = store
        self.session_id = session_id
        self.debounce_seconds = (
            settings.session.debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self.min_write_interval = (
            settings.session.min_write_interval if min_write_interval is None else min_write_interval
        )
        self._snapshot: Optional[SessionSnapshot] = None
        self._dirty = False
        self._last_write = float("-inf")
        self._writer: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._subscribers: list[Subscriber] = []

    # -- loading -------------------------------------------------------------

    async def load(self, name: str = "") -> SessionSnapshot:
        """Load the stored snapshot, creating and persisting a new one if absent."""
        snapshot = await self.store.load_snapshot(self.session_id)
        if snapshot is None:
            snapshot = SessionSnapshot(session_id=self.session_id, name=name)
            self._snapshot = snapshot
            self._dirty = True
            await self.flush()
            logger.info(f"Created session {self.session_id}")
        else:
            self._snapshot = snapshot
            logger.info(
                f"Loaded session {self.session_id} "
                f"({len(snapshot.tasks)} tasks, {len(snapshot.runs)} runs)"
            )
        return self._snapshot

    @property
    def snapshot(self) -> SessionSnapshot:
        if self._snapshot is None:
            raise RuntimeError(f"Session {self.session_id} has not been loaded")
        return self._snapshot

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a read-only change listener; returns an unsubscribe function."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    # -- read helpers --------------------------------------------------------

    def get_task(self, local_id: str) -> Optional[TaskRecord]:
        return self.snapshot.tasks.get(local_id)

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        return self.snapshot.runs.get(run_id)

    # -- read-modify-write ---------------------------------------------------

    def mutate(self, fn: Callable[[SessionSnapshot], None]) -> SessionSnapshot:
        """Apply ``fn`` to the latest snapshot and schedule a write.

        ``fn`` runs synchronously against the live snapshot; derived flags
        and the version counter are refreshed afterwards.
        """
        snapshot = self.snapshot
        fn(snapshot)
        flags = derive_flags(snapshot.tasks.values())
        for key, value in flags.items():
            setattr(snapshot, key, value)
        snapshot.version += 1
        snapshot.updated_at = utcnow()
        self._mark_dirty()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning(f"Snapshot subscriber failed: {e}")
        return snapshot

    async def put_task(self, task: TaskRecord, *, flush: bool = False) -> TaskRecord:
        """Insert or replace a task record."""
        def _put(snapshot: SessionSnapshot) -> None:
            snapshot.tasks[task.local_id] = task

        self.mutate(_put)
        if flush:
            await self.flush()
        return task

    async def update_task(
        self,
        local_id: str,
        fn: Callable[[TaskRecord], Optional[TaskRecord]],
        *,
        flush: bool = False,
    ) -> Optional[TaskRecord]:
        """Apply ``fn`` to the latest copy of a task.

        Returns:
            The updated record, or None when the task is unknown or ``fn``
            declined the change.
        """
        current = self.get_task(local_id)
        if current is None:
            return None
        updated = fn(current)
        if updated is None:
            return None

        def _replace(snapshot: SessionSnapshot) -> None:
            snapshot.tasks[local_id] = updated

        self.mutate(_replace)
        if flush:
            await self.flush()
        return updated

    async def apply_report(self, local_id: str, report: StatusReport) -> Optional[TaskRecord]:
        """Merge a provider status report into a task (ignored if stale)."""
        return await self.update_task(local_id, lambda t: merge_report(t, report))

    async def put_run(self, run: PipelineRun, *, flush: bool = False) -> PipelineRun:
        def _put(snapshot: SessionSnapshot) -> None:
            snapshot.runs[run.run_id] = run

        self.mutate(_put)
        if flush:
            await self.flush()
        return run

    async def update_run(
        self,
        run_id: str,
        fn: Callable[[PipelineRun], None],
        *,
        flush: bool = False,
    ) -> Optional[PipelineRun]:
        """Mutate the latest copy of a run in place."""
        run = self.get_run(run_id)
        if run is None:
            return None

        def _apply(snapshot: SessionSnapshot) -> None:
            fn(run)
            run.updated_at = utcnow()

        self.mutate(_apply)
        if flush:
            await self.flush()
        return run

    # -- persistence ---------------------------------------------------------

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._writer is None or self._writer.done():
            try:
                self._writer = asyncio.get_running_loop().create_task(self._debounced_write())
            except RuntimeError:
                # No running loop: the next flush() persists the change
                self._writer = None

    async def _debounced_write(self) -> None:
        since_last = time.monotonic() - self._last_write
        delay = max(self.debounce_seconds, self.min_write_interval - since_last, 0.0)
        await asyncio.sleep(delay)
        try:
            await self._write()
        except Exception as e:
            logger.error(f"Debounced snapshot write failed for {self.session_id}: {e}")

    async def _write(self) -> None:
        async with self._write_lock:
            if not self._dirty or self._snapshot is None:
                return
            self._dirty = False
            try:
                await self.store.save_snapshot(self.session_id, self._snapshot)
            except Exception:
                self._dirty = True
                raise
            self._last_write = time.monotonic()
            logger.debug(f"Persisted session {self.session_id} version {self._snapshot.version}")

    async def flush(self) -> None:
        """Persist pending changes now, bypassing the debounce window."""
        await self._write()

    async def close(self) -> None:
        """Flush and stop the background writer."""
        await self.flush()
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        self._writer = None


# ---------------------------------------------------------------------------
# Reconciliation after reload
# ---------------------------------------------------------------------------

@dataclass
class RestorePlan:
    """What to do with each piece of work found in a reloaded snapshot."""

    resume_polling: list[str] = field(default_factory=list)
    requeue: list[str] = field(default_factory=list)
    download: list[str] = field(default_factory=list)
    interrupted_runs: list[str] = field(default_factory=list)
    merged_duplicates: list[str] = field(default_factory=list)


def dedupe_tasks(snapshot: SessionSnapshot) -> list[str]:
    """Merge records that refer to the same provider task.

    The surviving record is chosen by state.pick_latest; run stage results
    pointing at a removed record are re-pointed at the survivor.

    Returns:
        local_ids of the removed duplicate records
    """
    survivors: dict[tuple[TaskKind, str], TaskRecord] = {}
    removed: dict[str, str] = {}

    for task in list(snapshot.tasks.values()):
        if task.id is None:
            continue
        key = (task.kind, task.id)
        existing = survivors.get(key)
        if existing is None:
            survivors[key] = task
            continue
        winner = pick_latest(existing, task)
        loser = task if winner.local_id == existing.local_id else existing
        survivors[key] = winner
        removed[loser.local_id] = winner.local_id

    # Collapse chains (a -> b, b -> c) before re-pointing references
    def _resolve(local_id: str) -> str:
        while local_id in removed:
            local_id = removed[local_id]
        return local_id

    for loser_id in removed:
        snapshot.tasks.pop(loser_id, None)
    for winner in survivors.values():
        snapshot.tasks[winner.local_id] = winner

    if removed:
        for run in snapshot.runs.values():
            for result in run.stage_results.values():
                result.succeeded = _dedupe_ids(_resolve(i) for i in result.succeeded)
                result.failed = _dedupe_ids(_resolve(i) for i in result.failed)
                result.pending = _dedupe_ids(_resolve(i) for i in result.pending)
        logger.info(f"Merged {len(removed)} duplicate task record(s) in {snapshot.session_id}")

    return list(removed)


def _dedupe_ids(ids) -> list[str]:
    seen: list[str] = []
    for i in ids:
        if i not in seen:
            seen.append(i)
    return seen


def plan_restore(snapshot: SessionSnapshot, *, auto_download: bool = True) -> RestorePlan:
    """Sort the snapshot's in-flight work into restore actions.

    - SUBMITTED/PROCESSING tasks with a provider id resume polling
    - QUEUED tasks are re-admitted (their relocation runs at dispatch)
    - COMPLETED video tasks are downloaded when auto_download is set
    - RUNNING pipeline runs are reported as interrupted
    """
    plan = RestorePlan()
    for task in snapshot.tasks.values():
        if task.status in ACTIVE_STATUSES and task.id is not None:
            plan.resume_polling.append(task.local_id)
        elif task.status == TaskStatus.QUEUED:
            plan.requeue.append(task.local_id)
        elif (
            auto_download
            and task.kind == TaskKind.VIDEO
            and task.status == TaskStatus.COMPLETED
            and task.result is not None
            and task.result.url
        ):
            plan.download.append(task.local_id)

    for run in snapshot.runs.values():
        if run.status == RunStatus.RUNNING:
            plan.interrupted_runs.append(run.run_id)
    return plan


def mark_run_interrupted(run: PipelineRun) -> None:
    """Close a run that was in flight when its session was reloaded."""
    run.status = RunStatus.FAILED
    run.error = TaskError(
        kind=ErrorKind.INTERRUPTED,
        message="Run was interrupted by a reload; launched tasks continue to be tracked",
    )
    run.completed_at = utcnow()
