"""Background run execution and the per-session orchestrator registry.

One Orchestrator is kept per open session so every request for that
session shares the same poller, limiters and state manager. Runs execute
as asyncio tasks tracked by run id; avatar image requests are collected
by background tasks of their own.
"""

import asyncio
import logging
from typing import Callable, Optional

from avatarpipe.db.store import SessionStore
from avatarpipe.orchestrator.service import Orchestrator
from avatarpipe.schemas.session import PipelineRun

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[SessionStore, str], Orchestrator]

# Module-level registries for in-process state
ORCHESTRATORS: dict[str, Orchestrator] = {}
RUN_TASKS: dict[str, asyncio.Task] = {}
IMAGE_TASKS: set[asyncio.Task] = set()

_OPENING: dict[str, asyncio.Future] = {}


def default_factory(store: SessionStore, session_id: str) -> Orchestrator:
    return Orchestrator(store, session_id)


async def get_orchestrator(
    store: SessionStore,
    session_id: str,
    *,
    name: str = "",
    factory: Optional[OrchestratorFactory] = None,
    create: bool = True,
) -> Optional[Orchestrator]:
    """Return the session's orchestrator, opening and restoring it on first use.

    Args:
        store: Snapshot store
        session_id: Session to open
        name: Name recorded when the session is created
        factory: Builds the Orchestrator (tests inject fake providers here)
        create: When False, unknown sessions return None instead of being created

    Returns:
        The open Orchestrator, or None (create=False and no stored session)
    """
    existing = ORCHESTRATORS.get(session_id)
    if existing is not None:
        return existing

    # Concurrent first requests for one session share a single open
    opening = _OPENING.get(session_id)
    if opening is None:
        opening = asyncio.ensure_future(_open(store, session_id, name, factory, create))
        _OPENING[session_id] = opening
        opening.add_done_callback(lambda _f: _OPENING.pop(session_id, None))
    return await asyncio.shield(opening)


async def _open(
    store: SessionStore,
    session_id: str,
    name: str,
    factory: Optional[OrchestratorFactory],
    create: bool,
) -> Optional[Orchestrator]:
    if not create and await store.load_snapshot(session_id) is None:
        return None

    orchestrator = (factory or default_factory)(store, session_id)
    snapshot = await orchestrator.open(name)
    if snapshot.tasks or snapshot.runs:
        # Reopened after a restart: resume in-flight work
        await orchestrator.restore()
    ORCHESTRATORS[session_id] = orchestrator
    return orchestrator


def start_run_background(orchestrator: Orchestrator, run: PipelineRun) -> asyncio.Task:
    """Execute a recorded run as a background task."""
    task = asyncio.create_task(_execute_run(orchestrator, run), name=f"run-{run.run_id}")
    RUN_TASKS[run.run_id] = task
    task.add_done_callback(lambda _t: RUN_TASKS.pop(run.run_id, None))
    return task


async def _execute_run(orchestrator: Orchestrator, run: PipelineRun) -> None:
    try:
        final = await orchestrator.execute(run)
        logger.info(f"Background run {run.run_id} finished: {final.status.value}")
    except Exception as e:
        # Failure already persisted on the run by the coordinator
        logger.error(f"Background run {run.run_id} failed: {type(e).__name__}: {str(e)}")


def collect_images_background(orchestrator: Orchestrator, local_ids: list[str]) -> asyncio.Task:
    """Wait out an avatar image request (and download its images) in the background."""
    task = asyncio.create_task(_collect_images(orchestrator, local_ids), name=f"images-{local_ids[0]}")
    IMAGE_TASKS.add(task)
    task.add_done_callback(IMAGE_TASKS.discard)
    return task


async def _collect_images(orchestrator: Orchestrator, local_ids: list[str]) -> None:
    try:
        report = await orchestrator.collect_avatar_images(local_ids)
        logger.info(f"Avatar images for {orchestrator.session_id}: {report.generated}/{report.requested}")
    except Exception as e:
        logger.error(f"Collecting avatar images failed: {type(e).__name__}: {str(e)}")


async def shutdown_all() -> None:
    """Stop background runs and close every open orchestrator."""
    for task in list(RUN_TASKS.values()):
        task.cancel()
    if RUN_TASKS:
        await asyncio.gather(*RUN_TASKS.values(), return_exceptions=True)
    RUN_TASKS.clear()

    for task in list(IMAGE_TASKS):
        task.cancel()
    if IMAGE_TASKS:
        await asyncio.gather(*IMAGE_TASKS, return_exceptions=True)
    IMAGE_TASKS.clear()

    for session_id, orchestrator in list(ORCHESTRATORS.items()):
        try:
            await orchestrator.close()
        except Exception as e:
            logger.error(f"Closing session {session_id} failed: {e}")
    ORCHESTRATORS.clear()
