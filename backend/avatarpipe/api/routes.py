"""API route handlers for sessions, runs, batches, avatar images and cancellation."""

import logging
import uuid
from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Request

from avatarpipe.db.store import SessionStore
from avatarpipe.orchestrator.limiter import Admission
from avatarpipe.orchestrator.service import Orchestrator
from avatarpipe.orchestrator.state import is_terminal
from avatarpipe.schemas.requests import (
    AvatarImageRequest,
    AvatarVideoRequest,
    BatchAccepted,
    BatchRequest,
    CancelResponse,
    CreateSessionRequest,
    RunStarted,
    SessionSummary,
)
from avatarpipe.schemas.session import TERMINAL_RUN_STATUSES, PipelineRun, SessionSnapshot
from avatarpipe.workers.runs import collect_images_background, get_orchestrator, start_run_background

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ============================================================================
# Helpers
# ============================================================================

def _store(request: Request) -> SessionStore:
    return request.app.state.store


async def _orchestrator(request: Request, session_id: str) -> Orchestrator:
    orchestrator = await get_orchestrator(
        _store(request),
        session_id,
        factory=getattr(request.app.state, "orchestrator_factory", None),
        create=False,
    )
    if orchestrator is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return orchestrator


def _accepted(session_id: str, admissions) -> BatchAccepted:
    return BatchAccepted(
        session_id=session_id,
        task_ids=[task.local_id for task, _ in admissions],
        dispatched=sum(1 for _, a in admissions if a == Admission.DISPATCHED),
        queued=sum(1 for _, a in admissions if a == Admission.QUEUED),
        failed=sum(1 for _, a in admissions if a == Admission.FAILED),
    )


def _summary(snapshot: SessionSnapshot) -> SessionSummary:
    return SessionSummary(
        session_id=snapshot.session_id,
        name=snapshot.name,
        updated_at=snapshot.updated_at.isoformat(),
        task_count=len(snapshot.tasks),
        run_count=len(snapshot.runs),
        is_processing=(
            snapshot.is_channel_occupied
            or snapshot.is_generating_video
            or snapshot.is_adding_motion
            or snapshot.is_uploading
        ),
    )


# ============================================================================
# Endpoint Handlers
# ============================================================================

@router.post("/sessions", status_code=201, response_model=SessionSummary)
async def create_session(body: CreateSessionRequest, request: Request):
    """Create a new session and return its summary."""
    session_id = uuid.uuid4().hex
    orchestrator = await get_orchestrator(
        _store(request),
        session_id,
        name=body.name,
        factory=getattr(request.app.state, "orchestrator_factory", None),
    )
    return _summary(orchestrator.snapshot)


@router.get("/sessions", response_model=list[SessionSummary])
async def list_sessions(request: Request):
    """List stored sessions, most recently updated first."""
    snapshots = await _store(request).list_sessions()
    return [_summary(s) for s in snapshots]


@router.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(session_id: str, request: Request):
    """Return the live snapshot, reopening and restoring the session if needed."""
    orchestrator = await _orchestrator(request, session_id)
    return orchestrator.snapshot


@router.post("/sessions/{session_id}/runs", status_code=202, response_model=RunStarted)
async def start_run(session_id: str, body: AvatarVideoRequest, request: Request):
    """Start an avatar-video run in the background.

    Returns 503 (ConfigurationError) before anything is recorded when a
    required provider is not configured.
    """
    orchestrator = await _orchestrator(request, session_id)
    run = await orchestrator.start_run(body)
    start_run_background(orchestrator, run)
    return RunStarted(session_id=session_id, run_id=run.run_id)


@router.get("/sessions/{session_id}/runs/{run_id}", response_model=PipelineRun)
async def get_run(session_id: str, run_id: str, request: Request):
    orchestrator = await _orchestrator(request, session_id)
    run = orchestrator.state.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.post("/sessions/{session_id}/batches", status_code=202, response_model=BatchAccepted)
async def submit_batch(session_id: str, body: BatchRequest, request: Request):
    """Admit an image-to-video batch through the concurrency limiter."""
    orchestrator = await _orchestrator(request, session_id)
    admissions = await orchestrator.submit_batch(body)
    return _accepted(session_id, admissions)


@router.post("/sessions/{session_id}/avatar-images", status_code=202, response_model=BatchAccepted)
async def generate_avatar_images(session_id: str, body: AvatarImageRequest, request: Request):
    """Start N avatar photo generations; results land in the session snapshot."""
    orchestrator = await _orchestrator(request, session_id)
    admissions = await orchestrator.submit_avatar_images(body)
    collect_images_background(orchestrator, [task.local_id for task, _ in admissions])
    return _accepted(session_id, admissions)


@router.post("/sessions/{session_id}/tasks/{task_id}/cancel", response_model=CancelResponse)
async def cancel_task(session_id: str, task_id: str, request: Request):
    """Cancel one task. Terminal tasks are left untouched."""
    orchestrator = await _orchestrator(request, session_id)
    task = orchestrator.state.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    if is_terminal(task.status):
        return CancelResponse(cancelled=False, detail=f"Task already {task.status.value}")

    cancelled = await orchestrator.cancel_task(task_id)
    return CancelResponse(cancelled=cancelled, detail="" if cancelled else "Task finished before cancel")


@router.post("/sessions/{session_id}/runs/{run_id}/cancel", response_model=CancelResponse)
async def cancel_run(session_id: str, run_id: str, request: Request):
    """Cancel a run at its next stage boundary and stop its open tasks."""
    orchestrator = await _orchestrator(request, session_id)
    run = orchestrator.state.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")

    if run.status in TERMINAL_RUN_STATUSES:
        return CancelResponse(cancelled=False, detail=f"Run already {run.status.value}")

    cancelled = await orchestrator.cancel_run(run_id)
    return CancelResponse(cancelled=True, detail=f"{len(cancelled)} task(s) cancelled")


@router.post("/sessions/{session_id}/restore")
async def restore_session(session_id: str, request: Request):
    """Reconcile the session and resume its in-flight work."""
    orchestrator = await _orchestrator(request, session_id)
    plan = await orchestrator.restore()
    return asdict(plan)


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
