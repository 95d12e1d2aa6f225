"""CLI commands for avatarpipe using Typer and Rich.

Implements the CLI commands:
- run: Run the avatar-video pipeline for a set of photos and a script
- batch: Submit an image-to-video batch through the concurrency limiter
- images: Generate candidate avatar photos with Runway
- status: Show a session's runs and tasks
- list: List all sessions in a table
- resume: Reconcile a session and wait for its in-flight work
- cancel: Cancel a task or a run
"""

import asyncio
import logging
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from avatarpipe import validate_configuration
from avatarpipe.db import SqlSessionStore, init_database
from avatarpipe.errors import AvatarPipeError, ConfigurationError
from avatarpipe.orchestrator.service import Orchestrator
from avatarpipe.orchestrator.stages import await_terminal
from avatarpipe.schemas.requests import AvatarImageRequest, AvatarVideoRequest, BatchImage, BatchRequest
from avatarpipe.schemas.session import PipelineRun, RunStatus, SessionSnapshot
from avatarpipe.schemas.tasks import TaskStatus

app = typer.Typer(name="avatarpipe", help="Multi-stage avatar video generation pipeline")
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _open(session_id: str, *, name: str = "", create: bool = False, progress=None) -> Orchestrator:
    """Open a session from the database, exiting if it does not exist."""
    await init_database()
    store = SqlSessionStore()
    if not create and await store.load_snapshot(session_id) is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(code=1)
    orchestrator = Orchestrator(store, session_id, progress_callback=progress)
    await orchestrator.open(name)
    return orchestrator


@app.command()
def run(
    images: list[str] = typer.Argument(..., help="Avatar photo paths or URLs"),
    script: str = typer.Option(..., "--script", "-s", help="Text the avatar speaks"),
    voice: Optional[str] = typer.Option(None, "--voice", help="Explicit speech voice type"),
    style: Optional[str] = typer.Option(None, "--style", help="Voice style keyword (e.g. narrator, gentle)"),
    name: str = typer.Option("Generated Avatar", "--name", "-n", help="Avatar group name"),
    title: str = typer.Option("Avatar Video", "--title", "-t", help="Video title"),
    session_id: Optional[str] = typer.Option(None, "--session", help="Existing session to run in"),
):
    """Run the full avatar-video pipeline.

    Synthesizes the script, uploads the photos, builds a photo-avatar group,
    adds motion, and renders one talking-photo video per surviving avatar.
    """
    # Fail-fast configuration validation
    try:
        validate_configuration(require=("heygen", "tts"))
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)

    try:
        request = AvatarVideoRequest(
            images=images, script=script, voice_id=voice, voice_style=style,
            avatar_name=name, title=title,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    asyncio.run(_run_async(request, session_id))


async def _run_async(request: AvatarVideoRequest, session_id: Optional[str]):
    """Async implementation of run command."""
    create = session_id is None
    session_id = session_id or uuid.uuid4().hex

    with console.status("[bold green]Starting pipeline...") as status:
        def callback_wrapper(msg: str):
            status.update(f"[bold green]{msg}")

        orchestrator = await _open(
            session_id, name=request.avatar_name, create=create, progress=callback_wrapper
        )
        console.print(f"[green]Session:[/green] {session_id}")
        try:
            run_record = await orchestrator.start_run(request)
            console.print(f"[green]Run:[/green] {run_record.run_id}")
            final = await orchestrator.execute(run_record)
        except KeyboardInterrupt:
            console.print()
            console.print("[yellow]Pipeline interrupted. Launched tasks can be recovered with:[/yellow]")
            console.print(f"  avatarpipe resume {session_id}")
            raise typer.Exit(code=130)
        except AvatarPipeError as e:
            console.print(f"[red]✗ Pipeline failed:[/red] {e.message}")
            raise typer.Exit(code=1)
        finally:
            await orchestrator.close()

    _print_run(final, orchestrator.snapshot)
    if final.status not in (RunStatus.SUCCEEDED, RunStatus.PARTIALLY_SUCCEEDED):
        raise typer.Exit(code=1)


@app.command()
def batch(
    prompt: str = typer.Argument(..., help="Motion prompt for every image"),
    images: list[str] = typer.Argument(..., help="Still image paths or URLs"),
    duration: int = typer.Option(5, "--duration", "-d", help="Clip duration in seconds"),
    aspect_ratio: str = typer.Option("16:9", "--aspect-ratio", "-a", help="Aspect ratio (text-to-video only)"),
    seed: int = typer.Option(-1, "--seed", help="Generation seed, -1 for random"),
    session_id: Optional[str] = typer.Option(None, "--session", help="Existing session to submit into"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for every clip to finish"),
):
    """Submit an image-to-video batch, at most two clips in flight at a time."""
    try:
        validate_configuration(require=("seedance",))
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)

    request = BatchRequest(
        prompt=prompt,
        images=[BatchImage(url=image, filename=image.rsplit("/", 1)[-1]) for image in images],
        duration=duration,
        aspect_ratio=aspect_ratio,
        seed=seed,
    )
    asyncio.run(_batch_async(request, session_id, wait))


async def _batch_async(request: BatchRequest, session_id: Optional[str], wait: bool):
    """Async implementation of batch command."""
    create = session_id is None
    session_id = session_id or uuid.uuid4().hex
    orchestrator = await _open(session_id, name="Image-to-video batch", create=create)
    console.print(f"[green]Session:[/green] {session_id}")

    try:
        admissions = await orchestrator.submit_batch(request)
        for task, admission in admissions:
            console.print(f"  {task.label}: {admission.value}")

        if wait:
            with console.status("[bold green]Waiting for clips...") as status:
                def _progress(snapshot: SessionSnapshot) -> None:
                    done = sum(
                        1 for t, _ in admissions
                        if snapshot.tasks[t.local_id].status in (
                            TaskStatus.COMPLETED, TaskStatus.DOWNLOADED,
                            TaskStatus.FAILED, TaskStatus.CANCELLED,
                        )
                    )
                    status.update(f"[bold green]{done}/{len(admissions)} clips finished")

                unsubscribe = orchestrator.subscribe(_progress)
                try:
                    await await_terminal(orchestrator.state, [t.local_id for t, _ in admissions])
                finally:
                    unsubscribe()
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Stopped waiting. Resume tracking with:[/yellow]")
        console.print(f"  avatarpipe resume {session_id}")
        raise typer.Exit(code=130)
    except AvatarPipeError as e:
        console.print(f"[red]✗ Batch failed:[/red] {e.message}")
        raise typer.Exit(code=1)
    finally:
        await orchestrator.close()

    _print_tasks(orchestrator.snapshot, [t.local_id for t, _ in admissions])


@app.command()
def images(
    prompt: str = typer.Argument(..., help="Description of the avatar to generate"),
    count: int = typer.Option(4, "--count", "-n", min=1, max=8, help="Number of candidate images"),
    aspect_ratio: str = typer.Option("16:9", "--aspect-ratio", "-a", help="Aspect ratio, e.g. 16:9 or 9:16"),
    reference: Optional[list[str]] = typer.Option(None, "--reference", "-r", help="Reference image URL (repeatable)"),
    session_id: Optional[str] = typer.Option(None, "--session", help="Existing session to submit into"),
):
    """Generate candidate avatar photos with Runway."""
    try:
        validate_configuration(require=("runway",))
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)

    request = AvatarImageRequest(
        prompt=prompt, image_count=count, aspect_ratio=aspect_ratio, reference_images=reference or []
    )
    asyncio.run(_images_async(request, session_id))


async def _images_async(request: AvatarImageRequest, session_id: Optional[str]):
    create = session_id is None
    session_id = session_id or uuid.uuid4().hex
    orchestrator = await _open(session_id, name="Avatar images", create=create)
    console.print(f"[green]Session:[/green] {session_id}")

    try:
        with console.status(f"[bold green]Generating {request.image_count} image(s)..."):
            report = await orchestrator.generate_avatar_images(request)
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Stopped waiting. Resume tracking with:[/yellow]")
        console.print(f"  avatarpipe resume {session_id}")
        raise typer.Exit(code=130)
    except AvatarPipeError as e:
        console.print(f"[red]✗ Image generation failed:[/red] {e.message}")
        raise typer.Exit(code=1)
    finally:
        await orchestrator.close()

    for image in report.images:
        console.print(f"  [green]✓[/green] {image.local_path or image.url}")
    if not report.images:
        console.print("[red]✗ No images were generated[/red]")
        raise typer.Exit(code=1)
    if report.is_partial:
        console.print(f"[yellow]Partially successful: {report.generated}/{report.requested} images generated[/yellow]")


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session ID"),
):
    """Show a session's runs and tasks."""
    asyncio.run(_status_async(session_id))


async def _status_async(session_id: str):
    """Async implementation of status command."""
    await init_database()
    snapshot = await SqlSessionStore().load_snapshot(session_id)
    if snapshot is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(code=1)

    flags = [
        label for label, on in (
            ("generating video", snapshot.is_generating_video),
            ("adding motion", snapshot.is_adding_motion),
            ("uploading", snapshot.is_uploading),
            ("channel occupied", snapshot.is_channel_occupied),
        ) if on
    ]
    info_lines = [
        f"[bold]ID:[/bold] {snapshot.session_id}",
        f"[bold]Name:[/bold] {snapshot.name or '-'}",
        f"[bold]Tasks:[/bold] {len(snapshot.tasks)}",
        f"[bold]Runs:[/bold] {len(snapshot.runs)}",
        f"[bold]Activity:[/bold] {', '.join(flags) if flags else 'idle'}",
        f"[bold]Updated:[/bold] {snapshot.updated_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    console.print(Panel("\n".join(info_lines), title="[bold]Session Status[/bold]", border_style="blue"))

    for run_record in sorted(snapshot.runs.values(), key=lambda r: r.created_at):
        _print_run(run_record, snapshot)
    orphan_ids = [t.local_id for t in snapshot.tasks.values() if t.run_id is None]
    if orphan_ids:
        _print_tasks(snapshot, orphan_ids)


@app.command(name="list")
def list_sessions():
    """List all sessions."""
    asyncio.run(_list_async())


async def _list_async():
    """Async implementation of list command."""
    await init_database()
    snapshots = await SqlSessionStore().list_sessions()

    if not snapshots:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Tasks", justify="right")
    table.add_column("Runs", justify="right")
    table.add_column("Active")
    table.add_column("Updated")

    for snapshot in snapshots:
        active = snapshot.is_channel_occupied or snapshot.count(TaskStatus.QUEUED) > 0
        table.add_row(
            snapshot.session_id[:8] + "...",
            snapshot.name or "-",
            str(len(snapshot.tasks)),
            str(len(snapshot.runs)),
            "[yellow]yes[/yellow]" if active else "[dim]no[/dim]",
            snapshot.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command()
def resume(
    session_id: str = typer.Argument(..., help="Session ID to resume"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for resumed tasks to finish"),
):
    """Reconcile a session and resume tracking of its in-flight tasks.

    Runs that were executing when the session was last saved are closed as
    interrupted; their launched tasks are still polled to completion.
    """
    asyncio.run(_resume_async(session_id, wait))


async def _resume_async(session_id: str, wait: bool):
    """Async implementation of resume command."""
    orchestrator = await _open(session_id)
    try:
        plan = await orchestrator.restore()
        console.print(f"[yellow]Resumed polling:[/yellow] {len(plan.resume_polling)}")
        console.print(f"[yellow]Re-admitted:[/yellow] {len(plan.requeue)}")
        console.print(f"[yellow]Downloaded:[/yellow] {len(plan.download)}")
        if plan.interrupted_runs:
            console.print(f"[yellow]Interrupted runs:[/yellow] {', '.join(plan.interrupted_runs)}")
        if plan.merged_duplicates:
            console.print(f"[yellow]Merged duplicates:[/yellow] {len(plan.merged_duplicates)}")

        pending = plan.resume_polling + plan.requeue
        if wait and pending:
            with console.status(f"[bold green]Waiting for {len(pending)} task(s)..."):
                await await_terminal(orchestrator.state, pending)
            _print_tasks(orchestrator.snapshot, pending)
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Stopped waiting; progress so far is saved.[/yellow]")
        raise typer.Exit(code=130)
    finally:
        await orchestrator.close()


@app.command()
def cancel(
    session_id: str = typer.Argument(..., help="Session ID"),
    target_id: str = typer.Argument(..., help="Task local id, or run id with --run"),
    is_run: bool = typer.Option(False, "--run", help="Cancel a whole run"),
):
    """Cancel a task or a run. Completed work is never rewritten."""
    asyncio.run(_cancel_async(session_id, target_id, is_run))


async def _cancel_async(session_id: str, target_id: str, is_run: bool):
    """Async implementation of cancel command."""
    orchestrator = await _open(session_id)
    try:
        if is_run:
            if orchestrator.state.get_run(target_id) is None:
                console.print(f"[red]Error:[/red] Run not found: {target_id}")
                raise typer.Exit(code=1)
            cancelled = await orchestrator.cancel_run(target_id)
            console.print(f"[green]✓[/green] Cancelled {len(cancelled)} task(s) of run {target_id}")
        else:
            task = orchestrator.state.get_task(target_id)
            if task is None:
                console.print(f"[red]Error:[/red] Task not found: {target_id}")
                raise typer.Exit(code=1)
            if await orchestrator.cancel_task(target_id):
                console.print(f"[green]✓[/green] Cancelled {task.kind.value} task {target_id}")
            else:
                console.print(f"[yellow]Task already {task.status.value}, nothing to cancel[/yellow]")
    finally:
        await orchestrator.close()


# ----------------------------------------------------------------------
# Rendering helpers
# ----------------------------------------------------------------------

def _print_run(run_record: PipelineRun, snapshot: SessionSnapshot) -> None:
    status_color = _get_status_color(run_record.status.value)
    info_lines = [
        f"[bold]Run:[/bold] {run_record.run_id}",
        f"[bold]Status:[/bold] [{status_color}]{run_record.status.value}[/{status_color}]",
        f"[bold]Stages:[/bold] {' → '.join(run_record.stages) or '-'}",
    ]
    total = sum(run_record.log.values())
    if total:
        info_lines.append(f"[bold]Duration:[/bold] {_format_duration(total)}")
    if run_record.error:
        info_lines.append(
            f"[bold]Error:[/bold] [red]{run_record.error.kind.value}: {run_record.error.message}[/red]"
        )
    for warning in run_record.warnings:
        info_lines.append(f"[bold]Warning:[/bold] [yellow]{warning}[/yellow]")

    polled = run_record.stage_results.get("poll_videos")
    if polled is not None:
        for video in polled.output.get("videos", []):
            info_lines.append(
                f"[bold]Video:[/bold] [green]{video.get('local_path') or video.get('url')}[/green]"
            )

    console.print(Panel("\n".join(info_lines), title="[bold]Pipeline Run[/bold]", border_style="blue"))


def _print_tasks(snapshot: SessionSnapshot, local_ids: list[str]) -> None:
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Task", style="dim")
    table.add_column("Kind")
    table.add_column("Label")
    table.add_column("Status")
    table.add_column("Result / Error")

    for local_id in local_ids:
        task = snapshot.tasks.get(local_id)
        if task is None:
            continue
        status_color = _get_status_color(task.status.value)
        if task.error is not None:
            detail = f"[red]{task.error.kind.value}: {task.error.message}[/red]"
        elif task.result is not None:
            detail = task.result.local_path or task.result.url or ""
        else:
            detail = ""
        table.add_row(
            local_id[:8] + "...",
            task.kind.value,
            task.label or "-",
            f"[{status_color}]{task.status.value}[/{status_color}]",
            detail,
        )
    console.print(table)


def _format_duration(duration: float) -> str:
    if duration < 60:
        return f"{duration:.1f}s"
    mins = int(duration // 60)
    secs = duration % 60
    return f"{mins}m {secs:.1f}s"


def _get_status_color(status: str) -> str:
    """Get Rich color for a run or task status.

    Color coding:
    - succeeded/completed/downloaded: green
    - failed: red
    - partial and in-progress states: yellow
    - queued/cancelled: dim
    """
    if status in ("succeeded", "completed", "downloaded"):
        return "green"
    elif status == "failed":
        return "red"
    elif status in ("partially_succeeded", "running", "submitted", "processing"):
        return "yellow"
    elif status in ("queued", "cancelled"):
        return "dim"
    else:
        return "white"
