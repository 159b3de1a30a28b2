"""CLI commands for genqueue using Typer and Rich.

Commands:
- init-db: Create the database schema
- add-project: Register a project and the stages it requests
- generate: Queue a project's stage tasks
- list: Show queue tasks in a table
- stats: Show queue counters and concurrency ceilings
- retry / cancel: Operate on a single task
- worker: Run the dispatcher until interrupted (or until idle)
- serve: Run the HTTP API
"""

import asyncio
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from genqueue.api.app import build_scheduler
from genqueue.config import settings
from genqueue.db import init_database, shutdown
from genqueue.logging_setup import configure_logging
from genqueue.orchestrator.errors import GenqueueError
from genqueue.orchestrator.state import TaskStatus, TaskType
from genqueue.schemas.task import TaskRecord

app = typer.Typer(name="genqueue", help="Staged content generation task scheduler")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    config = settings.logging.model_copy(update={"level": "DEBUG"}) if verbose else settings.logging
    configure_logging(config)


def _run(coro):
    """Run a command coroutine, turning scheduler errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except GenqueueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


async def _with_scheduler(action):
    await init_database()
    scheduler = build_scheduler()
    try:
        return await action(scheduler)
    finally:
        await shutdown()


@app.command("init-db")
def init_db():
    """Create the projects and queue_tasks tables."""
    asyncio.run(_init_db_async())


async def _init_db_async():
    await init_database()
    await shutdown()
    console.print(f"[green]✓[/green] Database ready: {settings.storage.database_url}")


@app.command("add-project")
def add_project(
    title: str = typer.Argument(..., help="Project title"),
    stages: Optional[List[TaskType]] = typer.Option(None, "--stage", "-s", help="Stage to request (repeatable)"),
    priority: int = typer.Option(0, "--priority", "-p", help="Project priority (lower runs first)"),
):
    """Register a project with the stages it requests."""
    project = _run(
        _with_scheduler(lambda s: s.create_project(title, stages or [], priority))
    )
    console.print(f"[green]✓[/green] Project created: {project.id}")
    console.print(f"[bold]Stages:[/bold] {', '.join(s.value for s in project.stages)}")


@app.command()
def generate(
    project_id: str = typer.Argument(..., help="Project ID"),
    stages: Optional[List[TaskType]] = typer.Option(None, "--stage", "-s", help="Override requested stages"),
):
    """Queue the project's stage tasks (run `genqueue worker` to execute them)."""
    tasks = _run(
        _with_scheduler(lambda s: s.generate(project_id, stages or None))
    )
    console.print(f"[green]✓[/green] Queued {len(tasks)} tasks for project {project_id}")
    console.print(_task_table(tasks))


@app.command(name="list")
def list_tasks(
    status: Optional[TaskStatus] = typer.Option(None, "--status", help="Filter by status"),
    project_id: Optional[str] = typer.Option(None, "--project", help="Filter by project ID"),
):
    """List queue tasks in dispatch order."""
    tasks = _run(
        _with_scheduler(lambda s: s.list_tasks(status=status, project_id=project_id))
    )
    if not tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return
    console.print(_task_table(tasks))


@app.command()
def stats():
    """Show queue counters and concurrency ceilings."""
    result = _run(_with_scheduler(lambda s: s.get_stats()))

    info_lines = [
        f"[bold]Pending:[/bold] {result.pending}",
        f"[bold]Processing:[/bold] {result.processing}",
        f"[bold]Completed (last {settings.queue.stats_window_hours}h):[/bold] [green]{result.completed_last_24h}[/green]",
        f"[bold]Failed (last {settings.queue.stats_window_hours}h):[/bold] [red]{result.failed_last_24h}[/red]",
        f"[bold]Total:[/bold] {result.total}",
        f"[bold]Max projects:[/bold] {result.max_projects}",
        "[bold]Max per stage:[/bold] "
        + ", ".join(f"{t.value}={n}" for t, n in result.max_per_stage.items()),
    ]
    console.print(Panel("\n".join(info_lines), title="[bold]Queue Stats[/bold]", border_style="blue"))


@app.command()
def retry(task_id: str = typer.Argument(..., help="Failed task ID")):
    """Return a failed task to pending."""
    task = _run(_with_scheduler(lambda s: s.retry_task(task_id)))
    console.print(f"[green]✓[/green] Task {task.id} re-queued ({task.task_type.value})")


@app.command()
def cancel(task_id: str = typer.Argument(..., help="Task ID")):
    """Cancel a pending task (and its dependents)."""
    task = _run(_with_scheduler(lambda s: s.cancel_task(task_id)))
    console.print(f"[yellow]Task {task.id} {task.status.value}[/yellow]")


@app.command()
def worker(
    until_idle: bool = typer.Option(False, "--until-idle", help="Exit once nothing is left to run"),
):
    """Run the dispatcher, printing status changes as they happen."""
    try:
        _run(_worker_async(until_idle))
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Worker interrupted. Processing tasks are recovered on next start.[/yellow]")
        raise typer.Exit(code=130)


async def _worker_async(until_idle: bool):
    await init_database()
    scheduler = build_scheduler()

    def show_status(task_id, status, error):
        color = _get_status_color(TaskStatus(status).value)
        line = f"[{color}]{TaskStatus(status).value}[/{color}] {task_id[:8]}..."
        if error:
            line += f" [dim]{error}[/dim]"
        console.print(line)

    scheduler.on_status_change(show_status)
    scheduler.on_pipeline_complete(lambda: console.print("[bold green]Queue drained[/bold green]"))

    await scheduler.start()
    try:
        if until_idle:
            await scheduler.wait_until_idle()
        else:
            await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await shutdown()


@app.command()
def serve():
    """Run the HTTP API with the scheduler in-process."""
    import uvicorn

    uvicorn.run(
        "genqueue.api.app:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
        log_config=None,
    )


def _task_table(tasks: List[TaskRecord]) -> Table:
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Project", style="dim")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Progress", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Depends on", style="dim")

    for task in tasks:
        color = _get_status_color(task.status.value)
        table.add_row(
            task.id[:8] + "...",
            task.project_id[:8] + "...",
            task.task_type.value,
            f"[{color}]{task.status.value}[/{color}]",
            str(task.priority),
            f"{task.progress}%",
            f"{task.attempts}/{task.max_attempts}",
            task.depends_on_task_id[:8] + "..." if task.depends_on_task_id else "-",
        )
    return table


def _get_status_color(status: str) -> str:
    """Get Rich color for a task status.

    Color coding:
    - completed: green
    - failed: red
    - processing: yellow
    - pending, cancelled: dim
    """
    if status == "completed":
        return "green"
    elif status == "failed":
        return "red"
    elif status == "processing":
        return "yellow"
    elif status in ("pending", "cancelled"):
        return "dim"
    else:
        return "white"
