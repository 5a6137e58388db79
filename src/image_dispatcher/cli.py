"""Command line for dispatching image builds and inspecting their results."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from sqlmodel import Session

from .build_service import Dispatcher, build_result, recent_dispatches
from .config import settings
from .database import engine, init_db
from .errors import DispatchError, PackageVisibilityError
from .git_utils import GitError, list_remote_refs, repository_url
from .log_utils import init_logging
from .models import BuildRequest, BuildResult, Dispatch, DispatchStatus, FailureKind
from .time_utils import format_duration, format_local_datetime

app = typer.Typer(no_args_is_help=True, help="Trigger GitHub Actions image builds and track what they publish.")

_console = Console()

EXIT_CODES = {
    FailureKind.checkout: 10,
    FailureKind.build: 11,
    FailureKind.registry_auth: 12,
    FailureKind.registry_push: 13,
    FailureKind.cancelled: 14,
    FailureKind.timeout: 15,
    FailureKind.dispatch: 16,
}
STATUS_STYLES = {"queued": "yellow", "running": "cyan", "success": "green", "failed": "red"}


@app.callback()
def _setup(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level.")) -> None:
    init_logging("DEBUG" if verbose else settings.log_level)
    init_db()


def _print_result(result: BuildResult) -> None:
    if result.success:
        _console.print(f"[green]Published[/green] {result.image_reference}")
        for ref in result.image_references[1:]:
            _console.print(f"          {ref}")
        if result.digest:
            _console.print(f"[dim]digest {result.digest}[/dim]")
    else:
        kind = result.failure_kind.value if result.failure_kind else "unknown"
        _console.print(f"[red]Failed ({kind})[/red] {escape(result.error or '')}")
    if result.run_url:
        _console.print(f"[dim]run {result.run_url}[/dim]")
    if result.log_path:
        _console.print(f"[dim]log {result.log_path}[/dim]")


def _exit_for(result: BuildResult) -> None:
    if not result.success:
        raise typer.Exit(code=EXIT_CODES.get(result.failure_kind, 1))


def _load(session: Session, dispatch_id: int) -> Dispatch:
    dispatch = session.get(Dispatch, dispatch_id)
    if not dispatch:
        _console.print(f"[red]Dispatch {dispatch_id} not found[/red]")
        raise typer.Exit(code=1)
    return dispatch


@app.command()
def submit(
    repository: str = typer.Argument(..., help="Source repository as owner/name."),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch to build."),
    image_name: Optional[str] = typer.Option(None, "--image", "-i", help="Image name (defaults to the repository name)."),
    tags: List[str] = typer.Option(["latest"], "--tag", "-t", help="Tag to publish; repeatable."),
    platforms: List[str] = typer.Option([], "--platform", "-p", help="Target platform; repeatable."),
    dockerfile: str = typer.Option(settings.default_dockerfile, "--dockerfile", "-f"),
    context: str = typer.Option(settings.default_context, "--context", "-c"),
) -> None:
    """Trigger a build, wait for it and print the published image reference."""
    try:
        request = BuildRequest(
            repository=repository,
            branch=branch,
            image_name=image_name,
            tags=tags,
            platforms=platforms,
            dockerfile=dockerfile,
            context=context,
        )
    except ValidationError as exc:
        raise typer.BadParameter(str(exc)) from exc

    dispatcher = Dispatcher()
    try:
        with _console.status(f"Dispatching {request.repository}@{request.branch}..."):
            result = dispatcher.submit(request, triggered_by="cli")
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    finally:
        dispatcher.close()
    _print_result(result)
    _exit_for(result)


@app.command()
def status(dispatch_id: int = typer.Argument(..., help="Dispatch id.")) -> None:
    """Show the recorded state of one dispatch."""
    with Session(engine) as session:
        dispatch = _load(session, dispatch_id)
        table = Table(title=f"Dispatch {dispatch.id}", show_header=False)
        table.add_column("Field", style="bright_green", no_wrap=True)
        table.add_column("Value")
        table.add_row("Source", f"{dispatch.repository}@{dispatch.branch}")
        table.add_row("Commit", dispatch.sha or "-")
        table.add_row("Image", f"{dispatch.image_name} ({dispatch.tags})")
        table.add_row("Platforms", dispatch.platforms)
        table.add_row("Status", dispatch.status.value)
        table.add_row("Failure", dispatch.failure_kind.value if dispatch.failure_kind else "-")
        table.add_row("Created", format_local_datetime(dispatch.created_at))
        table.add_row("Duration", format_duration(dispatch.duration_seconds))
        _console.print(table)
        finished = dispatch.status in (DispatchStatus.success, DispatchStatus.failed)
        result = build_result(dispatch)
    if finished:
        _print_result(result)
        _exit_for(result)


@app.command(name="list")
def list_(limit: int = typer.Option(20, "--limit", "-n")) -> None:
    """List recent dispatches."""
    with Session(engine) as session:
        dispatches = recent_dispatches(session, limit)
    table = Table(title="Dispatches")
    table.add_column("ID", justify="right")
    table.add_column("Source", style="bright_green")
    table.add_column("Image")
    table.add_column("Status")
    table.add_column("Created", style="dim")
    table.add_column("Duration", style="dim")
    for dispatch in dispatches:
        state = dispatch.status.value
        if dispatch.failure_kind:
            state = f"{state} ({dispatch.failure_kind.value})"
        style = STATUS_STYLES.get(dispatch.status.value, "white")
        table.add_row(
            str(dispatch.id),
            f"{dispatch.repository}@{dispatch.branch}",
            dispatch.image_reference or dispatch.image_name,
            f"[{style}]{state}[/{style}]",
            format_local_datetime(dispatch.created_at),
            format_duration(dispatch.duration_seconds),
        )
    _console.print(table)


@app.command()
def log(dispatch_id: int = typer.Argument(..., help="Dispatch id.")) -> None:
    """Print the collected git and job output of a dispatch."""
    with Session(engine) as session:
        dispatch = _load(session, dispatch_id)
    if not dispatch.log_path or not Path(dispatch.log_path).exists():
        _console.print("[yellow]No log recorded yet[/yellow]")
        raise typer.Exit(code=1)
    typer.echo(Path(dispatch.log_path).read_text(encoding="utf-8", errors="replace"))


@app.command()
def cancel(dispatch_id: int = typer.Argument(..., help="Dispatch id.")) -> None:
    """Stop an in-flight dispatch."""
    dispatcher = Dispatcher()
    try:
        dispatch = dispatcher.cancel(dispatch_id)
    except ValueError as exc:
        _console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=1)
    except DispatchError as exc:
        _console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=EXIT_CODES[exc.kind])
    finally:
        dispatcher.close()
    _console.print(f"Cancellation requested for dispatch {dispatch.id}")


@app.command(name="make-public")
def make_public(image_reference: str = typer.Argument(..., help="e.g. ghcr.io/owner/image:tag")) -> None:
    """Check an image can be pulled anonymously, or print where to make it public."""
    dispatcher = Dispatcher()
    try:
        dispatcher.make_public(image_reference)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except PackageVisibilityError as exc:
        _console.print(f"[yellow]{escape(str(exc))}[/yellow]")
        raise typer.Exit(code=EXIT_CODES[exc.kind])
    except DispatchError as exc:
        _console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=EXIT_CODES[exc.kind])
    finally:
        dispatcher.close()
    _console.print(f"[green]{image_reference} is public[/green]")


@app.command()
def refs(
    repository: str = typer.Argument(..., help="Source repository as owner/name."),
    tags: bool = typer.Option(False, "--tags", help="List tags instead of branches."),
) -> None:
    """List branches (or tags) a dispatch could build."""
    try:
        names = list_remote_refs(repository_url(repository), settings.token, "tag" if tags else "branch")
    except GitError as exc:
        _console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=EXIT_CODES[FailureKind.checkout])
    for name in names:
        typer.echo(name)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address."),
    port: Optional[int] = typer.Option(None, help="Bind port."),
    reload: Optional[bool] = typer.Option(None, "--reload/--no-reload"),
) -> None:
    """Run the HTTP API."""
    from .main import main

    main(host=host, port=port, reload=reload)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
