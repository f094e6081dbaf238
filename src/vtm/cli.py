"""VTM command-line interface.

Thin glue over the library: parse arguments, call one operation, render the
result as text or JSON, and map each error kind to its own exit code.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from vtm import __version__
from vtm.config import VtmConfig, load_config
from vtm.context import ContextBuilder, build_planning_summary, build_summary
from vtm.errors import VtmError
from vtm.graph import blocked_tasks, ready_tasks
from vtm.history import TransactionLog
from vtm.ingest import IngestionEngine, load_batch_file
from vtm.models import TASK_STATUSES
from vtm.research_cache import ResearchCache
from vtm.store import ManifestStore

cli = typer.Typer(
    name="vtm",
    help="VTM - token-efficient task manifest for code-generation agents",
    no_args_is_help=True,
)
history_app = typer.Typer(help="Transaction history and rollback", no_args_is_help=True)
cache_app = typer.Typer(help="Research cache maintenance", no_args_is_help=True)
cli.add_typer(history_app, name="history")
cli.add_typer(cache_app, name="cache")

console = Console()


@dataclass
class _State:
    config: VtmConfig

    @property
    def store(self) -> ManifestStore:
        return ManifestStore(self.config.manifest_path)

    @property
    def cache(self) -> ResearchCache:
        return ResearchCache(self.config.cache_dir, self.config.cache_ttl_minutes)


def _state(ctx: typer.Context) -> _State:
    state: _State = ctx.obj
    return state


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@contextmanager
def _vtm_errors() -> Iterator[None]:
    """Render a VtmError with its remedy and exit with the kind's code."""
    try:
        yield
    except VtmError as exc:
        console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
        if exc.remedy:
            console.print(f"[yellow]Fix:[/yellow] {escape(exc.remedy)}")
        raise typer.Exit(exc.exit_code) from exc


def _version_option_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@cli.callback()
def _cli_callback(
    ctx: typer.Context,
    manifest: Path | None = typer.Option(None, "--manifest", help="Manifest path (overrides config)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log operations to stderr"),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show VTM version and exit.",
        is_eager=True,
        callback=_version_option_callback,
    ),
) -> None:
    """Resolve configuration once per invocation."""
    _ = version
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )
    try:
        config = load_config()
    except RuntimeError as exc:
        console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
        raise typer.Exit(1) from exc
    if manifest is not None:
        config = VtmConfig(
            manifest_path=manifest.resolve(),
            cache_dir=config.cache_dir,
            cache_ttl_minutes=config.cache_ttl_minutes,
        )
    ctx.obj = _State(config=config)


@cli.command()
def init(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Project name"),
    description: str = typer.Option("", "--description", help="Project description"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing manifest"),
) -> None:
    """Create an empty manifest."""
    store = _state(ctx).store
    try:
        store.initialize(name, description, force=force)
    except FileExistsError as exc:
        console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
        console.print("[yellow]Fix:[/yellow] pass --force to overwrite it.")
        raise typer.Exit(1) from exc
    console.print(f"[green]✓ Manifest created[/green] {store.path}")


@cli.command(name="next")
def next_cmd(
    ctx: typer.Context,
    number: int = typer.Option(5, "--number", "-n", help="Number of tasks to show"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Show tasks that are ready to start."""
    with _vtm_errors():
        ready = ready_tasks(_state(ctx).store.load())[: max(number, 0)]
    if as_json:
        _echo_json([task.to_dict() for task in ready])
        return
    if not ready:
        console.print("[yellow]No ready tasks.[/yellow]")
        return
    for task in ready:
        console.print(
            f"[cyan]{task.id}[/cyan] {escape(task.title)} "
            f"[dim]({task.test_strategy}, {task.risk}, {task.estimated_hours:g}h)[/dim]"
        )


@cli.command()
def task(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task id, e.g. TASK-001"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Show a single task."""
    with _vtm_errors():
        item = _state(ctx).store.get_task(task_id)
    if as_json:
        _echo_json(item.to_dict())
        return
    console.print(f"[bold cyan]{item.id}[/bold cyan] {escape(item.title)}")
    console.print(f"Status: {item.status}")
    console.print(f"Dependencies: {', '.join(item.dependencies) or '(none)'}")
    console.print(escape(item.description))


@cli.command()
def context(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task id"),
    compact: bool = typer.Option(False, "--compact", help="Single-paragraph context for tight budgets"),
) -> None:
    """Print bounded context for a code-generation agent."""
    builder = ContextBuilder(_state(ctx).store)
    with _vtm_errors():
        text = builder.build_compact_context(task_id) if compact else builder.build_minimal_context(task_id)
    typer.echo(text, nl=False)


@cli.command()
def start(ctx: typer.Context, task_id: str = typer.Argument(..., help="Task id")) -> None:
    """Mark a task in progress."""
    with _vtm_errors():
        item = _state(ctx).store.start_task(task_id)
    console.print(f"[green]✓ {item.id} started[/green]")


@cli.command()
def complete(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task id"),
    commits: str = typer.Option("", "--commits", help="Comma-separated commit SHAs"),
    tests_pass: bool = typer.Option(False, "--tests-pass", help="All tests passing"),
) -> None:
    """Mark a task completed."""
    shas = [sha.strip() for sha in commits.split(",") if sha.strip()]
    store = _state(ctx).store
    with _vtm_errors():
        item = store.complete_task(task_id, commits=shas, tests_pass=tests_pass or None)
        unblocked = [t.id for t in ready_tasks(store.load()) if task_id in t.dependencies]
    console.print(f"[green]✓ {item.id} completed[/green]")
    if unblocked:
        console.print(f"[cyan]Now ready:[/cyan] {', '.join(unblocked)}")


@cli.command()
def stats(ctx: typer.Context, as_json: bool = typer.Option(False, "--json", help="Output JSON")) -> None:
    """Show project statistics."""
    with _vtm_errors():
        manifest = _state(ctx).store.load()
    payload = manifest.stats.to_dict()
    if as_json:
        _echo_json(payload)
        return
    console.print(f"[bold]{escape(manifest.project.name)}[/bold]")
    for key, value in payload.items():
        console.print(f"  {key}: {value}")
    total = payload["total_tasks"]
    if total:
        console.print(f"  progress: {payload['completed'] / total * 100:.0f}%")


@cli.command(name="list")
def list_cmd(
    ctx: typer.Context,
    status: str | None = typer.Option(None, "--status", "-s", help="pending|in-progress|completed|blocked"),
    blocked: bool = typer.Option(False, "--blocked", help="Only tasks waiting on dependencies"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """List tasks."""
    if status is not None and status not in TASK_STATUSES:
        console.print(f"[bold red]Error:[/bold red] --status must be one of: {', '.join(TASK_STATUSES)}")
        raise typer.Exit(2)
    with _vtm_errors():
        manifest = _state(ctx).store.load()
    tasks = blocked_tasks(manifest) if blocked else list(manifest.tasks)
    if status is not None:
        tasks = [t for t in tasks if t.status == status]
    if as_json:
        _echo_json([{"id": t.id, "title": t.title, "status": t.status} for t in tasks])
        return
    table = Table("ID", "Status", "Title")
    for item in tasks:
        table.add_row(item.id, item.status, escape(item.title))
    console.print(table)


@cli.command()
def summary(
    ctx: typer.Context,
    incomplete: bool = typer.Option(False, "--incomplete", help="Only pending and in-progress tasks"),
    planning: bool = typer.Option(False, "--planning", help="Incomplete tasks plus completed capabilities"),
) -> None:
    """Lightweight JSON task listing for planning agents."""
    with _vtm_errors():
        manifest = _state(ctx).store.load()
    if planning:
        _echo_json(build_planning_summary(manifest))
        return
    _echo_json([item.to_dict() for item in build_summary(manifest, incomplete)])


@cli.command()
def ingest(
    ctx: typer.Context,
    batch_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON or YAML batch"),
    commit: bool = typer.Option(False, "--commit/--preview", help="Write the batch (default: preview only)"),
    source: str | None = typer.Option(None, "--source", help="Source identifier recorded in history"),
    strict: bool = typer.Option(False, "--strict", help="Refuse batches that produce warnings"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Validate a batch of proposed tasks and optionally merge it."""
    engine = IngestionEngine(_state(ctx).store)
    label = source or str(batch_file)
    with _vtm_errors():
        document = load_batch_file(batch_file)
        if commit:
            result = engine.commit(document, label, strict=strict)
            preview = result.preview
        else:
            result = None
            preview = engine.preview(document, label, strict=strict)

    if as_json:
        _echo_json(result.to_dict() if result is not None else preview.to_dict())
        return
    if not preview.tasks:
        console.print("[yellow]Empty batch; nothing to ingest.[/yellow]")
        return
    for item in preview.tasks:
        deps = ", ".join(item.dependencies) or "none"
        console.print(f"[cyan]{item.id}[/cyan] {escape(item.title)} [dim](deps: {deps})[/dim]")
    for warning in preview.warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
    if result is not None and result.transaction is not None:
        console.print(f"[green]✓ Ingested {len(preview.tasks)} task(s)[/green] as {result.transaction.id}")
    else:
        console.print("[dim]Preview only. Re-run with --commit to write.[/dim]")


@history_app.command(name="list")
def history_list(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", "-n", help="Number of transactions"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Show recent transactions, newest first."""
    with _vtm_errors():
        entries = TransactionLog(_state(ctx).store).list_transactions(limit)
    if as_json:
        _echo_json([entry.to_dict() for entry in entries])
        return
    if not entries:
        console.print("[yellow]No history yet.[/yellow]")
        return
    table = Table("ID", "Action", "Source", "Tasks")
    for entry in entries:
        touched = entry.tasks_added if entry.action == "ingest" else entry.tasks_removed
        table.add_row(entry.id, entry.action, escape(entry.source), str(len(touched)))
    console.print(table)


@history_app.command(name="show")
def history_show(ctx: typer.Context, transaction_id: str = typer.Argument(..., help="Transaction id")) -> None:
    """Show one transaction with the current state of its tasks."""
    with _vtm_errors():
        detail = TransactionLog(_state(ctx).store).detail(transaction_id)
    _echo_json(detail.to_dict())


@history_app.command(name="rollback")
def history_rollback(
    ctx: typer.Context,
    transaction_id: str = typer.Argument(..., help="Ingest transaction to undo"),
    force: bool = typer.Option(False, "--force", help="Roll back even if other tasks depend on it"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be removed"),
) -> None:
    """Remove every task added by an ingest transaction."""
    log = TransactionLog(_state(ctx).store)
    with _vtm_errors():
        result = log.rollback(transaction_id, force=force, dry_run=dry_run)
    for warning in result.preview.in_progress_warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
    for ref in result.preview.blocking_dependents:
        console.print(f"[yellow]Dangling reference left in {ref.id}[/yellow]")
    removed = ", ".join(ref.id for ref in result.preview.tasks_to_remove) or "(none)"
    if result.transaction is None:
        console.print(f"[dim]Dry run: would remove {removed}[/dim]")
        return
    console.print(f"[green]✓ Rolled back {transaction_id}[/green] as {result.transaction.id}: {removed}")


@history_app.command(name="stats")
def history_stats(ctx: typer.Context) -> None:
    """Summarize transaction history."""
    with _vtm_errors():
        payload = TransactionLog(_state(ctx).store).stats().to_dict()
    _echo_json(payload)


@history_app.command(name="search")
def history_search(ctx: typer.Context, text: str = typer.Argument(..., help="Substring of the source")) -> None:
    """Find transactions by source."""
    with _vtm_errors():
        entries = TransactionLog(_state(ctx).store).search(text)
    _echo_json([entry.to_dict() for entry in entries])


@cache_app.command(name="get")
def cache_get(ctx: typer.Context, query: str = typer.Argument(...)) -> None:
    """Print a cached result; exit 1 on a miss."""
    with _vtm_errors():
        result = _state(ctx).cache.get(query)
    if result is None:
        console.print("[yellow]Cache miss.[/yellow]")
        raise typer.Exit(1)
    typer.echo(result)


@cache_app.command(name="set")
def cache_set(
    ctx: typer.Context,
    query: str = typer.Argument(...),
    result: str = typer.Argument(..., help="Result text, or @path to read from a file"),
    tag: list[str] = typer.Option([], "--tag", "-t", help="Tag (repeat option)"),
) -> None:
    """Store a research result."""
    if result.startswith("@"):
        try:
            result = Path(result[1:]).read_text(encoding="utf-8")
        except OSError as exc:
            raise typer.BadParameter(f"cannot read {result[1:]}: {exc.strerror or exc}", param_hint="RESULT") from exc
    with _vtm_errors():
        entry = _state(ctx).cache.set(query, result, tag)
    console.print(f"[green]✓ Cached[/green] {entry.key}")


@cache_app.command(name="search")
def cache_search(
    ctx: typer.Context,
    tag: list[str] = typer.Option([], "--tag", "-t", help="Required tag (repeat option)"),
) -> None:
    """List unexpired entries carrying every given tag."""
    with _vtm_errors():
        entries = _state(ctx).cache.search(tag)
    _echo_json([{"key": e.key, "query": e.query, "tags": list(e.tags), "timestamp": e.timestamp} for e in entries])


@cache_app.command(name="stats")
def cache_stats(ctx: typer.Context) -> None:
    """Show cache size and entry count."""
    with _vtm_errors():
        payload = _state(ctx).cache.get_stats().to_dict()
    _echo_json(payload)


@cache_app.command(name="clear")
def cache_clear(
    ctx: typer.Context,
    expired: bool = typer.Option(False, "--expired", help="Only remove expired entries"),
) -> None:
    """Delete cache entries."""
    research = _state(ctx).cache
    with _vtm_errors():
        removed = research.clear_expired() if expired else research.clear()
    console.print(f"[green]✓ Removed {removed} entries[/green]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
