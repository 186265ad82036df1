"""Shared plumbing for CLI commands: context lifetime and rendering."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..core.context import OrchestrationContext
from ..database.models import JobStatus
from ..foundation.config import ConfigManager
from ..foundation.errors import ErrorContext, ErrorHandler, ErrorInfo
from ..services.jobs import JobResultSet, JobService, JobStatusView

console = Console()

T = TypeVar("T")

STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.WAITING: "yellow",
    JobStatus.RUNNING: "blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "magenta",
}


def cli_error_handler(ctx: click.Context) -> ErrorHandler:
    """Error handler shared by every context one CLI invocation opens."""
    ctx.ensure_object(dict)
    handler = ctx.obj.get("error_handler")
    if handler is None:
        handler = ctx.obj["error_handler"] = ErrorHandler()
    return handler


def report_error(ctx: click.Context, error: Exception) -> ErrorInfo:
    """Record a failed command before it is shown to the user."""
    operation = ctx.command_path.replace(" ", "_") if ctx.command_path else "cli"
    return cli_error_handler(ctx).handle_error(error, ErrorContext(operation=operation))


def run_with_service(ctx: click.Context, operation: Callable[[JobService], Awaitable[T]]) -> T:
    """Run ``operation`` against a freshly started orchestration context.

    Fetch engines may be injected through ``ctx.obj['engines']``; otherwise
    the context builds the default HTTP engine.
    """
    config_manager: ConfigManager = ctx.obj["config_manager"]
    engines = ctx.obj.get("engines")
    error_handler = cli_error_handler(ctx)

    async def runner() -> T:
        async with OrchestrationContext(
            config_manager, engines=engines, error_handler=error_handler
        ) as context:
            return await operation(JobService(context))

    return asyncio.run(runner())


async def run_to_completion(
    service: JobService,
    job_id: str,
    timeout: Optional[float]
) -> Tuple[JobStatusView, JobResultSet]:
    """Wait for a submitted job; cancel it if the timeout elapses."""
    outcome = await service.await_completion(job_id, timeout)
    if outcome.timed_out:
        console.print(f"[yellow]Timed out after {timeout}s, cancelling {job_id}[/yellow]")
        await service.cancel(job_id)
        await service.await_completion(job_id, timeout)
    # Billing is delivered asynchronously
    await service.context.events.join()
    return await service.get_status(job_id), await service.get_result(job_id, limit=None)


def render_status(view: JobStatusView) -> None:
    table = Table(title=f"Job {view.job_id}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    style = STATUS_STYLES.get(view.status, "white")
    table.add_row("Kind", view.kind.value)
    table.add_row("Status", f"[{style}]{view.status.value}[/{style}]")
    table.add_row("Success", "-" if view.is_success is None else ("✓" if view.is_success else "✗"))
    table.add_row("Credits Used", str(view.credits_used))
    if view.total is not None:
        table.add_row("Pages", f"{view.completed} completed, {view.failed} failed of {view.total}")
    if view.error:
        table.add_row("Error", view.error)
    console.print(table)


def render_results(result_set: JobResultSet, as_json: bool = False, quiet: bool = False) -> None:
    if as_json:
        console.print_json(json.dumps({
            "job_id": result_set.job_id,
            "status": result_set.status.value,
            "partial": result_set.is_partial,
            "total": result_set.total,
            "next_skip": result_set.next_skip,
            "data": result_set.items,
        }, default=str))
        return

    if not result_set.items:
        if not quiet:
            console.print(f"[yellow]No results for {result_set.job_id}[/yellow]")
        return

    table = Table(title=f"Results ({len(result_set)} of {result_set.total})")
    table.add_column("#", style="dim")
    table.add_column("URL", style="cyan")
    table.add_column("Status")
    table.add_column("Title / Error")
    for index, item in enumerate(result_set.items, result_set.skip + 1):
        ok = item.get("status") == "success"
        detail = _title(item.get("data")) if ok else (item.get("error") or "")
        table.add_row(
            str(index),
            str(item.get("url") or "-"),
            "[green]success[/green]" if ok else "[red]failed[/red]",
            detail,
        )
    console.print(table)
    if result_set.next_skip is not None and not quiet:
        console.print(f"More results: --skip {result_set.next_skip}")
    if result_set.is_partial and not quiet:
        console.print(Panel("Job still running; results are partial", style="yellow"))


def _title(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    if "pages" in data:
        return f"{data.get('query', '')} ({len(data['pages'])} page(s))"
    return (data.get("metadata") or {}).get("title") or ""
