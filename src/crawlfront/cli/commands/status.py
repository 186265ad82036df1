"""CLI commands for inspecting and cancelling jobs."""

import json

import click
from rich.console import Console
from rich.table import Table

from ...foundation.errors import CrawlfrontError
from ...services.jobs import MAX_RESULTS_PER_PAGE
from ..runtime import render_results, render_status, report_error, run_with_service

console = Console()


@click.command()
@click.argument("job_id", required=False)
@click.option(
    "--limit",
    type=int,
    default=10,
    help="Number of recent jobs to list when no JOB_ID is given"
)
@click.option(
    "--format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format"
)
@click.pass_context
def status(ctx, job_id, limit, format):
    """Show the status of a job, or list recent jobs.

    Examples:

        crawlfront status 0b6c9c1e-...
        crawlfront status --limit 20
    """
    async def _job(service):
        return await service.get_status(job_id)

    async def _recent(service):
        records = await service.store.list_jobs(limit)
        counts = await service.store.count_by_status()
        return records, counts

    try:
        if job_id:
            view = run_with_service(ctx, _job)
        else:
            records, counts = run_with_service(ctx, _recent)
    except CrawlfrontError as e:
        report_error(ctx, e)
        raise click.ClickException(f"Failed to get job status: {e.message}")

    if job_id:
        if format == "json":
            console.print(json.dumps(view.to_dict(), indent=2, default=str))
        else:
            render_status(view)
        return

    if format == "json":
        console.print(json.dumps({
            "counts": counts,
            "jobs": [
                {"job_id": r.job_id, "kind": r.kind.value, "status": r.status.value, "url": r.url}
                for r in records
            ],
        }, indent=2, default=str))
        return

    table = Table(title="Recent Jobs")
    table.add_column("Job ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Credits", justify="right")
    table.add_column("URL")
    for record in records:
        table.add_row(
            record.job_id, record.kind.value, record.status.value,
            str(record.credits_used), record.url or "-"
        )
    console.print(table)
    if counts:
        console.print(", ".join(f"{name}: {count}" for name, count in sorted(counts.items())))


@click.command()
@click.argument("job_id")
@click.option(
    "--skip",
    type=click.IntRange(min=0),
    default=0,
    help="Skip this many entries"
)
@click.option(
    "--limit",
    type=click.IntRange(1, MAX_RESULTS_PER_PAGE),
    default=MAX_RESULTS_PER_PAGE,
    show_default=True,
    help="Entries per page"
)
@click.option(
    "--json",
    "as_json",
    is_flag=True,
    help="Print the results as JSON"
)
@click.pass_context
def results(ctx, job_id, skip, limit, as_json):
    """Show one page of the results of a job. Crawl results may be partial.

    Examples:

        crawlfront results JOB_ID --skip 100
    """
    quiet = ctx.obj.get('quiet', False)

    async def _run(service):
        return await service.get_result(job_id, skip=skip, limit=limit)

    try:
        result_set = run_with_service(ctx, _run)
    except CrawlfrontError as e:
        report_error(ctx, e)
        raise click.ClickException(f"Failed to get results: {e.message}")

    render_results(result_set, as_json=as_json, quiet=quiet)


@click.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx, job_id):
    """Cancel a job that has not finished yet."""
    async def _run(service):
        return await service.cancel(job_id)

    try:
        outcome = run_with_service(ctx, _run)
    except CrawlfrontError as e:
        report_error(ctx, e)
        raise click.ClickException(f"Failed to cancel job: {e.message}")

    if outcome.changed:
        console.print(
            f"[green]Cancelled {job_id}[/green] (was {outcome.previous_status.value})"
        )
    else:
        console.print(
            f"[yellow]Job {job_id} not cancelled, it is {outcome.new_status.value}[/yellow]"
        )
