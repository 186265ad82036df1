"""CLI command for web searches."""

import click
from rich.console import Console

from ...core.engines import EngineKind
from ...foundation.errors import CrawlfrontError
from ..runtime import (
    render_results, render_status, report_error, run_to_completion, run_with_service
)

console = Console()


@click.command()
@click.argument("query")
@click.option(
    "--pages",
    type=click.IntRange(1, 10),
    default=1,
    help="Number of result pages to fetch"
)
@click.option(
    "--lang",
    default="en",
    help="Result language"
)
@click.option(
    "--limit",
    type=click.IntRange(1, 100),
    help="Keep at most this many result URLs"
)
@click.option(
    "--offset",
    type=click.IntRange(min=0),
    default=0,
    help="Skip this many leading results"
)
@click.option(
    "--scrape",
    is_flag=True,
    help="Also scrape every result URL as a job of its own"
)
@click.option(
    "--engine",
    "-e",
    type=click.Choice([kind.value for kind in EngineKind]),
    default=EngineKind.HTTP.value,
    help="Fetch engine"
)
@click.option(
    "--timeout",
    type=float,
    help="Give up waiting after this many seconds and cancel the job"
)
@click.option(
    "--account",
    help="Credit account to bill"
)
@click.option(
    "--json",
    "as_json",
    is_flag=True,
    help="Print the result as JSON"
)
@click.pass_context
def search(ctx, query, pages, lang, limit, offset, scrape, engine, timeout, account, as_json):
    """Run a web search; each results page is billed as one unit.

    With --scrape every result URL is scraped too and billed on its own.

    Examples:

        crawlfront search "python asyncio" --pages 2

        crawlfront search "python asyncio" --limit 5 --scrape
    """
    quiet = ctx.obj.get('quiet', False)
    payload = {"query": query, "pages": pages, "lang": lang, "offset": offset}
    if limit is not None:
        payload["limit"] = limit
    if scrape:
        payload["scrape_options"] = {}

    async def _run(service):
        job_id = await service.submit(engine, "search", payload, account_id=account)
        if not quiet and not as_json:
            console.print(f"Searching for '{query}' as job {job_id}...")
        return await run_to_completion(service, job_id, timeout)

    try:
        view, result_set = run_with_service(ctx, _run)
    except CrawlfrontError as e:
        report_error(ctx, e)
        raise click.ClickException(f"Search failed: {e.message}")

    if not as_json and not quiet:
        render_status(view)
    render_results(result_set, as_json=as_json, quiet=quiet)
    if not view.is_success:
        ctx.exit(1)
