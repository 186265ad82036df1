"""CLI command for crawling multiple pages."""

import click
from rich.console import Console

from ...core.engines import EngineKind
from ...core.urls import CrawlStrategy
from ...foundation.errors import CrawlfrontError
from ...foundation.logging import get_logger
from ..runtime import (
    render_results, render_status, report_error, run_to_completion, run_with_service
)

console = Console()
logger = get_logger(__name__)


@click.command()
@click.argument("start_url")
@click.option(
    "--max-depth",
    type=click.IntRange(min=0),
    help="Maximum discovery depth (defaults to crawl.max_depth)"
)
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    help="Maximum number of child pages (defaults to crawl.limit)"
)
@click.option(
    "--include",
    "include_paths",
    multiple=True,
    help="Only follow paths matching this prefix or glob (can be used multiple times)"
)
@click.option(
    "--exclude",
    "exclude_paths",
    multiple=True,
    help="Never follow paths matching this prefix or glob (can be used multiple times)"
)
@click.option(
    "--strategy",
    type=click.Choice([strategy.value for strategy in CrawlStrategy]),
    help="Which hosts to follow (defaults to crawl.strategy)"
)
@click.option(
    "--ignore-query/--keep-query",
    "ignore_query_parameters",
    default=None,
    help="Treat URLs differing only in their query as the same page"
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
    help="Give up waiting after this many seconds and cancel the crawl"
)
@click.option(
    "--account",
    help="Credit account to bill"
)
@click.option(
    "--json",
    "as_json",
    is_flag=True,
    help="Print the results as JSON"
)
@click.pass_context
def crawl(ctx, start_url, max_depth, limit, include_paths, exclude_paths, strategy,
          ignore_query_parameters, engine, timeout, account, as_json):
    """Crawl a website starting from START_URL.

    Examples:

        # Crawl two levels deep, at most 20 child pages
        crawlfront crawl https://example.com --max-depth 2 --limit 20

        # Only the blog, never the tag pages
        crawlfront crawl https://example.com --include /blog --exclude "/blog/tag/*"
    """
    quiet = ctx.obj.get('quiet', False)
    payload = {
        "url": start_url,
        "include_paths": list(include_paths),
        "exclude_paths": list(exclude_paths),
    }
    if max_depth is not None:
        payload["max_depth"] = max_depth
    if limit is not None:
        payload["limit"] = limit
    if strategy is not None:
        payload["strategy"] = strategy
    if ignore_query_parameters is not None:
        payload["ignore_query_parameters"] = ignore_query_parameters

    async def _run(service):
        job_id = await service.submit(engine, "crawl_root", payload, account_id=account)
        if not quiet and not as_json:
            console.print(f"Crawling {start_url} as job {job_id}...")
        return await run_to_completion(service, job_id, timeout)

    try:
        view, result_set = run_with_service(ctx, _run)
    except CrawlfrontError as e:
        report_error(ctx, e)
        raise click.ClickException(f"Crawl failed: {e.message}")

    if not as_json and not quiet:
        render_status(view)
    render_results(result_set, as_json=as_json, quiet=quiet)
    if not view.is_success:
        ctx.exit(1)
