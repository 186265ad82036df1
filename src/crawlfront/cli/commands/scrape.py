"""CLI command for scraping single pages."""

from typing import Optional, Tuple

import click
from rich.console import Console

from ...core.engines import EngineKind
from ...foundation.errors import CrawlfrontError
from ...foundation.logging import get_logger
from ..runtime import (
    render_results, render_status, report_error, run_to_completion, run_with_service
)

console = Console()
logger = get_logger(__name__)


def parse_headers(values: Tuple[str, ...]) -> dict:
    """Turn repeated ``Name: value`` options into a header mapping."""
    headers = {}
    for value in values:
        name, sep, content = value.partition(":")
        if not sep or not name.strip():
            raise click.BadParameter(f"Header must look like 'Name: value': {value}")
        headers[name.strip()] = content.strip()
    return headers


@click.command()
@click.argument("url")
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
    "--header",
    "-H",
    "headers",
    multiple=True,
    help="Extra request header, 'Name: value' (repeatable)"
)
@click.option(
    "--include-html",
    is_flag=True,
    help="Keep the raw HTML in the result"
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
def scrape(ctx, url, engine, timeout, headers, include_html, account, as_json):
    """Scrape a single webpage.

    Examples:

        # Basic scraping
        crawlfront scrape https://example.com

        # Raw JSON output with the page HTML
        crawlfront scrape https://example.com --json --include-html
    """
    quiet = ctx.obj.get('quiet', False)
    payload = {
        "url": url,
        "engine": engine,
        "options": {"headers": parse_headers(headers), "include_html": include_html},
    }

    async def _run(service):
        job_id = await service.submit(engine, "scrape", payload, account_id=account)
        if not quiet and not as_json:
            console.print(f"Scraping {url} as job {job_id}...")
        return await run_to_completion(service, job_id, timeout)

    try:
        view, result_set = run_with_service(ctx, _run)
    except CrawlfrontError as e:
        report_error(ctx, e)
        raise click.ClickException(f"Scrape failed: {e.message}")

    if not as_json and not quiet:
        render_status(view)
    render_results(result_set, as_json=as_json, quiet=quiet)
    if not view.is_success:
        ctx.exit(1)
