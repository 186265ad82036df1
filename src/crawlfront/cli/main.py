"""Main CLI entry point for crawlfront."""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from ..foundation.config import ConfigManager
from ..foundation.logging import setup_logging
from ..foundation.errors import CrawlfrontError, ErrorHandler
from ..version import __version__
from .commands import scrape, search, crawl, status, results, cancel, credits

console = Console()


def setup_cli_logging(verbose: int, config_manager: Optional[ConfigManager] = None) -> None:
    """Setup logging based on verbosity level.

    Args:
        verbose: Verbosity level (0-3)
        config_manager: Source of the configured log file
    """
    level_map = {
        0: "WARNING",
        1: "INFO",
        2: "DEBUG",
        3: "DEBUG"
    }

    log_level = level_map.get(verbose, "DEBUG")
    log_file = None
    if config_manager is not None:
        log_file = config_manager.get_setting("global.log_file")
        if verbose == 0:
            log_level = config_manager.get_setting("global.log_level", log_level)
    setup_logging(level=log_level, log_file=log_file)


def handle_cli_error(error: Exception, debug: bool = False) -> int:
    """Handle CLI errors with appropriate formatting.

    Args:
        error: Exception that occurred
        debug: Whether to show debug information

    Returns:
        Exit code
    """
    if isinstance(error, CrawlfrontError):
        console.print(f"[red]Error:[/red] {error.message}", style="red")
        if error.details:
            console.print(f"Details: {error.details}")
        return 1
    elif isinstance(error, click.ClickException):
        error.show()
        return error.exit_code
    else:
        if debug:
            console.print_exception()
        else:
            console.print(f"[red]Unexpected error:[/red] {str(error)}", style="red")
            console.print("Use --verbose for more details")
        return 1


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(),
    help="Configuration file path"
)
@click.option(
    "--database",
    type=click.Path(),
    help="SQLite database path (overrides storage.database_path)"
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (use -v, -vv, -vvv)"
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    help="Suppress output except errors"
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output"
)
@click.version_option(version=__version__, prog_name="crawlfront")
@click.pass_context
def cli(ctx, config, database, verbose, quiet, no_color):
    """crawlfront - scrape, search and crawl jobs on bounded engine queues.

    Every command runs its job to completion in this process against the
    configured SQLite store, so job ids stay valid for later status,
    results and cancel calls.

    Examples:

        # Scrape a single page
        crawlfront scrape https://example.com

        # Crawl a site two levels deep
        crawlfront crawl https://example.com --max-depth 2 --limit 50

        # Open an account and bill a crawl to it
        crawlfront credits open --balance 100
        crawlfront crawl https://example.com --account ACCOUNT_ID
    """
    ctx.ensure_object(dict)

    if quiet:
        verbose = 0

    config_manager = ctx.obj.get("config_manager")
    if config_manager is None:
        config_manager = ConfigManager(Path(config) if config else None)
        config_manager.load_hierarchical()
    if database:
        config_manager.set_setting("storage.database_path", database)

    setup_cli_logging(verbose, config_manager)

    ctx.obj['verbose'] = verbose
    ctx.obj['quiet'] = quiet
    ctx.obj['no_color'] = no_color
    ctx.obj['config_manager'] = config_manager
    ctx.obj.setdefault('error_handler', ErrorHandler())

    if no_color:
        console.no_color = True


cli.add_command(scrape)
cli.add_command(search)
cli.add_command(crawl)
cli.add_command(status)
cli.add_command(results)
cli.add_command(cancel)
cli.add_command(credits)


def main(args: Optional[list] = None, standalone_mode: bool = True) -> int:
    """Main entry point for the CLI.

    Args:
        args: Command line arguments (defaults to sys.argv)
        standalone_mode: Whether to run in standalone mode

    Returns:
        Exit code
    """
    try:
        if args is None:
            args = sys.argv[1:]

        result = cli(args, standalone_mode=standalone_mode)
        return result if isinstance(result, int) else 0

    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        return 130
    except Exception as e:
        debug = any(arg.startswith("-v") or arg == "--verbose" for arg in (args or []))
        return handle_cli_error(e, debug)


if __name__ == "__main__":
    sys.exit(main())
