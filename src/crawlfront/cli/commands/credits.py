"""CLI commands for credit accounts."""

import click
from rich.console import Console
from rich.panel import Panel

from ...foundation.errors import CrawlfrontError
from ..runtime import report_error, run_with_service

console = Console()


@click.group()
def credits():
    """Manage credit accounts that jobs are billed to.

    Examples:

        crawlfront credits open --balance 100
        crawlfront credits balance ACCOUNT_ID
        crawlfront credits top-up ACCOUNT_ID 50
    """
    pass


@credits.command(name="open")
@click.option(
    "--balance",
    type=click.IntRange(min=0),
    default=0,
    help="Opening balance"
)
@click.option(
    "--account-id",
    help="Use this id instead of a generated one"
)
@click.pass_context
def open_account(ctx, balance, account_id):
    """Open a new credit account."""
    async def _run(service):
        return await service.ledger.open_account(balance=balance, account_id=account_id)

    try:
        new_id = run_with_service(ctx, _run)
    except CrawlfrontError as e:
        report_error(ctx, e)
        raise click.ClickException(f"Failed to open account: {e.message}")

    if ctx.obj.get('quiet', False):
        console.print(new_id)
    else:
        console.print(Panel(f"Account: {new_id}\nBalance: {balance}", title="Account opened"))


@credits.command()
@click.argument("account_id")
@click.pass_context
def balance(ctx, account_id):
    """Show an account's balance."""
    async def _run(service):
        return await service.ledger.balance(account_id)

    try:
        amount = run_with_service(ctx, _run)
    except CrawlfrontError as e:
        report_error(ctx, e)
        raise click.ClickException(f"Failed to read balance: {e.message}")

    style = "green" if amount > 0 else "red"
    console.print(f"{account_id}: [{style}]{amount}[/{style}] credit(s)")


@credits.command(name="top-up")
@click.argument("account_id")
@click.argument("amount", type=click.IntRange(min=1))
@click.pass_context
def top_up(ctx, account_id, amount):
    """Add credits to an account."""
    async def _run(service):
        return await service.ledger.top_up(account_id, amount)

    try:
        new_balance = run_with_service(ctx, _run)
    except CrawlfrontError as e:
        report_error(ctx, e)
        raise click.ClickException(f"Failed to top up: {e.message}")

    console.print(f"[green]Topped up {account_id}[/green], balance {new_balance}")
