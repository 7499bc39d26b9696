"""CLI entry point for inbox-sync."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click
from pydantic import ValidationError
from rich.logging import RichHandler

from .auth import connect_gmail_account
from .config import Settings
from .display import (
    console,
    display_accounts,
    display_message,
    display_subscriptions,
    display_sync_results,
)
from .errors import InboxSyncError
from .export import export_subscriptions
from .models import AuthSource, Provider, SubscriptionStatus
from .store import MailStore
from .sync import SyncEngine


def _open_store(settings: Settings) -> MailStore:
    return MailStore(db_path=settings.db_path)


@click.group()
@click.version_option(version="0.1.0", prog_name="inbox-sync")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """inbox-sync - pull Gmail and IMAP mail into an encrypted local store."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    try:
        ctx.obj = Settings.from_env()
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e


@cli.command()
@click.argument("account_id", type=int, required=False)
@click.option("--all", "sync_every", is_flag=True, help="Sync every connected account.")
@click.option("--include-sent", is_flag=True, help="Also pull the SENT label (Gmail).")
@click.option("-m", "--max-messages", default=None, type=int, help="Maximum messages per account.")
@click.pass_obj
def sync(
    settings: Settings,
    account_id: int | None,
    sync_every: bool,
    include_sent: bool,
    max_messages: int | None,
) -> None:
    """Pull new messages for one account, or all of them."""
    if account_id is None and not sync_every:
        raise click.UsageError("Pass an ACCOUNT_ID or --all.")
    if include_sent:
        settings.include_sent = True
    if max_messages:
        settings.max_messages_per_sync = max_messages

    with _open_store(settings) as store:
        engine = SyncEngine(store, settings=settings)
        try:
            if sync_every:
                results = asyncio.run(engine.sync_all())
            else:
                results = [asyncio.run(engine.sync_account(account_id))]
        except InboxSyncError as e:
            raise click.ClickException(str(e)) from e

    display_sync_results(results)


@cli.command()
@click.option("-u", "--user", "user_id", required=True, help="Owning user id.")
@click.option("--primary", is_flag=True, help="Mark as the user's primary mailbox.")
@click.pass_obj
def auth(settings: Settings, user_id: str, primary: bool) -> None:
    """Connect a Gmail account through the browser consent flow."""
    with _open_store(settings) as store:
        try:
            account = connect_gmail_account(
                store, user_id, credentials_path=settings.credentials_path, is_primary=primary
            )
        except FileNotFoundError as e:
            raise click.ClickException(str(e)) from e
    console.print(f"[green]Connected {account.address} as account {account.id}.[/green]")


@cli.group(name="accounts")
def accounts_group() -> None:
    """Manage connected accounts."""


@accounts_group.command(name="list")
@click.pass_obj
def accounts_list(settings: Settings) -> None:
    """List accounts and their connection state."""
    with _open_store(settings) as store:
        accounts = store.list_accounts()
    if not accounts:
        console.print("[dim]No accounts connected.[/dim]")
        return
    display_accounts(accounts)


@accounts_group.command(name="add-imap")
@click.option("-u", "--user", "user_id", required=True, help="Owning user id.")
@click.option("--address", required=True, help="Mailbox address, also used as the login.")
@click.option("--host", required=True, help="IMAP server host.")
@click.option("--port", default=None, type=int, help="IMAP port (default 993).")
@click.option("--no-tls", is_flag=True, help="Connect without TLS.")
@click.password_option("--password", confirmation_prompt=False, help="IMAP password.")
@click.pass_obj
def accounts_add_imap(
    settings: Settings,
    user_id: str,
    address: str,
    host: str,
    port: int | None,
    no_tls: bool,
    password: str,
) -> None:
    """Store an IMAP account. The password is encrypted at rest."""
    with _open_store(settings) as store:
        account = store.create_account(
            user_id=user_id,
            provider=Provider.IMAP,
            address=address,
            auth_source=AuthSource.PASSWORD,
            password=password,
            imap_host=host,
            imap_port=port,
            imap_tls=not no_tls,
        )
    console.print(f"[green]Added IMAP account {account.id} for {account.address}.[/green]")


@accounts_group.command(name="disconnect")
@click.argument("account_id", type=int)
@click.pass_obj
def accounts_disconnect(settings: Settings, account_id: int) -> None:
    """Clear an account's credentials. Stored mail is kept."""
    with _open_store(settings) as store:
        try:
            store.disconnect_account(account_id)
        except InboxSyncError as e:
            raise click.ClickException(str(e)) from e
    console.print(f"[green]Account {account_id} disconnected.[/green]")


@cli.command()
@click.argument("message_id", type=int)
@click.pass_obj
def body(settings: Settings, message_id: int) -> None:
    """Show a stored message, fetching its body if needed."""
    with _open_store(settings) as store:
        engine = SyncEngine(store, settings=settings)
        try:
            message = store.get_message(message_id)
            message_body = asyncio.run(engine.fetch_message_body(message_id))
        except InboxSyncError as e:
            raise click.ClickException(str(e)) from e
    display_message(message, message_body)


@cli.command()
@click.argument("message_id", type=int)
@click.argument("attachment_id")
@click.option("-o", "--output", required=True, type=click.Path(dir_okay=False), help="Output file path.")
@click.pass_obj
def attachment(settings: Settings, message_id: int, attachment_id: str, output: str) -> None:
    """Download one attachment of a stored message."""
    with _open_store(settings) as store:
        engine = SyncEngine(store, settings=settings)
        try:
            data = asyncio.run(engine.download_attachment(message_id, attachment_id))
        except InboxSyncError as e:
            raise click.ClickException(str(e)) from e
    Path(output).write_bytes(data)
    console.print(f"Saved {len(data)} bytes to {output}")


@cli.group(name="subscriptions")
def subscriptions_group() -> None:
    """Inspect newsletter and mailing-list senders."""


@subscriptions_group.command(name="list")
@click.option("-u", "--user", "user_id", default=None, help="Only this user's subscriptions.")
@click.pass_obj
def subscriptions_list(settings: Settings, user_id: str | None) -> None:
    """List subscriptions, most recently active first."""
    with _open_store(settings) as store:
        subscriptions = store.list_subscriptions(user_id)
    if not subscriptions:
        console.print("[dim]No subscriptions found.[/dim]")
        return
    display_subscriptions(subscriptions)


@subscriptions_group.command(name="set-status")
@click.argument("subscription_id", type=int)
@click.argument("status", type=click.Choice([s.value for s in SubscriptionStatus]))
@click.pass_obj
def subscriptions_set_status(settings: Settings, subscription_id: int, status: str) -> None:
    """Move a subscription to a new unsubscribe status."""
    with _open_store(settings) as store:
        try:
            store.update_subscription_status(subscription_id, SubscriptionStatus(status))
        except ValueError as e:
            raise click.ClickException(str(e)) from e
    console.print(f"Subscription {subscription_id} is now [bold]{status}[/bold].")


@cli.command(name="export")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["csv", "json"]),
    default="csv",
    help="Output format.",
)
@click.option("-o", "--output", required=True, help="Output file path.")
@click.option("-u", "--user", "user_id", default=None, help="Only this user's subscriptions.")
@click.pass_obj
def export_cmd(settings: Settings, fmt: str, output: str, user_id: str | None) -> None:
    """Export subscriptions to CSV or JSON."""
    with _open_store(settings) as store:
        subscriptions = store.list_subscriptions(user_id)

    if not subscriptions:
        raise click.ClickException("No subscriptions found. Run 'sync' first.")

    count = export_subscriptions(subscriptions, format=fmt, output_path=output)
    console.print(f"Exported {count} subscriptions to {output}")


@cli.group(name="store")
def store_group() -> None:
    """Inspect the local store."""


@store_group.command(name="info")
@click.pass_obj
def store_info(settings: Settings) -> None:
    """Show store statistics."""
    with _open_store(settings) as store:
        info = store.get_info()

    console.print(f"[bold]Database:[/bold] {settings.db_path}")
    console.print(f"[bold]Database size:[/bold] {info['db_file_size'] / 1024:.1f} KB")
    console.print(f"[bold]Accounts:[/bold] {info['accounts_count']}")
    console.print(f"[bold]Messages:[/bold] {info['messages_count']}")
    console.print(f"[bold]Attachments:[/bold] {info['attachments_count']}")
    console.print(f"[bold]Contacts:[/bold] {info['contacts_count']}")
    console.print(f"[bold]Subscriptions:[/bold] {info['subscriptions_count']}")
