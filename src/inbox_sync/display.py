"""Rich-based display functions for inbox-sync."""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .models import Account, MessageBody, StoredMessage, Subscription, SubscriptionStatus, SyncResult, SyncState

console = Console()

_STATUS_COLORS = {
    SubscriptionStatus.SUBSCRIBED: "white",
    SubscriptionStatus.PENDING: "yellow",
    SubscriptionStatus.UNSUBSCRIBED: "green",
    SubscriptionStatus.FAILED: "red",
    SubscriptionStatus.MANUAL_REQUIRED: "magenta",
}


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def display_sync_results(results: list[SyncResult]) -> None:
    """Display one row per synced account plus the failed message ids."""
    table = Table(title="Sync Results")
    table.add_column("Account", justify="right")
    table.add_column("State")
    table.add_column("New", justify="right")
    table.add_column("Synced", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Error")

    for result in results:
        color = "red" if result.state == SyncState.FAILED else "green"
        table.add_row(
            str(result.account_id),
            f"[{color}]{result.state.value}[/{color}]",
            str(result.new_messages),
            str(len(result.synced)),
            str(len(result.failed)),
            result.error or "",
        )

    console.print(table)
    failed = [(r.account_id, i) for r in results for i in r.failed]
    if failed:
        lines = [f"  - account {account_id}: {external_id}" for account_id, external_id in failed]
        console.print(Panel("\n".join(lines), title="Failed messages"))


def display_accounts(accounts: list[Account]) -> None:
    table = Table(title="Accounts")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Address")
    table.add_column("Provider")
    table.add_column("Auth")
    table.add_column("Status")
    table.add_column("Last sync")

    for account in accounts:
        if not account.connected:
            status = "[dim]disconnected[/dim]"
        elif account.auth_error:
            status = "[red]re-auth required[/red]"
        elif account.credentials_unavailable:
            status = "[red]credentials unavailable[/red]"
        else:
            status = "[green]connected[/green]"
        table.add_row(
            str(account.id),
            account.address + (" *" if account.is_primary else ""),
            account.provider.value,
            account.auth_source.value,
            status,
            _fmt_time(account.last_synced_at),
        )

    console.print(table)


def display_subscriptions(subscriptions: list[Subscription]) -> None:
    """Display subscriptions, most recently active first."""
    table = Table(title="Subscriptions")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Sender")
    table.add_column("Name")
    table.add_column("Count", justify="right")
    table.add_column("Last seen")
    table.add_column("Unsubscribe")
    table.add_column("Status")

    total_messages = 0
    for idx, sub in enumerate(subscriptions, start=1):
        color = _STATUS_COLORS.get(sub.status, "white")
        total_messages += sub.email_count
        table.add_row(
            str(idx),
            sub.sender_email,
            sub.sender_name or "",
            str(sub.email_count),
            _fmt_time(sub.last_email_at),
            sub.unsubscribe_method.value,
            f"[{color}]{sub.status.value}[/{color}]",
        )

    console.print(table)
    console.print(
        Panel(
            f"Total senders shown: {len(subscriptions)}  |  Total messages: {total_messages}",
            title="Summary",
        )
    )


def display_message(message: StoredMessage, body: MessageBody | None) -> None:
    lines = [
        f"[bold]Subject:[/bold] {message.subject or '(unavailable)'}",
        f"[bold]Received:[/bold] {_fmt_time(message.received_at)}",
        f"[bold]Direction:[/bold] {message.direction.value if message.direction else '-'}",
        "",
    ]
    if body is None:
        lines.append("[dim]Body unavailable.[/dim]")
    else:
        lines.append(body.plain or body.html or "[dim](empty)[/dim]")
    console.print(Panel("\n".join(lines), title=message.external_id))
