"""Command line interface for the mail synchronization engine."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import uuid
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import ConfigurationManager, MailSyncConfig
from .exceptions import MailSyncError
from .models import Account, AuthType, Encryption, Provider, SyncStatus
from .runtime import MailSyncEngine, build_engine

console = Console()
error_console = Console(stderr=True)

app = typer.Typer(help="Resumable IMAP mailbox synchronization")
accounts_app = typer.Typer(help="Manage mail accounts")
sync_app = typer.Typer(help="Drive account synchronization")
worker_app = typer.Typer(help="Run the job worker")
tick_app = typer.Typer(help="Run periodic ticks by hand")
logs_app = typer.Typer(help="Inspect and prune the sync log")
config_app = typer.Typer(help="Inspect configuration")

app.add_typer(accounts_app, name="accounts")
app.add_typer(sync_app, name="sync")
app.add_typer(worker_app, name="worker")
app.add_typer(tick_app, name="tick")
app.add_typer(logs_app, name="logs")
app.add_typer(config_app, name="config")

_STATUS_STYLES = {
    SyncStatus.PENDING: "yellow",
    SyncStatus.SEEDING: "cyan",
    SyncStatus.SYNCING: "blue",
    SyncStatus.COMPLETED: "green",
    SyncStatus.FAILED: "red",
}


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (default: ~/.mailsync/config.yaml)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity"),
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config_manager": ConfigurationManager(config_path)}


def _load_config(ctx: typer.Context) -> MailSyncConfig:
    manager: ConfigurationManager = ctx.obj["config_manager"]
    try:
        return manager.load()
    except MailSyncError as exc:
        error_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc


def _engine(ctx: typer.Context) -> MailSyncEngine:
    engine = ctx.obj.get("engine")
    if engine is None:
        engine = build_engine(_load_config(ctx))
        ctx.obj["engine"] = engine
        ctx.call_on_close(engine.close)
    return engine


def _fail(message: str) -> None:
    error_console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def _status_text(account: Account) -> str:
    style = _STATUS_STYLES[account.sync_status]
    text = f"[{style}]{account.sync_status.value}[/{style}]"
    if account.needs_reauth:
        text += " [red](re-auth required)[/red]"
    return text


# ---------------------------------------------------------------------------
# accounts
# ---------------------------------------------------------------------------


@accounts_app.command("add")
def add_account(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", "-e", help="Email address"),
    provider: Provider = typer.Option(Provider.CUSTOM, "--provider", "-p", help="Provider family"),
    auth: AuthType = typer.Option(AuthType.PASSWORD, "--auth", "-a", help="password or oauth"),
    password: Optional[str] = typer.Option(None, "--password", help="Password or app password"),
    username: Optional[str] = typer.Option(None, "--username", help="Login name if not the email address"),
    host: Optional[str] = typer.Option(None, "--host", help="IMAP host (provider preset if omitted)"),
    port: Optional[int] = typer.Option(None, "--port", help="IMAP port"),
    encryption: Optional[Encryption] = typer.Option(None, "--encryption", help="ssl, tls or none"),
    access_token: Optional[str] = typer.Option(None, "--access-token", help="OAuth access token"),
    refresh_token: Optional[str] = typer.Option(None, "--refresh-token", help="OAuth refresh token"),
    expires_in: int = typer.Option(3600, "--expires-in", help="Access token lifetime in seconds"),
    account_id: Optional[str] = typer.Option(None, "--id", help="Account id (generated if omitted)"),
    start: bool = typer.Option(True, "--start/--no-start", help="Start the seed immediately"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Register an account and start its initial sync.

    Examples:
        mailsync accounts add --email user@gmail.com --provider gmail --auth oauth --refresh-token ...
        mailsync accounts add --email me@example.org --host imap.example.org --password secret
    """
    if auth == AuthType.PASSWORD and not password:
        _fail("--password is required for password authentication")
    if auth == AuthType.OAUTH and not refresh_token:
        _fail("--refresh-token is required for OAuth authentication")

    engine = _engine(ctx)
    account = Account.from_preset(
        id=account_id or uuid.uuid4().hex,
        email=email,
        provider=provider,
        auth_type=auth,
        username=username,
        password=password,
        imap_host=host,
        imap_port=port,
        imap_encryption=encryption,
        refresh_token=refresh_token,
        is_verified=True,
    )
    try:
        account = engine.accounts.add(account)
    except ValueError as exc:
        _fail(str(exc))
    if access_token:
        engine.tokens.store_new_tokens(
            account.id, access_token=access_token, refresh_token=refresh_token, expires_in=expires_in
        )
    if start:
        account = engine.orchestrator.start_seed(account.id)

    if json_output:
        print(json.dumps({"account_id": account.id, "status": account.sync_status.value}))
        return
    console.print(f"[bold green]✓ Account added[/bold green] {account.email}")
    console.print(f"Account ID: {account.id}")
    console.print(f"Status: {_status_text(account)}")


@accounts_app.command("list")
def list_accounts(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List registered accounts."""
    accounts = _engine(ctx).accounts.list()
    if json_output:
        print(
            json.dumps(
                [
                    {
                        "account_id": account.id,
                        "email": account.email,
                        "provider": account.provider.value,
                        "status": account.sync_status.value,
                        "needs_reauth": account.needs_reauth,
                    }
                    for account in accounts
                ]
            )
        )
        return
    if not accounts:
        console.print("[yellow]No accounts registered[/yellow]")
        return

    table = Table(title="Mail accounts")
    table.add_column("ID", style="dim")
    table.add_column("Email")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Last forward sync")
    for account in accounts:
        table.add_row(
            account.id,
            account.email,
            account.provider.value,
            _status_text(account),
            account.last_forward_sync_at.isoformat() if account.last_forward_sync_at else "-",
        )
    console.print(table)


@accounts_app.command("status")
def account_status(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the sync progress of one account."""
    _show_progress(ctx, account_id, json_output)


@accounts_app.command("reset")
def reset_account(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    delete: bool = typer.Option(False, "--delete", help="Remove the account instead of resetting it"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete stored messages and sync log, then reset or remove the account."""
    if not yes and not typer.confirm(f"Delete all synced data of {account_id}?"):
        raise typer.Exit(0)
    try:
        account = _engine(ctx).orchestrator.reset_account(account_id, keep_account=not delete)
    except MailSyncError as exc:
        _fail(str(exc))
    if account is None:
        console.print(f"[bold green]✓ Account {account_id} deleted[/bold green]")
    else:
        console.print(f"[bold green]✓ Account {account_id} reset[/bold green] ({_status_text(account)})")


@accounts_app.command("reauth")
def reauthenticate(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    access_token: Optional[str] = typer.Option(None, "--access-token", help="New OAuth access token"),
    refresh_token: Optional[str] = typer.Option(None, "--refresh-token", help="New OAuth refresh token"),
    expires_in: int = typer.Option(3600, "--expires-in", help="Access token lifetime in seconds"),
    password: Optional[str] = typer.Option(None, "--password", help="New password"),
    start: bool = typer.Option(True, "--start/--no-start", help="Restart the sync right away"),
) -> None:
    """Store new credentials and clear the re-authentication flag."""
    if not (access_token or refresh_token or password):
        _fail("Provide --access-token/--refresh-token or --password")
    engine = _engine(ctx)
    try:
        account = engine.orchestrator.reauthenticate(
            account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            password=password,
        )
        if start:
            account = engine.orchestrator.start_seed(account_id)
    except MailSyncError as exc:
        _fail(str(exc))
    console.print(f"[bold green]✓ Credentials updated[/bold green] ({_status_text(account)})")


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


@sync_app.command("start")
def sync_start(ctx: typer.Context, account_id: str = typer.Argument(..., help="Account id")) -> None:
    """Start the initial sync of a pending account."""
    try:
        account = _engine(ctx).orchestrator.start_seed(account_id)
    except MailSyncError as exc:
        _fail(str(exc))
    console.print(f"Status: {_status_text(account)}")


@sync_app.command("fetch")
def sync_fetch(ctx: typer.Context, account_id: str = typer.Argument(..., help="Account id")) -> None:
    """Queue a forward crawl for new mail."""
    try:
        job_id = _engine(ctx).orchestrator.fetch_new_emails(account_id)
    except MailSyncError as exc:
        _fail(str(exc))
    if job_id:
        console.print(f"[green]Forward crawl queued[/green] (job {job_id})")
    else:
        console.print("[yellow]Forward crawl not queued: account not eligible or crawl already queued[/yellow]")


@sync_app.command("progress")
def sync_progress(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the sync progress of one account."""
    _show_progress(ctx, account_id, json_output)


def _show_progress(ctx: typer.Context, account_id: str, json_output: bool) -> None:
    try:
        report = _engine(ctx).orchestrator.get_sync_progress(account_id)
    except MailSyncError as exc:
        _fail(str(exc))
    if json_output:
        print(report.model_dump_json())
        return

    console.print(f"[bold]Account {report.account_id}[/bold]")
    console.print(f"Status: {report.status.value}  Phase: {report.phase}  Overall: {report.overall_percent:.1f}%")
    if report.needs_reauth:
        console.print("[red]Re-authentication required[/red]")
    elif report.sync_error:
        console.print(f"[red]Last error:[/red] {report.sync_error}")
    console.print(
        f"Forward cursor: {report.forward_cursor or '-'}  "
        f"Backfill cursor: {report.backfill_cursor or '-'}  "
        f"Backfill: {'complete' if report.backfill_complete else f'{report.backfill_percent:.1f}%'}"
    )
    console.print(f"Stored messages: {report.stored_messages}  Inbox ready: {report.can_use_email}")

    table = Table(title="Full sync")
    table.add_column("Folder")
    table.add_column("Synced", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Progress", justify="right")
    for folder, progress in report.folders.items():
        marker = " ←" if folder == report.current_folder else ""
        table.add_row(
            f"{folder.value}{marker}",
            str(progress.synced),
            "-" if progress.total is None else str(progress.total),
            f"{progress.percent:.1f}%",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# worker and ticks
# ---------------------------------------------------------------------------


@worker_app.command("run")
def run_worker(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Run due jobs once and exit"),
    scheduler: bool = typer.Option(True, "--scheduler/--no-scheduler", help="Also run the periodic ticks"),
) -> None:
    """Process queued jobs until interrupted."""
    engine = _engine(ctx)
    executed = asyncio.run(_run_worker(engine, once=once, with_scheduler=scheduler))
    if once:
        console.print(f"Executed {executed} job(s)")


async def _run_worker(engine: MailSyncEngine, *, once: bool, with_scheduler: bool) -> int:
    if once:
        engine.worker.recover()
        return await engine.worker.run_once()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.worker.stop)
        except NotImplementedError:
            logging.getLogger(__name__).debug("Signal handlers unavailable on this platform")
    if with_scheduler:
        engine.scheduler.start()
    console.print("[bold blue]Worker running[/bold blue] (Ctrl+C to stop)")
    try:
        await engine.worker.run_forever()
    finally:
        engine.scheduler.shutdown()
    return 0


@tick_app.command("watchdog")
def tick_watchdog(ctx: typer.Context) -> None:
    """Start pending accounts and rescue stalled ones."""
    counts = _engine(ctx).maintenance.watchdog_tick()
    console.print(f"Started {counts['started']}, rescued {counts['rescued']}")


@tick_app.command("incremental")
def tick_incremental(ctx: typer.Context) -> None:
    """Queue forward crawls for every account due one."""
    dispatched = _engine(ctx).maintenance.incremental_tick()
    console.print(f"Queued {dispatched} forward crawl(s)")


# ---------------------------------------------------------------------------
# logs
# ---------------------------------------------------------------------------


@logs_app.command("show")
def show_logs(
    ctx: typer.Context,
    account_id: Optional[str] = typer.Argument(None, help="Account id (all accounts if omitted)"),
    action: Optional[str] = typer.Option(None, "--action", help="Only entries with this action"),
    limit: int = typer.Option(50, "--limit", "-n", help="Number of entries"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show recent sync log entries, newest first."""
    entries = _engine(ctx).sync_log.entries(account_id, action=action, limit=limit)
    if json_output:
        print(json.dumps([entry.to_payload() for entry in entries], default=str))
        return
    table = Table(title="Sync log")
    table.add_column("Time", style="dim")
    table.add_column("Account")
    table.add_column("Action")
    table.add_column("Details")
    for entry in entries:
        table.add_row(
            entry.created_at.isoformat(timespec="seconds"),
            entry.account_id,
            entry.action,
            json.dumps(entry.details, default=str) if entry.details else "",
        )
    console.print(table)


@logs_app.command("prune")
def prune_logs(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(None, "--days", help="Keep this many days (config default)"),
) -> None:
    """Delete sync log entries older than the retention window."""
    removed = _engine(ctx).maintenance.prune_sync_log(days)
    console.print(f"Removed {removed} sync log entr{'y' if removed == 1 else 'ies'}")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("validate")
def validate_config(
    ctx: typer.Context,
    path: Optional[Path] = typer.Argument(None, help="File to validate (default: active configuration)"),
) -> None:
    """Validate a configuration file."""
    manager: ConfigurationManager = ctx.obj["config_manager"]
    errors = manager.validate(path)
    if errors:
        error_console.print("[red]Configuration invalid:[/red]")
        for error in errors:
            error_console.print(f"  - {error}")
        raise typer.Exit(1)
    console.print(f"[green]✓ Configuration valid[/green] ({path or manager.path})")


@config_app.command("show")
def show_config(ctx: typer.Context) -> None:
    """Print the effective configuration as JSON."""
    config = _load_config(ctx)
    print(json.dumps(config.model_dump(mode="json"), indent=2))


__all__ = ["app"]
