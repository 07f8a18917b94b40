"""
CLI for the Kiro account manager.

Provides command-line access to the account store, the login handshakes,
machine-id management, IDE session switching and the API server.
"""

import asyncio
import functools
import json
import logging
import shutil
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from kiro_accounts.config import Settings
from kiro_accounts.core.callback_server import CallbackServer
from kiro_accounts.core.database import Account
from kiro_accounts.core.deep_link import extract_url_from_args
from kiro_accounts.errors import Expired, KiroAccountsError
from kiro_accounts.services import Services
from kiro_accounts.single_instance import (
    forward_to_running_instance,
    read_instance,
    register_url_scheme,
)
from kiro_accounts.switcher import resolve_account

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_settings() -> Settings:
    """Load configuration from environment, exiting on bad values."""
    try:
        return Settings.from_env()
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def _services(ctx: click.Context) -> Services:
    obj = ctx.ensure_object(dict)
    if "services" not in obj:
        obj["services"] = Services(get_settings())
        ctx.call_on_close(obj["services"].close)
    return obj["services"]


def guarded(fn):
    """Report account-manager errors as a clean CLI failure."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except KiroAccountsError as exc:
            raise click.ClickException(f"[{exc.code}] {exc.message}")

    return wrapper


def _format_expiry(expires_at: int) -> str:
    """
    >>> _format_expiry(0)
    'expired'
    """
    remaining = expires_at - int(time.time())
    if remaining <= 0:
        return "expired"
    if remaining < 3600:
        return f"{remaining // 60}m"
    if remaining < 86400:
        return f"{remaining // 3600}h"
    return f"{remaining // 86400}d"


_STATUS_STYLE = {"active": "green", "expired": "yellow", "invalid": "red"}


def _accounts_table(accounts: list[Account], title: str = "Accounts") -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("ID", style="dim", width=10)
    table.add_column("Provider", style="cyan")
    table.add_column("Name")
    table.add_column("Email", style="magenta")
    table.add_column("Status")
    table.add_column("Expires", style="green")
    table.add_column("Machine id", style="blue")
    for a in accounts:
        style = _STATUS_STYLE.get(a.status.value, "white")
        table.add_row(
            a.id[:8],
            a.provider.value,
            a.display_name or "-",
            a.email or "-",
            f"[{style}]{a.status.value}[/{style}]",
            _format_expiry(a.credentials.expires_at),
            a.bound_machine_id or "-",
        )
    return table


def _print_account(account: Account, heading: str) -> None:
    console.print(f"[green]{heading}[/green] {account.id} ({account.email or account.display_name or account.provider.value})")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """Kiro account manager - multiple Kiro IDE accounts on one machine."""
    setup_logging(verbose)
    ctx.ensure_object(dict)


# ---------------------------------------------------------------------------
# accounts
# ---------------------------------------------------------------------------


@main.group()
def accounts():
    """Manage stored accounts."""


@accounts.command(name="list")
@click.pass_context
@guarded
def accounts_list(ctx: click.Context):
    """List stored accounts."""
    rows = _services(ctx).store.list_accounts()
    if not rows:
        console.print("[yellow]No accounts stored[/yellow]")
        return
    console.print(_accounts_table(rows))


@accounts.command(name="delete")
@click.argument("account_refs", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
@guarded
def accounts_delete(ctx: click.Context, account_refs: tuple, yes: bool):
    """Delete one or more accounts (their machine-id bindings go too)."""
    store = _services(ctx).store
    ids = [resolve_account(ref, store).id for ref in account_refs]
    if not yes and not click.confirm(f"Delete {len(ids)} account(s)?"):
        console.print("Cancelled")
        return
    if len(ids) == 1:
        store.delete(ids[0])
        removed = 1
    else:
        removed = store.delete_many(ids)
    console.print(f"[green]Deleted {removed} account(s)[/green]")


@accounts.command(name="rename")
@click.argument("account_ref")
@click.argument("name")
@click.pass_context
@guarded
def accounts_rename(ctx: click.Context, account_ref: str, name: str):
    """Change an account's display name."""
    store = _services(ctx).store
    account = store.rename(resolve_account(account_ref, store).id, name)
    _print_account(account, "Renamed")


@accounts.command(name="refresh")
@click.argument("account_ref")
@click.option("--force", "-f", is_flag=True, help="Refresh even if the token is still fresh")
@click.pass_context
@guarded
def accounts_refresh(ctx: click.Context, account_ref: str, force: bool):
    """Exchange the refresh token for a new access token."""
    store = _services(ctx).store
    account = asyncio.run(store.refresh(resolve_account(account_ref, store).id, force=force))
    console.print(f"[green]Token valid for {_format_expiry(account.credentials.expires_at)}[/green]")


@accounts.command(name="verify")
@click.argument("account_ref")
@click.pass_context
@guarded
def accounts_verify(ctx: click.Context, account_ref: str):
    """Check with the provider that the token is still accepted."""
    store = _services(ctx).store
    account = asyncio.run(store.verify(resolve_account(account_ref, store).id))
    style = _STATUS_STYLE.get(account.status.value, "white")
    console.print(f"Status: [{style}]{account.status.value}[/{style}]")


@accounts.command(name="sync")
@click.argument("account_ref")
@click.pass_context
@guarded
def accounts_sync(ctx: click.Context, account_ref: str):
    """Re-fetch profile, subscription and usage (tokens untouched)."""
    store = _services(ctx).store
    account = asyncio.run(store.sync(resolve_account(account_ref, store).id))
    console.print(_accounts_table([account], title="Synced"))
    if account.usage_limit:
        console.print(f"Usage: {account.usage_current or 0:g} / {account.usage_limit:g}")


@accounts.command(name="export")
@click.option("--id", "ids", multiple=True, help="Only export these account ids")
@click.option("--redact/--full", default=None, help="Strip tokens (default from KIRO_ACCOUNTS_EXPORT_REDACT)")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write to file instead of stdout")
@click.pass_context
@guarded
def accounts_export(ctx: click.Context, ids: tuple, redact: Optional[bool], output: Optional[str]):
    """Export accounts as JSON."""
    doc = _services(ctx).store.export_accounts(list(ids) or None, redact=redact)
    text = json.dumps(doc, indent=2)
    if output:
        Path(output).write_text(text, encoding="utf-8")
        console.print(f"[green]Exported {len(doc['accounts'])} account(s) to {output}[/green]")
    else:
        click.echo(text)


@accounts.command(name="import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--overwrite", is_flag=True, help="Replace accounts whose id already exists")
@click.pass_context
@guarded
def accounts_import(ctx: click.Context, file: str, overwrite: bool):
    """Import accounts from an export file."""
    report = _services(ctx).store.import_accounts(
        Path(file).read_text(encoding="utf-8"), overwrite=overwrite
    )
    console.print(
        f"Imported {len(report.imported)}, updated {len(report.updated)}, "
        f"skipped {len(report.skipped)}"
    )
    for err in report.errors:
        console.print(f"[red]Record {err.get('index')}:[/red] {err.get('error')}")


# ---------------------------------------------------------------------------
# login
# ---------------------------------------------------------------------------


@main.group()
def login():
    """Add an account by logging in."""


async def _social_login(services: Services, idp: str, bind: bool) -> Account:
    async with CallbackServer(services.router) as server:
        pending = await services.auth_state.begin_login(
            idp, {"redirect_uri": server.redirect_uri, "bind_machine": bind}
        )
        console.print("Complete the sign-in in your browser. If it did not open, visit:")
        console.print(pending.handle.authorize_url, soft_wrap=True)
        try:
            return await pending.wait(timeout=max(0.0, pending.expires_at - time.time()))
        except asyncio.TimeoutError:
            services.auth_state.cancel_login()
            raise Expired("No sign-in response arrived in time")


@login.command(name="social")
@click.option("--idp", type=click.Choice(["Google", "Github"], case_sensitive=False), default="Google")
@click.option("--bind", is_flag=True, help="Bind the current machine id to the new account")
@click.pass_context
@guarded
def login_social(ctx: click.Context, idp: str, bind: bool):
    """Sign in with Google or Github in the browser."""
    account = asyncio.run(_social_login(_services(ctx), idp, bind))
    _print_account(account, "Added")


def _show_device_code(pending) -> None:
    handle = pending.handle
    console.print(Panel.fit(
        f"Open [bold]{handle.verification_uri}[/bold]\nand confirm code [bold cyan]{handle.user_code}[/bold cyan]",
        title="Device login",
    ))


@login.command(name="idc")
@click.option("--start-url", help="IAM Identity Center start URL (default: AWS Builder ID)")
@click.option("--region", help="Identity Center region")
@click.option("--bind", is_flag=True, help="Bind the current machine id to the new account")
@click.pass_context
@guarded
def login_idc(ctx: click.Context, start_url: Optional[str], region: Optional[str], bind: bool):
    """Sign in with AWS Builder ID or an IAM Identity Center directory."""
    params = {"bind_machine": bind}
    if start_url:
        params["start_url"] = start_url
    if region:
        params["region"] = region
    provider = "Enterprise" if start_url else "BuilderId"
    account = asyncio.run(
        _services(ctx).auth_state.login(provider, params, on_started=_show_device_code)
    )
    _print_account(account, "Added")


@login.command(name="import")
@click.argument("file", required=False, type=click.Path(exists=True, dir_okay=False))
@click.option("--local", is_flag=True, help="Import the session the Kiro IDE is signed in with")
@click.option("--bind", is_flag=True, help="Bind the current machine id to the new account")
@click.pass_context
@guarded
def login_import(ctx: click.Context, file: Optional[str], local: bool, bind: bool):
    """Import an existing token document (kiro-auth-token.json shape)."""
    if not file and not local:
        raise click.UsageError("Give a token FILE or --local")
    params: dict = {"bind_machine": bind}
    if local:
        params["source"] = "local"
    else:
        params["token"] = Path(file).read_text(encoding="utf-8")
        params["cache_dir"] = str(Path(file).parent)
    account = asyncio.run(_services(ctx).auth_state.login("Import", params))
    _print_account(account, "Imported")
    if account.status.value != "active":
        console.print(f"[yellow]Token is {account.status.value}; refresh or log in again[/yellow]")


def _instance_url(settings: Settings, path: str) -> Optional[str]:
    instance = read_instance(settings.instance_file)
    if instance is None:
        return None
    return f"http://127.0.0.1:{instance['port']}{path}"


@login.command(name="status")
def login_status():
    """Show the login pending in the running server, if any."""
    url = _instance_url(get_settings(), "/api/auth/pending")
    if url is None:
        console.print("[yellow]No running instance[/yellow]")
        return
    try:
        data = httpx.get(url, timeout=5.0).json()
    except (httpx.HTTPError, ValueError) as e:
        raise click.ClickException(f"Cannot reach running instance: {e}")
    if data.get("status") == "none":
        console.print("No login pending")
        return
    table = Table(show_header=False)
    for key in ("provider", "status", "correlation_fingerprint", "user_code", "verification_uri"):
        if data.get(key):
            table.add_row(key, str(data[key]))
    expires = datetime.fromtimestamp(data["expires_at"], tz=timezone.utc)
    table.add_row("expires", expires.isoformat())
    console.print(table)


@login.command(name="cancel")
def login_cancel():
    """Cancel the login pending in the running server."""
    url = _instance_url(get_settings(), "/api/auth/cancel")
    if url is None:
        console.print("[yellow]No running instance[/yellow]")
        return
    try:
        data = httpx.post(url, timeout=5.0).json()
    except (httpx.HTTPError, ValueError) as e:
        raise click.ClickException(f"Cannot reach running instance: {e}")
    console.print("Cancelled" if data.get("cancelled") else "No login pending")


# ---------------------------------------------------------------------------
# machine-id
# ---------------------------------------------------------------------------


@main.group(name="machine-id")
def machine_id():
    """Read, back up, reset and bind the system machine id."""


@machine_id.command(name="show")
@click.pass_context
@guarded
def machine_id_show(ctx: click.Context):
    record = _services(ctx).binder.record()
    table = Table(show_header=False)
    table.add_row("current", record.current_id)
    table.add_row("original", record.original_backup or "-")
    table.add_row("bound to", record.bound_account_id or "-")
    console.print(table)


@machine_id.command(name="backup")
@click.pass_context
@guarded
def machine_id_backup(ctx: click.Context):
    snapshot = _services(ctx).binder.backup()
    console.print(f"[green]Backed up[/green] {snapshot.machine_guid}")


@machine_id.command(name="restore")
@click.pass_context
@guarded
def machine_id_restore(ctx: click.Context):
    """Put back the backed-up (or original) machine id."""
    console.print(f"[green]Restored[/green] {_services(ctx).binder.restore()}")


@machine_id.command(name="reset")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
@guarded
def machine_id_reset(ctx: click.Context, yes: bool):
    """Replace the machine id with a new random one."""
    if not yes and not click.confirm("Replace the system machine id?"):
        console.print("Cancelled")
        return
    console.print(f"[green]New machine id[/green] {_services(ctx).binder.reset()}")


@machine_id.command(name="set")
@click.argument("value")
@click.pass_context
@guarded
def machine_id_set(ctx: click.Context, value: str):
    """Set a specific machine id (GUID format)."""
    console.print(f"[green]Machine id set to[/green] {_services(ctx).binder.set_custom(value)}")


@machine_id.command(name="generate")
def machine_id_generate():
    """Print a fresh machine id without applying it."""
    from kiro_accounts.core.machine_guid import generate_machine_id

    click.echo(generate_machine_id())


@machine_id.command(name="clear-override")
@click.pass_context
@guarded
def machine_id_clear_override(ctx: click.Context):
    cleared = _services(ctx).binder.clear_override()
    console.print("Override removed" if cleared else "No override set")


@machine_id.command(name="bind")
@click.argument("account_ref")
@click.option("--machine-id", "value", help="Machine id to bind (default: the current one)")
@click.pass_context
@guarded
def machine_id_bind(ctx: click.Context, account_ref: str, value: Optional[str]):
    services = _services(ctx)
    account = resolve_account(account_ref, services.store)
    value = value or services.binder.current()
    changed = services.binder.bind(account.id, value)
    console.print(f"[green]Bound[/green] {value} -> {account.id}" if changed else "Already bound")


@machine_id.command(name="unbind")
@click.argument("account_ref")
@click.pass_context
@guarded
def machine_id_unbind(ctx: click.Context, account_ref: str):
    services = _services(ctx)
    account = resolve_account(account_ref, services.store)
    released = services.binder.unbind(account.id)
    console.print(f"Released {released}" if released else "Account was not bound")


@machine_id.command(name="bindings")
@click.pass_context
@guarded
def machine_id_bindings(ctx: click.Context):
    bindings = _services(ctx).binder.bindings()
    if not bindings:
        console.print("[yellow]No bindings[/yellow]")
        return
    table = Table(title="Machine-id bindings", show_header=True)
    table.add_column("Account", style="dim")
    table.add_column("Machine id", style="blue")
    for account_id, value in bindings.items():
        table.add_row(account_id, value)
    console.print(table)


# ---------------------------------------------------------------------------
# IDE session
# ---------------------------------------------------------------------------


@main.command()
@click.argument("account_ref")
@click.pass_context
@guarded
def switch(ctx: click.Context, account_ref: str):
    """Sign the Kiro IDE in as ACCOUNT_REF (id, id prefix or email)."""
    services = _services(ctx)
    account = resolve_account(account_ref, services.store)
    result = asyncio.run(services.switcher.switch(account.id))
    console.print(f"[green]Switched to[/green] {account.email or account.id}")
    if result.get("machine_id"):
        console.print(f"Machine id set to {result['machine_id']}")


@main.command()
@click.pass_context
@guarded
def current(ctx: click.Context):
    """Show which stored account the IDE is signed in with."""
    account = _services(ctx).switcher.current()
    if account is None:
        console.print("[yellow]The IDE session does not match any stored account[/yellow]")
        return
    console.print(_accounts_table([account], title="Current"))


@main.command()
@click.pass_context
@guarded
def logout(ctx: click.Context):
    """Sign the IDE out and restore the backed-up machine id."""
    result = _services(ctx).switcher.logout()
    console.print("IDE session removed" if result["token_removed"] else "No IDE session found")
    if result["restored_machine_id"]:
        console.print(f"Machine id restored to {result['restored_machine_id']}")


# ---------------------------------------------------------------------------
# URL-scheme handler and server
# ---------------------------------------------------------------------------


@main.command(name="open-url", context_settings={"ignore_unknown_options": True})
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@guarded
def open_url(args: tuple):
    """Entry point the OS runs for kiro:// links."""
    argv = [sys.argv[0] if sys.argv else "kiro-accounts", "open-url", *args]
    settings = get_settings()
    if forward_to_running_instance(argv, settings):
        console.print("Delivered to the running instance")
        return
    url = extract_url_from_args(argv, settings.url_scheme)
    if url is None:
        console.print("[yellow]No kiro:// URL in arguments[/yellow]")
        return
    # A pending login lives in the process that began it
    raise click.ClickException(
        "No running instance holds a pending login; start one with `kiro-accounts serve`"
    )


@main.command(name="register-handler")
def register_handler():
    """Register this program as the kiro:// URL handler (Windows)."""
    exe = shutil.which("kiro-accounts") or sys.argv[0]
    if register_url_scheme(exe, get_settings().url_scheme):
        console.print(f"[green]Registered[/green] {exe}")
    else:
        console.print("[yellow]Handler not registered on this platform[/yellow]")


@main.command()
@click.option("--host", help="Bind address (default from KIRO_ACCOUNTS_API_HOST)")
@click.option("--port", type=int, help="Port (default from KIRO_ACCOUNTS_API_PORT)")
def serve(host: Optional[str], port: Optional[int]):
    """Run the API server and accept relaunch deliveries."""
    import uvicorn

    from kiro_accounts.api.main import create_app

    settings = get_settings()
    if host:
        settings.api_host = host
    if port:
        settings.api_port = port
    app = create_app(services=Services(settings), register_instance=True)
    console.print(f"Serving on http://{settings.api_host}:{settings.api_port}")
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level="warning")


if __name__ == "__main__":
    main()
