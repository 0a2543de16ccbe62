"""Command-line interface for the DKIM relay.

Administers domains, API keys and the send log directly against the
database, without going through the HTTP API.

Usage:
    dkim-relay serve
    dkim-relay domains add example.com --selector mail
    dkim-relay domains list
    dkim-relay keys issue <domain-id> --name production --expires-in 90d
    dkim-relay logs list --status failed
    dkim-relay retries run
"""

from __future__ import annotations

import asyncio
import json
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import click
import uvicorn
from rich.console import Console
from rich.table import Table

from .api import create_app
from .config import Settings, load_settings
from .core import RelayService
from .credentials import EXPIRY_CHOICES
from .errors import RelayError
from .logger import configure_logging

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_ts(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(int(value), timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _flag(value: Any) -> str:
    return "[green]✓[/green]" if value else "[red]✗[/red]"


def _settings(ctx: click.Context) -> Settings:
    try:
        return load_settings(ctx.obj.get("config_path"))
    except RelayError as exc:
        print_error(str(exc))
        sys.exit(1)


def _command(ctx: click.Context, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Run one service command against the configured database."""
    svc = RelayService(_settings(ctx))

    async def _run():
        await svc.init()
        try:
            return await svc.handle_command(cmd, payload or {})
        finally:
            await svc.transport.close()

    try:
        result = run_async(_run())
    except RelayError as exc:
        print_error(str(exc))
        sys.exit(1)
    if not result.get("ok"):
        print_error(result.get("error") or "command failed")
        sys.exit(1)
    return result


def _print_dns_records(records: Dict[str, Dict[str, Any]]) -> None:
    table = Table(title="DNS records to publish")
    table.add_column("Record", style="cyan")
    table.add_column("Type")
    table.add_column("Host")
    table.add_column("Value", overflow="fold")
    table.add_column("TTL", justify="right")
    for label, record in records.items():
        table.add_row(label.upper(), record["type"], record["host"], record["value"], str(record["ttl"]))
    console.print(table)


@click.group()
@click.option(
    "--config",
    "config_path",
    envvar="DKR_CONFIG",
    default=None,
    help="Path to config.ini (default: config.ini).",
)
@click.version_option(package_name="dkim-relay")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str]) -> None:
    """Administer the DKIM signing relay."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from settings).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from settings).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API and the retry scheduler."""
    settings = _settings(ctx)
    configure_logging(settings.log_level)
    svc = RelayService(settings)

    @asynccontextmanager
    async def lifespan(app):
        await svc.start()
        yield
        await svc.stop()

    app = create_app(svc, api_token=settings.admin_token, lifespan=lifespan)
    console.print(f"\n[bold cyan]Starting DKIM relay[/bold cyan]")
    console.print(f"  DB:        {settings.db_path}")
    console.print(f"  Transport: {settings.transport_kind}")
    console.print(f"  Listen:    {host or settings.http_host}:{port or settings.http_port}")
    console.print()
    uvicorn.run(app, host=host or settings.http_host, port=port or settings.http_port)


# ============================================================================
# Domains
# ============================================================================

@main.group("domains")
def domains() -> None:
    """Manage sending domains."""


@domains.command("add")
@click.argument("name")
@click.option("--selector", "-s", default="mail", show_default=True, help="DKIM selector.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def domains_add(ctx: click.Context, name: str, selector: str, as_json: bool) -> None:
    """Register a domain and generate its signing key."""
    domain = _command(ctx, "addDomain", {"name": name, "selector": selector})["domain"]
    if as_json:
        print_json(domain)
        return
    print_success(f"Domain '{domain['name']}' created (id {domain['id']})")
    _print_dns_records(domain["dns_records"])


@domains.command("list")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def domains_list(ctx: click.Context, page: int, limit: int, as_json: bool) -> None:
    """List registered domains."""
    result = _command(ctx, "listDomains", {"page": page, "limit": limit})
    if as_json:
        print_json(result)
        return
    if not result["domains"]:
        console.print("[dim]No domains found.[/dim]")
        return

    table = Table(title="Domains")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Selector")
    table.add_column("Active", justify="center")
    table.add_column("Verified", justify="center")
    table.add_column("Keys", justify="right")
    table.add_column("Sends", justify="right")
    for d in result["domains"]:
        table.add_row(
            d["id"],
            d["name"],
            d["selector"],
            _flag(d["is_active"]),
            _flag(d["is_verified"]),
            str(d.get("api_key_count", 0)),
            str(d.get("attempt_count", 0)),
        )
    console.print(table)
    pagination = result["pagination"]
    console.print(f"[dim]Page {pagination['page']} of {pagination['pages'] or 1} ({pagination['total']} total)[/dim]")


@domains.command("show")
@click.argument("domain_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def domains_show(ctx: click.Context, domain_id: str, as_json: bool) -> None:
    """Show a domain, its DNS records and API keys."""
    domain = _command(ctx, "getDomain", {"id": domain_id})["domain"]
    if as_json:
        print_json(domain)
        return
    console.print(f"\n[bold cyan]Domain: {domain['name']}[/bold cyan]\n")
    console.print(f"  ID:        {domain['id']}")
    console.print(f"  Selector:  {domain['selector']}")
    console.print(f"  Active:    {_flag(domain['is_active'])}")
    console.print(f"  Verified:  {_flag(domain['is_verified'])}")
    console.print(f"  Created:   {_format_ts(domain['created_at'])}")
    console.print(f"  API keys:  {len(domain['api_keys'])}")
    console.print()
    _print_dns_records(domain["dns_records"])


def _set_domain_flag(ctx: click.Context, domain_id: str, message: str, **flags: bool) -> None:
    domain = _command(ctx, "updateDomain", {"id": domain_id, **flags})["domain"]
    print_success(f"Domain '{domain['name']}' {message}")


@domains.command("enable")
@click.argument("domain_id")
@click.pass_context
def domains_enable(ctx: click.Context, domain_id: str) -> None:
    """Activate a domain."""
    _set_domain_flag(ctx, domain_id, "activated", is_active=True)


@domains.command("disable")
@click.argument("domain_id")
@click.pass_context
def domains_disable(ctx: click.Context, domain_id: str) -> None:
    """Deactivate a domain; its pending retries fail on the next cycle."""
    _set_domain_flag(ctx, domain_id, "deactivated", is_active=False)


@domains.command("verify")
@click.argument("domain_id")
@click.pass_context
def domains_verify(ctx: click.Context, domain_id: str) -> None:
    """Mark a domain as verified once its DNS records are published."""
    _set_domain_flag(ctx, domain_id, "marked as verified", is_verified=True)


@domains.command("delete")
@click.argument("domain_id")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def domains_delete(ctx: click.Context, domain_id: str, force: bool) -> None:
    """Delete a domain with its API keys and send history."""
    if not force:
        console.print(f"\n[bold red]This will permanently delete domain '{domain_id}'[/bold red]")
        console.print("  API keys and send history are deleted as well.\n")
        if not click.confirm("Are you sure?", default=False):
            console.print("[dim]Cancelled.[/dim]")
            return
    _command(ctx, "deleteDomain", {"id": domain_id})
    print_success(f"Domain '{domain_id}' deleted")


# ============================================================================
# API keys
# ============================================================================

@main.group("keys")
def keys() -> None:
    """Manage API keys."""


def _print_raw_key(raw_key: str) -> None:
    console.print(f"\n  [bold]{raw_key}[/bold]\n")
    console.print("[yellow]Store this key now: it cannot be shown again.[/yellow]")


@keys.command("issue")
@click.argument("domain_id")
@click.option("--name", "-n", required=True, help="Label of the key.")
@click.option(
    "--expires-in",
    type=click.Choice(list(EXPIRY_CHOICES)),
    default="never",
    show_default=True,
    help="Lifetime of the key.",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def keys_issue(ctx: click.Context, domain_id: str, name: str, expires_in: str, as_json: bool) -> None:
    """Issue a new API key for a domain."""
    result = _command(ctx, "issueKey", {"domain_id": domain_id, "name": name, "expires_in": expires_in})
    if as_json:
        print_json(result)
        return
    print_success(f"API key '{name}' issued (id {result['api_key']['id']})")
    _print_raw_key(result["key"])


@keys.command("list")
@click.argument("domain_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def keys_list(ctx: click.Context, domain_id: str, as_json: bool) -> None:
    """List the API keys of a domain."""
    api_keys = _command(ctx, "listKeys", {"domain_id": domain_id})["api_keys"]
    if as_json:
        print_json(api_keys)
        return
    if not api_keys:
        console.print("[dim]No API keys found.[/dim]")
        return

    table = Table(title="API keys")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Prefix")
    table.add_column("Active", justify="center")
    table.add_column("Expires")
    table.add_column("Last used")
    for k in api_keys:
        expires = _format_ts(k.get("expires_at"))
        if k.get("is_expired"):
            expires = f"[red]{expires} (expired)[/red]"
        table.add_row(k["id"], k["name"], k["key_prefix"], _flag(k["is_active"]), expires, _format_ts(k.get("last_used_at")))
    console.print(table)


@keys.command("rotate")
@click.argument("key_id")
@click.option("--expires-in", type=click.Choice(list(EXPIRY_CHOICES)), default=None, help="New lifetime.")
@click.pass_context
def keys_rotate(ctx: click.Context, key_id: str, expires_in: Optional[str]) -> None:
    """Replace the secret of an API key; the old secret stops working."""
    payload: Dict[str, Any] = {"id": key_id}
    if expires_in:
        payload["expires_in"] = expires_in
    result = _command(ctx, "rotateKey", payload)
    print_success(f"API key '{result['api_key']['name']}' rotated")
    _print_raw_key(result["key"])


@keys.command("revoke")
@click.argument("key_id")
@click.pass_context
def keys_revoke(ctx: click.Context, key_id: str) -> None:
    """Deactivate an API key."""
    result = _command(ctx, "updateKey", {"id": key_id, "is_active": False})
    print_success(f"API key '{result['api_key']['name']}' revoked")


@keys.command("delete")
@click.argument("key_id")
@click.pass_context
def keys_delete(ctx: click.Context, key_id: str) -> None:
    """Delete an API key."""
    _command(ctx, "deleteKey", {"id": key_id})
    print_success(f"API key '{key_id}' deleted")


# ============================================================================
# Send log and retries
# ============================================================================

@main.group("logs")
def logs() -> None:
    """Inspect the send log."""


@logs.command("list")
@click.option("--domain", "domain_id", default=None, help="Filter by domain id.")
@click.option("--status", type=click.Choice(["sent", "pending_retry", "failed"]), default=None)
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def logs_list(
    ctx: click.Context, domain_id: Optional[str], status: Optional[str], page: int, limit: int, as_json: bool
) -> None:
    """List send attempts, newest first."""
    result = _command(
        ctx, "listAttempts", {"domain_id": domain_id, "status": status, "page": page, "limit": limit}
    )
    if as_json:
        print_json(result)
        return
    if not result["attempts"]:
        console.print("[dim]No send attempts found.[/dim]")
        return

    styles = {"sent": "green", "pending_retry": "yellow", "failed": "red"}
    table = Table(title="Send attempts")
    table.add_column("Created")
    table.add_column("Domain", style="cyan")
    table.add_column("From")
    table.add_column("To", overflow="fold")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Error", overflow="fold")
    for a in result["attempts"]:
        style = styles.get(a["status"], "white")
        table.add_row(
            _format_ts(a["created_at"]),
            a.get("domain_name") or a["domain_id"],
            a["from_email"],
            a["to_email"],
            f"[{style}]{a['status']}[/{style}]",
            str(a["retry_count"]),
            a.get("error") or "-",
        )
    console.print(table)


@logs.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def logs_stats(ctx: click.Context, as_json: bool) -> None:
    """Show delivery statistics."""
    stats = _command(ctx, "stats")["stats"]
    if as_json:
        print_json(stats)
        return
    window = stats["window"]
    console.print("\n[bold cyan]Delivery statistics[/bold cyan]\n")
    console.print(f"  Total:          {stats['total']}")
    console.print(f"  Sent:           {stats['sent']}")
    console.print(f"  Failed:         {stats['failed']}")
    console.print(f"  Pending retry:  {stats['pending_retry']}")
    console.print(f"  Success rate:   {stats['success_rate']}%")
    console.print(f"  Last {window['seconds'] // 3600}h:       {window['total']}")
    console.print()


@main.group("retries")
def retries() -> None:
    """Drive the retry queue."""


@retries.command("run")
@click.pass_context
def retries_run(ctx: click.Context) -> None:
    """Run one retry cycle now and print its summary."""
    result = _command(ctx, "runRetryCycle")
    print_success(
        f"Processed {result['processed']}: sent {result['sent']}, rescheduled {result['rescheduled']}, "
        f"failed {result['failed']}, skipped {result['skipped']}"
    )


if __name__ == "__main__":
    main()
