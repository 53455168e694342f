"""wassist CLI — command line interface."""

import asyncio

import click
from rich.console import Console
from rich.table import Table

from . import __version__

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="wassist")
def cli():
    """wassist — multi-tenant WhatsApp assistant"""
    pass


async def _with_db(fn):
    """Run fn(db) against a connected database, closing it afterwards."""
    from .config import load_settings
    from .db import Database

    settings = load_settings()
    db = Database(settings.database_url, min_size=1, max_size=2)
    await db.connect()
    try:
        await db.init_schema()
        return await fn(db, settings)
    finally:
        await db.close()


# ── Start / status ───────────────────────────────────────────

@cli.command()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def start(debug):
    """Connect all active tenants and start answering messages."""
    from .main import main

    console.print(f"[bold green]Starting wassist v{__version__}...[/bold green]")
    main(debug=debug)


@cli.command()
def status():
    """Show tenants and their last known connection status."""
    async def _status(db, settings):
        from .db import BotSettingsRepository, ChatConfigRepository, TenantRepository

        tenants = await TenantRepository(db).get_all()
        chats = ChatConfigRepository(db)
        bot_enabled = await BotSettingsRepository(db).is_bot_enabled()

        console.print(
            f"Bot: {'[green]enabled[/green]' if bot_enabled else '[red]disabled[/red]'}"
        )
        table = Table(title=f"wassist v{__version__} — tenants")
        table.add_column("ID", style="bold")
        table.add_column("Name")
        table.add_column("Phone")
        table.add_column("Status")
        table.add_column("Chats", justify="right")

        colors = {"connected": "green", "connecting": "yellow", "pending": "yellow", "disconnected": "red"}
        for t in tenants:
            color = colors.get(t.status, "white")
            n_chats = len(await chats.get_all(t.id))
            table.add_row(t.id, t.name, t.phone or "-", f"[{color}]{t.status}[/{color}]", str(n_chats))

        console.print(table)

    try:
        asyncio.run(_with_db(_status))
    except Exception as e:
        console.print(f"[red]Database error: {e}[/red]")
        raise SystemExit(1)


# ── Tenants ──────────────────────────────────────────────────

@cli.group()
def tenant():
    """Manage tenants."""
    pass


@tenant.command("add")
@click.argument("tenant_id")
@click.argument("name")
@click.option("--prompt", default=None, help="Tenant-wide system prompt")
def tenant_add(tenant_id, name, prompt):
    """Register a tenant. It pairs on the next `wassist start`."""
    async def _add(db, settings):
        from .db import TenantRepository

        repo = TenantRepository(db)
        if await repo.get_by_id(tenant_id):
            console.print(f"[yellow]Tenant {tenant_id} already exists.[/yellow]")
            return
        await repo.create(tenant_id, name, system_prompt=prompt)
        console.print(f"[green]✓ Tenant {tenant_id} ({name}) added[/green]")

    asyncio.run(_with_db(_add))


@tenant.command("unpair")
@click.argument("tenant_id")
def tenant_unpair(tenant_id):
    """Forget stored WhatsApp credentials and mark the tenant disconnected."""
    async def _unpair(db, settings):
        from .credentials import CredentialStore
        from .db import TenantRepository

        repo = TenantRepository(db)
        if not await repo.get_by_id(tenant_id):
            console.print(f"[red]Unknown tenant: {tenant_id}[/red]")
            raise SystemExit(1)
        await CredentialStore(settings.auth_dir).clear(tenant_id)
        await repo.set_status(tenant_id, "disconnected")
        console.print(f"[green]✓ Tenant {tenant_id} unpaired[/green]")

    asyncio.run(_with_db(_unpair))


# ── Chats (whitelist) ────────────────────────────────────────

@cli.group()
def chat():
    """Manage the per-tenant chat whitelist."""
    pass


@chat.command("add")
@click.argument("tenant_id")
@click.argument("jid")
@click.option("--ai", is_flag=True, help="Answer with AI")
@click.option("--auto-reply", default=None, help="Fixed reply text when AI is off")
@click.option("--name", default=None, help="Display name")
@click.option("--prompt", default=None, help="Custom system prompt for this chat")
def chat_add(tenant_id, jid, ai, auto_reply, name, prompt):
    """Whitelist a chat (enabled immediately)."""
    async def _add(db, settings):
        from .control import BotControl
        from .db import ActivityLogRepository, BotSettingsRepository, ChatConfig, ChatConfigRepository

        control = BotControl(
            BotSettingsRepository(db), ChatConfigRepository(db), ActivityLogRepository(db), settings.timezone
        )
        await control.add_chat(ChatConfig(
            jid=jid,
            tenant_id=tenant_id,
            display_name=name,
            is_group=jid.endswith("@g.us"),
            enabled=True,
            ai_mode="on" if ai else "off",
            custom_prompt=prompt,
            auto_reply_message=auto_reply,
        ))
        mode = "AI" if ai else ("auto-reply" if auto_reply else "silent")
        console.print(f"[green]✓ {jid} whitelisted for {tenant_id} ({mode})[/green]")

    asyncio.run(_with_db(_add))


@chat.command("remove")
@click.argument("tenant_id")
@click.argument("jid")
def chat_remove(tenant_id, jid):
    """Remove a chat from the whitelist."""
    async def _remove(db, settings):
        from .control import BotControl
        from .db import ActivityLogRepository, BotSettingsRepository, ChatConfigRepository

        control = BotControl(
            BotSettingsRepository(db), ChatConfigRepository(db), ActivityLogRepository(db), settings.timezone
        )
        if await control.remove_chat(tenant_id, jid):
            console.print(f"[green]✓ {jid} removed[/green]")
        else:
            console.print(f"[yellow]{jid} was not whitelisted for {tenant_id}[/yellow]")

    asyncio.run(_with_db(_remove))


@chat.command("toggle")
@click.argument("tenant_id")
@click.argument("jid")
@click.argument("state", type=click.Choice(["on", "off"]))
def chat_toggle(tenant_id, jid, state):
    """Enable or disable a whitelisted chat without removing it."""
    async def _toggle(db, settings):
        from .control import BotControl
        from .db import ActivityLogRepository, BotSettingsRepository, ChatConfigRepository

        chats = ChatConfigRepository(db)
        if not await chats.get_by_jid(tenant_id, jid):
            console.print(f"[yellow]{jid} is not whitelisted for {tenant_id}[/yellow]")
            return
        control = BotControl(BotSettingsRepository(db), chats, ActivityLogRepository(db), settings.timezone)
        await control.toggle_chat(tenant_id, jid, state == "on")
        console.print(f"[green]✓ {jid} {'enabled' if state == 'on' else 'disabled'}[/green]")

    asyncio.run(_with_db(_toggle))


# ── Activity log ─────────────────────────────────────────────

@cli.group()
def activity():
    """Inspect and prune the activity log."""
    pass


@activity.command("stats")
@click.argument("tenant_id")
def activity_stats(tenant_id):
    """Show message counts for one tenant."""
    async def _stats(db, settings):
        from .db import ActivityLogRepository

        stats = await ActivityLogRepository(db).get_stats(tenant_id)
        table = Table(title=f"Activity · {tenant_id}", show_header=False, padding=(0, 2))
        table.add_row("Total", str(stats["total"]))
        table.add_row("Responded (AI)", str(stats["responded"]))
        table.add_row("Auto-reply", str(stats["auto_reply"]))
        table.add_row("Ignored", str(stats["ignored"]))
        table.add_row("Today", f"{stats['today_responded']}/{stats['today_total']} answered")
        console.print(table)

    asyncio.run(_with_db(_stats))


@activity.command("prune")
@click.option("--days", default=30, show_default=True, type=click.IntRange(min=1), help="Days of history to keep")
def activity_prune(days):
    """Delete activity log entries older than --days."""
    async def _prune(db, settings):
        from .db import ActivityLogRepository

        removed = await ActivityLogRepository(db).clear_old(days)
        console.print(f"[green]✓ Removed {removed} entr{'y' if removed == 1 else 'ies'} older than {days} days[/green]")

    asyncio.run(_with_db(_prune))


# ── Global switch ────────────────────────────────────────────

@cli.command()
@click.argument("state", type=click.Choice(["on", "off"]))
def bot(state):
    """Enable or disable the bot globally."""
    async def _bot(db, settings):
        from .db import BotSettingsRepository

        await BotSettingsRepository(db).set_bot_enabled(state == "on")
        console.print(f"Bot {'[green]enabled[/green]' if state == 'on' else '[red]disabled[/red]'}")

    asyncio.run(_with_db(_bot))


if __name__ == "__main__":
    cli()
