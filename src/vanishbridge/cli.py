"""CLI interface for VanishBridge.

Settings come from ~/.vanishbridge/config.yaml, so `run` needs no flags.

Quick start:
    vanishbridge setup                         # Bot token + admin id
    vanishbridge run                           # Start the bridge
    vanishbridge status                        # Owners and linked numbers
    vanishbridge grant 123456789               # Approve an owner from the shell
    vanishbridge artifacts 123456789 +1555...  # List archived messages
"""

from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from vanishbridge import __version__
from vanishbridge.config import get_config_path, load_settings, save_settings
from vanishbridge.errors import BridgeError, StorageError
from vanishbridge.store import ArtifactArchive, LinkStore

app = typer.Typer(
    name="vanishbridge",
    help="Send-and-vanish WhatsApp bridge controlled from Telegram",
    no_args_is_help=True,
)

console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Path to config.yaml")


def _link_store(config: Path | None) -> LinkStore:
    settings = load_settings(config)
    return LinkStore(
        settings.links_file,
        max_linked_per_owner=settings.limits.max_linked_accounts_per_owner,
        passkey_length=settings.bot.passkey_length,
    )


@app.command()
def version() -> None:
    """Show the version."""
    console.print(f"vanishbridge {__version__}")


@app.command()
def run(config: Path = ConfigOption) -> None:
    """Start the bridge in the foreground (Ctrl+C to stop)."""
    from vanishbridge.runtime import run as run_bridge

    settings = load_settings(config)
    if not settings.bot_token:
        console.print("[red]No Telegram bot token. Run: vanishbridge setup[/red]")
        raise typer.Exit(1)

    console.print("[bold green]VanishBridge starting[/bold green] [dim](Ctrl+C to stop)[/dim]")
    try:
        run_bridge(config)
    except BridgeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


@app.command()
def setup(config: Path = ConfigOption) -> None:
    """Store the Telegram bot token and admin id."""
    import asyncio

    from vanishbridge.controller.telegram import TelegramController

    settings = load_settings(config)
    console.print(Panel(
        "[bold]Telegram Bot Setup[/bold]\n\n"
        "1. Open Telegram and message [cyan]@BotFather[/cyan]\n"
        "2. Send [cyan]/newbot[/cyan] and follow the prompts\n"
        "3. Copy the bot token (looks like [dim]123456:ABC-DEF...[/dim])",
        title="🤖 Telegram",
        border_style="blue",
    ))
    token = Prompt.ask("Bot token", default=settings.telegram.bot_token or None)
    if not token or ":" not in token:
        console.print("[red]Invalid token format. It should contain a colon (:)[/red]")
        raise typer.Exit(1)
    admin_id = Prompt.ask(
        "Your Telegram user id (admin)", default=settings.telegram.admin_id or None,
    )

    async def _check() -> dict:
        controller = TelegramController(token)
        try:
            return await controller.get_me()
        finally:
            await controller.close()

    bot_info = asyncio.run(_check())
    if bot_info:
        console.print(f"[green]✓ Connected![/green] Bot: @{bot_info.get('username', '?')}")
    else:
        console.print("[yellow]Could not verify the token, saving it anyway.[/yellow]")

    settings.telegram.bot_token = token
    settings.telegram.admin_id = (admin_id or "").strip()
    path = save_settings(settings, config or get_config_path())
    console.print(f"[dim]Saved to {path}[/dim]")
    console.print(
        "\n[dim]Next steps:[/dim]\n"
        "  1. Add a Green API instance per WhatsApp number under green_api.instances\n"
        "  2. Run [cyan]vanishbridge run[/cyan]\n"
        "  3. Send [cyan]/start[/cyan] to your bot"
    )


@app.command()
def status(config: Path = ConfigOption) -> None:
    """Show authorized owners, their linked numbers and pending requests."""
    store = _link_store(config)

    table = Table(title="Owners")
    table.add_column("Owner", style="cyan")
    table.add_column("Verified")
    table.add_column("Linked numbers")
    for owner, accounts in store.all_links().items():
        verified = "[green]✓[/green]" if store.is_verified(owner) else "[yellow]waiting[/yellow]"
        table.add_row(owner, verified, ", ".join(accounts) or "[dim]none[/dim]")
    console.print(table)

    pending = store.list_pending_owners()
    if pending:
        console.print(f"\n[bold]Pending requests:[/bold] {', '.join(pending)}")
    else:
        console.print("\n[dim]No pending requests.[/dim]")


@app.command()
def grant(
    owner: str = typer.Argument(..., help="Telegram user id of the pending owner"),
    config: Path = ConfigOption,
) -> None:
    """Grant a pending access request and print the passkey."""
    store = _link_store(config)
    try:
        passkey = store.grant(owner)
    except StorageError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if passkey is None:
        console.print(f"[red]No pending request from {owner}.[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Granted {owner}.[/green] Passkey: [bold]{passkey}[/bold]")
    console.print(f"[dim]They unlock access with: /verify {passkey}[/dim]")


@app.command()
def artifacts(
    owner: str = typer.Argument(..., help="Telegram user id of the owner"),
    account: str = typer.Argument(..., help="Linked WhatsApp number"),
    config: Path = ConfigOption,
) -> None:
    """List archived messages for a linked number."""
    settings = load_settings(config)
    items = ArtifactArchive(settings.archive_dir).list(owner, account)
    if not items:
        console.print(f"[dim]No archived messages for {account}.[/dim]")
        return

    table = Table(title=f"Archived messages: {account}")
    table.add_column("When", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("Content")
    for artifact in items:
        when = datetime.fromtimestamp(artifact.timestamp).strftime("%Y-%m-%d %H:%M:%S")
        if artifact.is_text:
            content = artifact.read_text()
            if len(content) > 60:
                content = content[:57] + "..."
        else:
            content = str(artifact.path)
        table.add_row(when, artifact.kind.value, content)
    console.print(table)


if __name__ == "__main__":
    app()
