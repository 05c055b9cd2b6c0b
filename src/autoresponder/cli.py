"""CLI interface for the Telegram auto-responder.

Settings come from ~/.autoresponder/config.yaml (plus env overrides), the
credential record from ./config.json or $AUTORESPONDER_CREDENTIALS.

Quick start:
    autoresponder web                  # Control panel API on :3001
    autoresponder login                # Authenticate from the terminal instead
    autoresponder listen               # Run the userbot in the foreground
    autoresponder listen --test        # Same, with the short test window
    autoresponder bot                  # Bot API variant (BOT_TOKEN in .env)
"""

import asyncio
import logging
import signal

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from autoresponder import __version__
from autoresponder.config import BotSettings, get_config_path, get_settings
from autoresponder.credentials import CredentialStore, apply_env_api

app = typer.Typer(
    name="autoresponder",
    help="Telegram auto-responder with a web control panel",
    no_args_is_help=True,
)

console = Console()


def _configure_logging(rich_output: bool = True) -> None:
    """Rich logging for interactive commands, plain stderr lines for children."""
    if rich_output:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )
    else:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger("telethon").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _store() -> CredentialStore:
    return CredentialStore.from_env(get_settings().credentials_path)


@app.command()
def web(
    port: int = typer.Option(None, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option(None, "--host", help="Host to bind to"),
) -> None:
    """Run the control panel HTTP API.

    Endpoints: POST /send-code, /auth, /start, /stop and GET /status, /config.
    """
    import uvicorn

    from autoresponder.web.server import create_app

    _configure_logging()
    settings = get_settings()
    host = host or settings.host
    port = port or settings.port
    url = f"http://{host}:{port}"

    console.print(Panel(
        f"[bold cyan]Auto-responder control panel[/bold cyan]\n\n"
        f"URL: [link={url}]{url}[/link]\n"
        f"Credentials: {settings.credentials_path}\n\n"
        "[dim]Press Ctrl+C to stop[/dim]",
        title="Starting Web Server",
        border_style="cyan",
    ))

    uvicorn.run(create_app(settings), host=host, port=port, log_level="warning")


@app.command()
def listen(
    test: bool = typer.Option(False, "--test", help="Use the short test response window"),
) -> None:
    """Run the userbot listener in the foreground."""
    from autoresponder.children.listener import run_listener

    _configure_logging(rich_output=False)
    code = asyncio.run(run_listener(get_settings(), _store(), test_mode=test))
    raise typer.Exit(code)


@app.command(hidden=True)
def handshake() -> None:
    """Credential handshake child (spawned by the control panel)."""
    from autoresponder.children.handshake import main

    _configure_logging(rich_output=False)
    raise typer.Exit(main(_store()))


@app.command()
def login(
    phone: str = typer.Option(None, "--phone", help="Phone number in international format"),
) -> None:
    """Authenticate the Telegram account interactively and save the session."""
    from autoresponder.children.handshake import authorize, error_code
    from autoresponder.errors import classify_startup_error
    from autoresponder.messaging import create_telegram_client

    _configure_logging()
    store = _store()
    record = apply_env_api(store.load())

    api_id = record.api_id or Prompt.ask("API ID")
    api_hash = record.api_hash or Prompt.ask("API Hash")
    phone = phone or Prompt.ask("Phone number")
    record = store.update_api(api_id, api_hash)

    async def read_code() -> str:
        return await asyncio.to_thread(Prompt.ask, "Code from Telegram")

    async def read_password() -> str:
        return await asyncio.to_thread(Prompt.ask, "2FA password", password=True)

    async def run_login() -> bool:
        client = create_telegram_client(record.api_id_int, record.api_hash, record.session)
        await client.connect()
        try:
            signed_in = await authorize(client, phone, read_code, read_password)
            store.save_session(client.session.save())
            return signed_in
        finally:
            await client.disconnect()

    try:
        signed_in = asyncio.run(run_login())
    except Exception as e:
        classified = classify_startup_error(f"{error_code(e)}: {e}")
        console.print(f"[red]{classified.message}[/red]")
        raise typer.Exit(1)

    if signed_in:
        console.print(f"[green]Authentication successful! Session saved to {store.path}[/green]")
    else:
        console.print(f"[green]Already authorized. Session saved to {store.path}[/green]")


@app.command()
def bot() -> None:
    """Run the Bot API variant (BOT_TOKEN, ADMIN_CHAT_ID, TEST_GROUP_ID)."""
    from autoresponder.bot import create_bot, run_bot

    _configure_logging()
    bot_settings = BotSettings.from_env()
    if not bot_settings.bot_token:
        console.print("[red]BOT_TOKEN is not set (environment or .env)[/red]")
        raise typer.Exit(1)

    responder = create_bot(get_settings(), bot_settings)

    async def run() -> None:
        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)
        await run_bot(responder, shutdown)

    console.print(Panel(
        "[bold cyan]Bot started[/bold cyan]\n\n[dim]Press Ctrl+C to stop[/dim]",
        title="Auto-responder bot",
        border_style="cyan",
    ))
    asyncio.run(run())


@app.command()
def config() -> None:
    """Show the effective settings and the credential record."""
    settings = get_settings()
    store = _store()

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Settings file", str(get_config_path()))
    for name, value in settings.model_dump(exclude={"messages"}).items():
        table.add_row(name, str(value))
    console.print(table)

    record = store.load().to_public_dict()
    console.print(Panel(
        "\n".join(f"{k}: {v or '[dim]unset[/dim]'}" for k, v in record.items()),
        title=f"Credentials ({store.path})",
    ))


@app.command()
def version() -> None:
    """Show the version."""
    console.print(f"autoresponder version {__version__}")


if __name__ == "__main__":
    app()
