"""CLI commands for Sentra Agent."""

import asyncio
import signal
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from sentra_agent import __logo__, __version__

app = typer.Typer(
    name="sentra",
    help=f"{__logo__} Sentra - chat reply runtime",
    no_args_is_help=True,
)

console = Console()

# Settings that must never be echoed in full.
_SECRET_FIELDS = {"api_key"}


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} Sentra v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-V", callback=version_callback, is_eager=True
    ),
):
    """Sentra - chat reply runtime."""
    pass


def _configure_logging(level: str, log_file=None) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    if log_file:
        logger.add(str(log_file), level=level.upper(), rotation="10 MB", retention=5, encoding="utf-8")


@app.command()
def version():
    """Print the version."""
    console.print(f"{__logo__} Sentra v{__version__}")


@app.command()
def config():
    """Show the effective settings (environment + .env)."""
    from sentra_agent.settings import get_settings

    settings = get_settings()
    table = Table(title=f"{__logo__} Sentra settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for name, value in settings.model_dump().items():
        if name in _SECRET_FIELDS:
            shown = "[green]✓ set[/green]" if value else "[dim]not set[/dim]"
        else:
            shown = str(value)
        table.add_row(name.upper(), shown)
    console.print(table)


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Start the Sentra gateway (connects to the chat adapter)."""
    from sentra_agent.agent.loop import AgentLoop
    from sentra_agent.settings import get_settings

    settings = get_settings()
    _configure_logging("DEBUG" if verbose else settings.log_level, settings.log_file)

    console.print(f"{__logo__} Starting Sentra gateway -> {settings.ws_url}")
    console.print(f"  Model: {settings.main_ai_model}")
    if settings.intervention_enabled:
        console.print(f"  Reply intervention: {settings.reply_intervention_model}")

    agent = AgentLoop.from_settings(settings)

    async def run():
        _shutdown_done = False

        async def _graceful_shutdown() -> None:
            nonlocal _shutdown_done
            if _shutdown_done:
                return
            _shutdown_done = True
            console.print("\nShutting down...")
            await agent.stop()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.ensure_future(_graceful_shutdown()),
            )

        try:
            await agent.run()
        except (KeyboardInterrupt, asyncio.CancelledError):
            await _graceful_shutdown()

    asyncio.run(run())


if __name__ == "__main__":
    app()
