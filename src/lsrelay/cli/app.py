"""Main CLI application."""

import asyncio
from pathlib import Path
from typing import Annotated

import typer

from lsrelay import __version__
from lsrelay.cli.console import console, dim, error, success, warning
from lsrelay.config import ConfigError, RelayConfig, load_config
from lsrelay.errors import RelayError

app = typer.Typer(
    name="lsrelay",
    help="lsrelay - relay to the extension service and language server",
    no_args_is_help=True,
)

ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Path to configuration file",
    ),
]


def _load_config(config_path: Path | None) -> RelayConfig:
    try:
        return load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        error(str(e))
        raise typer.Exit(1) from None


@app.command()
def serve(config: ConfigOption = None) -> None:
    """Run the extension service in the foreground."""
    from lsrelay.logging import configure_logging
    from lsrelay.service.host import ServiceHost

    relay_config = _load_config(config)
    configure_logging(
        relay_config.log_level,
        use_rich=True,
        redact_secrets=relay_config.redact_secrets,
        redact_patterns=relay_config.redact_patterns,
    )

    host = ServiceHost(relay_config)
    try:
        asyncio.run(host.serve_forever())
    except KeyboardInterrupt:
        console.print("\n[bold yellow]Service stopped[/bold yellow]")


@app.command()
def version(config: ConfigOption = None) -> None:
    """Show relay, extension service and language server versions.

    Launches the extension service if it is not running.
    """
    from lsrelay.service import CommunicationBridge, ExtensionServiceClient

    relay_config = _load_config(config)
    console.print(f"lsrelay {__version__}")

    async def query() -> tuple[tuple[str, str], str | None]:
        client = ExtensionServiceClient(CommunicationBridge(relay_config.service))
        try:
            service_version = await client.get_service_version()
            language_server_version = await client.get_language_server_version()
        finally:
            await client.close()
        return service_version, language_server_version

    try:
        (service_version, build), language_server_version = asyncio.run(query())
    except RelayError as e:
        error(str(e))
        raise typer.Exit(1) from None

    console.print(f"extension service {service_version} (build {build})")
    if language_server_version:
        console.print(f"language server {language_server_version}")
    else:
        dim("language server not running")


@app.command("quit")
def quit_service(config: ConfigOption = None) -> None:
    """Ask a running extension service to exit. Never starts one."""
    from lsrelay.service import CommunicationBridge, ExtensionServiceClient
    from lsrelay.service.launcher import is_listening

    relay_config = _load_config(config)

    async def stop() -> bool:
        if not await is_listening(relay_config.service.socket_path):
            return False
        client = ExtensionServiceClient(CommunicationBridge(relay_config.service))
        try:
            # The service is up, so this only attaches.
            await client.get_service_version()
            await client.quit_service()
        finally:
            await client.close()
        return True

    try:
        stopped = asyncio.run(stop())
    except RelayError as e:
        error(str(e))
        raise typer.Exit(1) from None

    if stopped:
        success("Extension service stopped")
    else:
        warning("Extension service is not running")


if __name__ == "__main__":
    app()
