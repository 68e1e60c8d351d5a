"""CLI entry point for the wapair service."""

from pathlib import Path

import click

from wapair import __version__
from wapair.config import get_config_path, load_config
from wapair.logging import setup_logging


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """wapair - Link WhatsApp accounts by pairing code and deploy their bots."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = get_config_path(config)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
@click.option("--port", "-p", type=int, default=None, help="Override listen port.")
@click.pass_context
def serve(ctx: click.Context, port: int | None) -> None:
    """Run the pairing HTTP server until Ctrl+C."""
    import asyncio

    from wapair.app import build_service, run_service
    from wapair.errors import WapairError

    config = ctx.obj["config"]
    if port is not None:
        config.port = port

    async def _serve():
        try:
            service = await build_service(config)
        except WapairError as e:
            click.echo(f"Startup error: {e}", err=True)
            raise SystemExit(1)

        click.echo(f"Pairing API listening on {config.bind_address}:{config.port}")
        click.echo("Press Ctrl+C to stop")
        await run_service(service)

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("\nShutting down...")


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"wapair version {__version__}")


@main.command("config-path")
@click.pass_context
def config_path(ctx: click.Context) -> None:
    """Show the config file location."""
    path = ctx.obj["config_path"]
    suffix = "" if path.exists() else " (not found, using defaults)"
    click.echo(f"{path}{suffix}")
