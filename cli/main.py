# cli/main.py
"""Main CLI entry point for the Order Saga Orchestrator."""

import click

from order_saga import __version__
from order_saga.config import get_settings
from order_saga.logging_setup import setup_logging


@click.group()
@click.version_option(version=__version__)
@click.option('--log-level', default=None, help='Override SAGA_LOG_LEVEL')
def cli(log_level):
    """Order Saga Orchestrator CLI - run the gateway, worker and orders."""
    settings = get_settings()
    setup_logging(log_level or settings.log_level, settings.log_format)


@cli.command()
@click.option('--host', default=None, help='Bind host (default: SAGA_API_HOST)')
@click.option('--port', type=int, default=None, help='Bind port (default: SAGA_API_PORT)')
def serve(host, port):
    """Run the HTTP trigger gateway."""
    import uvicorn

    from order_saga.api.app import create_app

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=host or settings.api_host,
        port=port or settings.api_port
    )


def register_commands():
    """Register all CLI command groups."""
    from cli.commands.orders import order
    cli.add_command(order)

    from worker.cli import main as worker
    cli.add_command(worker, name='worker')


register_commands()


if __name__ == '__main__':
    cli()
