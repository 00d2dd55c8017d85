"""
CLI command for running the gateway.
"""

from typing import Optional

import click

from restgate.cli.context import CLIContext, handle_restgate_error, pass_context
from restgate.config.settings import validate_config
from restgate.gateway.server import build_gateway, run_server
from restgate.logging_config import get_logger

logger = get_logger(__name__)


@click.command(name='serve')
@click.option(
    '--host',
    default=None,
    help='Interface to bind (default: gateway.listen_host)',
)
@click.option(
    '--port',
    '-p',
    type=int,
    default=None,
    help='Port to listen on (default: gateway.listen_port)',
)
@click.option(
    '--upstream',
    '-u',
    default=None,
    help='Upstream base URL (default: gateway.upstream_url)',
)
@pass_context
@handle_restgate_error
def serve(ctx: CLIContext, host: Optional[str], port: Optional[int], upstream: Optional[str]):
    """
    Start the authenticating gateway.

    Fails immediately if the credential file cannot be loaded.

    Examples:

        restgate serve --port 9093 --upstream http://kafka-rest-proxy:8082
    """
    config = ctx.config
    if host is not None:
        config.gateway.listen_host = host
    if port is not None:
        config.gateway.listen_port = port
    if upstream is not None:
        config.gateway.upstream_url = upstream
    validate_config(config)

    gateway = build_gateway(config)
    run_server(
        gateway,
        host=config.gateway.listen_host,
        port=config.gateway.listen_port,
        log_level=config.logging.level,
    )
