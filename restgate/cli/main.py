"""
Entry point for the restgate command line.
"""

import sys
from typing import Optional

import click

from restgate._version import __version__
from restgate.cli.context import CLIContext, pass_context
from restgate.cli.credentials import credentials_group
from restgate.cli.serve import serve
from restgate.config.settings import load_config
from restgate.exceptions import ConfigurationError
from restgate.logging_config import setup_logging


@click.group()
@click.option(
    '--config',
    '-c',
    'config_path',
    envvar='RESTGATE_CONFIG',
    default=None,
    help='Path to config.yaml (default: ~/.restgate/config.yaml)',
)
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
    default=None,
    help='Override logging.level from config',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    help='Log at DEBUG level in human-readable form',
)
@click.version_option(version=__version__, prog_name='restgate')
@pass_context
def cli(ctx: CLIContext, config_path: Optional[str], log_level: Optional[str], verbose: bool):
    """RestGate - authenticating gateway for the Kafka REST Proxy."""
    try:
        ctx.config = load_config(config_path)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    ctx.config_path = config_path
    ctx.verbose = verbose

    level = "DEBUG" if verbose else (log_level or ctx.config.logging.level)
    invoked = click.get_current_context().invoked_subcommand
    if invoked == 'serve':
        setup_logging(
            level=level,
            log_file=ctx.config.logging.file,
            json_format=ctx.config.logging.json_format and not verbose,
        )
    else:
        # Management commands print their own output; only surface problems
        setup_logging(level=level if (verbose or log_level) else "WARNING", json_format=False)


cli.add_command(credentials_group)
cli.add_command(serve)


def main() -> None:
    cli()


if __name__ == '__main__':
    main()
