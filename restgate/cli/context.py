"""
Shared CLI context and helpers.

Kept apart from restgate.cli.main so command modules can import it without
a circular import.
"""

import functools
import logging
import sys
import traceback
from typing import Optional

import click

from restgate.config.settings import RestGateConfig
from restgate.core.credentials import FileCredentialStore
from restgate.exceptions import RestGateError


class CLIContext:
    """State shared by all commands of one CLI invocation."""

    def __init__(self) -> None:
        self.config: Optional[RestGateConfig] = None
        self.config_path: Optional[str] = None
        self.verbose = False


pass_context = click.make_pass_decorator(CLIContext, ensure=True)


def handle_restgate_error(func):
    """
    Decorator to handle RestGateError exceptions in CLI commands.

    Catches RestGateError exceptions and displays user-friendly error messages.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except RestGateError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        except (click.ClickException, click.Abort, click.exceptions.Exit):
            raise
        except Exception as e:
            click.echo(f"Unexpected error: {e}", err=True)
            if logging.getLogger("restgate").isEnabledFor(logging.DEBUG):
                traceback.print_exc()
            sys.exit(1)

    return wrapper


def get_credential_store(config: RestGateConfig, create: bool = False) -> FileCredentialStore:
    """
    Open the credential file named in the configuration.

    Args:
        config: Loaded configuration
        create: Create the file if it does not exist

    Returns:
        FileCredentialStore
    """
    return FileCredentialStore(
        config.storage.credentials_file,
        backup_count=config.storage.backup_count,
        bcrypt_rounds=config.auth.bcrypt_rounds,
        default_role=config.auth.default_role,
        create=create,
    )
