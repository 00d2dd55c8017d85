"""
CLI commands for credential management.

Provides commands for adding, revoking, rotating, listing and verifying
API credentials in the credential file, and for seeding a default key set.
"""

import json
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from restgate.cli.context import (
    CLIContext,
    get_credential_store,
    handle_restgate_error,
    pass_context,
)
from restgate.core.hashing import generate_secret
from restgate.core.policy import Role

console = Console()

ROLE_CHOICE = click.Choice([r.value for r in Role], case_sensitive=False)

# Key set created by `credentials init`
DEFAULT_KEYS = (
    ("admin_key", Role.ADMIN),
    ("producer_key", Role.PRODUCER),
    ("consumer_key", Role.CONSUMER),
    ("readonly_key", Role.READONLY),
)


@click.group(name='credentials')
def credentials_group():
    """Manage API credentials."""
    pass


@credentials_group.command(name='add')
@click.argument('key')
@click.option(
    '--secret',
    '-s',
    default=None,
    help='API secret (prompted for if omitted)',
)
@click.option(
    '--generate',
    '-g',
    is_flag=True,
    help='Generate a random secret and print it',
)
@click.option(
    '--role',
    '-r',
    type=ROLE_CHOICE,
    default=None,
    help='Role for the key (default: auth.default_role from config)',
)
@pass_context
@handle_restgate_error
def add_credential(ctx: CLIContext, key: str, secret: Optional[str], generate: bool, role: Optional[str]):
    """
    Add a credential, or replace the secret and role of an existing one.

    Examples:

        restgate credentials add my_custom_key --secret my_custom_secret

        restgate credentials add app1_key --generate --role producer
    """
    if secret and generate:
        raise click.UsageError("--secret and --generate are mutually exclusive")

    if generate:
        secret = generate_secret()
    elif secret is None:
        secret = click.prompt("API secret", hide_input=True, confirmation_prompt=True)

    store = get_credential_store(ctx.config, create=True)
    existed = key in store
    credential = store.add_or_update(key, secret, role or ctx.config.auth.default_role)

    action = "Updated" if existed else "Added"
    click.echo(f"✓ {action} API key: {credential.key} (role: {credential.role.value})")
    if generate:
        click.echo()
        click.echo(f"Secret: {secret}")
        click.echo()
        click.echo("⚠ Store this secret securely. It will not be displayed again.")
    click.echo(f"Test with: curl -u {credential.key}:<secret> http://localhost:{ctx.config.gateway.listen_port}/topics")


@credentials_group.command(name='revoke')
@click.argument('key')
@pass_context
@handle_restgate_error
def revoke_credential(ctx: CLIContext, key: str):
    """
    Revoke a credential.

    A running gateway picks up the change on SIGHUP or POST /_gateway/reload.
    """
    store = get_credential_store(ctx.config)
    store.revoke(key)
    click.echo(f"✓ Revoked API key: {key}")


@credentials_group.command(name='rotate')
@click.argument('key')
@pass_context
@handle_restgate_error
def rotate_credential(ctx: CLIContext, key: str):
    """Generate a new secret for an existing key, keeping its role."""
    store = get_credential_store(ctx.config)
    secret = store.rotate(key)
    click.echo(f"✓ Rotated API key: {key}")
    click.echo()
    click.echo(f"Secret: {secret}")
    click.echo()
    click.echo("⚠ Store this secret securely. It will not be displayed again.")


@credentials_group.command(name='list')
@click.option(
    '--format',
    '-f',
    type=click.Choice(['table', 'json'], case_sensitive=False),
    default='table',
    help='Output format (default: table)',
)
@pass_context
@handle_restgate_error
def list_credentials(ctx: CLIContext, format: str):
    """List API keys and their roles. Secrets are never shown."""
    store = get_credential_store(ctx.config)
    credentials = store.list_credentials()

    if format.lower() == 'json':
        click.echo(json.dumps([c.to_dict() for c in credentials], indent=2))
        return

    if not credentials:
        click.echo("No credentials found.")
        return

    table = Table(title=f"Credentials ({store.path})")
    table.add_column("API Key", style="cyan")
    table.add_column("Role", style="green")
    for credential in credentials:
        table.add_row(credential.key, credential.role.value)
    console.print(table)


@credentials_group.command(name='verify')
@click.argument('key')
@click.option(
    '--secret',
    '-s',
    default=None,
    help='API secret (prompted for if omitted)',
)
@pass_context
@handle_restgate_error
def verify_credential(ctx: CLIContext, key: str, secret: Optional[str]):
    """Check a key/secret pair against the credential file."""
    if secret is None:
        secret = click.prompt("API secret", hide_input=True)
    store = get_credential_store(ctx.config)
    role = store.verify(key, secret)
    click.echo(f"✓ Valid credentials for {key} (role: {role.value})")


@credentials_group.command(name='init')
@click.option(
    '--force',
    is_flag=True,
    help='Replace the secrets of default keys that already exist',
)
@pass_context
@handle_restgate_error
def init_credentials(ctx: CLIContext, force: bool):
    """
    Create the default key set with freshly generated secrets.

    Creates admin_key, producer_key, consumer_key and readonly_key. Existing
    keys are left alone unless --force is given.
    """
    store = get_credential_store(ctx.config, create=True)

    created = []
    for key, role in DEFAULT_KEYS:
        if key in store and not force:
            click.echo(f"- Skipped existing key: {key}")
            continue
        secret = generate_secret()
        store.add_or_update(key, secret, role)
        created.append((key, role, secret))

    if not created:
        click.echo("No keys created.")
        return

    click.echo("✓ API keys created:")
    for key, role, secret in created:
        click.echo(f"  {key}:{secret}  ({role.value})")
    click.echo()
    click.echo("⚠ Store these secrets securely. They will not be displayed again.")
