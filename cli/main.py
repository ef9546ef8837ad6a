"""CLI for the secret broker."""

import base64
import json
from pathlib import Path

import click
from dotenv import load_dotenv

from secretbroker import __version__
from secretbroker.config import ConfigError, load_settings
from secretbroker.utils.logging import setup_logging
from secretbroker.vault import (
    Credential,
    ProtectedString,
    SecretBroker,
    SecretBrokerError,
)
from secretbroker.vault.exceptions import PartialEnumerationError
from secretbroker.vault.marshal import type_of

load_dotenv(Path.cwd() / ".env")


def _broker(ctx: click.Context) -> SecretBroker:
    """Create the broker on first use so --help never touches the store."""
    if ctx.obj.get("broker") is None:
        try:
            settings = load_settings(ctx.obj.get("config_file"))
        except ConfigError as e:
            raise click.ClickException(str(e))
        setup_logging(
            level=ctx.obj.get("log_level") or settings.log_level,
            format_style=settings.log_format,
            log_file=settings.log_file,
        )
        ctx.obj["broker"] = SecretBroker.from_settings(settings)
    return ctx.obj["broker"]


def _parse_parameters(pairs: tuple) -> dict:
    parameters = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--param")
        parameters[key] = value
    return parameters


def _render(value) -> str:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, ProtectedString):
        return value.reveal()
    if isinstance(value, Credential):
        return f"{value.username}:{value.password.reveal()}"
    if isinstance(value, dict):
        return json.dumps({key: _render(item) for key, item in value.items()}, indent=2)
    return value


class _BrokerGroup(click.Group):
    """Turns broker errors into clean CLI failures."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except SecretBrokerError as e:
            raise click.ClickException(f"{type(e).__name__}: {e}")


@click.group(cls=_BrokerGroup)
@click.version_option(version=__version__, prog_name="secretbroker")
@click.option("--config", "config_file", default=None, help="YAML config file")
@click.option("--log-level", default=None, help="Override log level")
@click.pass_context
def cli(ctx, config_file, log_level):
    """Secret Broker CLI - one interface over many secret vaults."""
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    ctx.obj["log_level"] = log_level


# ----------------------------------------------------------------------
# Vaults
# ----------------------------------------------------------------------


@cli.group(cls=_BrokerGroup)
def vault():
    """Manage registered vaults."""
    pass


@vault.command("register")
@click.argument("name")
@click.argument("locator")
@click.option("--param", "-p", multiple=True, help="Vault parameter KEY=VALUE (stored encrypted)")
@click.option("--default", "is_default", is_flag=True, help="Make this the default vault")
@click.option("--force", is_flag=True, help="Replace an existing registration")
@click.pass_context
def vault_register(ctx, name, locator, param, is_default, force):
    """Register an extension vault."""
    parameters = _parse_parameters(param)
    registration = _broker(ctx).register_vault(
        name, locator, parameters, is_default=is_default, force=force
    )
    click.echo(f"✓ Registered vault '{registration.name}'")


@vault.command("unregister")
@click.argument("name")
@click.pass_context
def vault_unregister(ctx, name):
    """Unregister a vault and purge its parameters."""
    _broker(ctx).unregister_vault(name)
    click.echo(f"✓ Unregistered vault '{name}'")


@vault.command("list")
@click.pass_context
def vault_list(ctx):
    """List vaults in registration order."""
    click.echo(f"\n{'='*60}")
    click.echo("Vaults")
    click.echo(f"{'='*60}\n")

    for registration in _broker(ctx).get_vaults():
        marker = "*" if registration.is_default else " "
        click.echo(f" {marker} {registration.name:<24} {registration.locator}")

    click.echo("\n* = default vault")


@vault.command("default")
@click.argument("name")
@click.pass_context
def vault_default(ctx, name):
    """Set the default vault."""
    _broker(ctx).set_default_vault(name)
    click.echo(f"✓ Default vault is now '{name}'")


@vault.command("test")
@click.argument("name", required=False)
@click.pass_context
def vault_test(ctx, name):
    """Check that a vault is reachable and configured."""
    broker = _broker(ctx)
    try:
        broker.test_vault(name)
    except SecretBrokerError as e:
        click.echo(f"✗ Vault test failed: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Vault '{name or 'default'}' is healthy")


# ----------------------------------------------------------------------
# Secrets
# ----------------------------------------------------------------------


@cli.group(cls=_BrokerGroup)
def secret():
    """Add, read, list and remove secrets."""
    pass


@secret.command("add")
@click.argument("name")
@click.option("--vault", "-v", "vault_name", default=None, help="Target vault")
@click.option("--plain", is_flag=True, help="Store as a plain string instead of a protected one")
@click.option("--username", default=None, help="Store a credential for this user")
@click.option("--file", "from_file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Store the raw bytes of a file")
@click.option("--no-clobber", is_flag=True, help="Fail if the secret already exists")
@click.pass_context
def secret_add(ctx, name, vault_name, plain, username, from_file, no_clobber):
    """Add or replace a secret. The value is prompted with hidden input."""
    if from_file:
        value = Path(from_file).read_bytes()
    else:
        entered = click.prompt("Secret value", hide_input=True, confirmation_prompt=True)
        if username:
            value = Credential(username, ProtectedString(entered))
        elif plain:
            value = entered
        else:
            value = ProtectedString(entered)

    _broker(ctx).add_secret(name, value, vault=vault_name, no_clobber=no_clobber)
    click.echo(f"✓ Added secret '{name}'")


@secret.command("get")
@click.argument("name")
@click.option("--vault", "-v", "vault_name", default=None, help="Source vault")
@click.option("--reveal", is_flag=True, help="Print the secret value")
@click.pass_context
def secret_get(ctx, name, vault_name, reveal):
    """Fetch a secret. Prints only its type unless --reveal is given."""
    value = _broker(ctx).get_secret(name, vault=vault_name)
    if reveal:
        click.echo(_render(value))
    else:
        click.echo(f"{name}: {type_of(value).value} (use --reveal to print)")


@secret.command("info")
@click.argument("filter", default="*")
@click.option("--vault", "-v", "vault_name", default=None, help="Only this vault")
@click.pass_context
def secret_info(ctx, filter, vault_name):
    """List secret names, types and vaults matching FILTER."""
    failures = {}
    try:
        infos = _broker(ctx).get_secret_info(filter, vault=vault_name)
    except PartialEnumerationError as e:
        infos, failures = e.results, e.failures

    click.echo(f"\n{'='*60}")
    click.echo(f"Secrets matching '{filter}' ({len(infos)})")
    click.echo(f"{'='*60}\n")

    for info in infos:
        click.echo(f"  {info.name:<32} {info.type.value:<18} {info.vault_name}")

    for vault_failed, error in failures.items():
        click.echo(f"✗ {vault_failed}: {error}", err=True)
    if failures:
        raise SystemExit(1)


@secret.command("remove")
@click.argument("name")
@click.option("--vault", "-v", "vault_name", default=None, help="Target vault")
@click.pass_context
def secret_remove(ctx, name, vault_name):
    """Remove a secret."""
    _broker(ctx).remove_secret(name, vault=vault_name)
    click.echo(f"✓ Removed secret '{name}'")


def main():
    """Entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
