"""Command line interface for delegated password management."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .accounts import AccountMutator, AccountStatusReader
from .config import AppConfig, ConfigurationError, load_config
from .delegation import DelegationResolver
from .models import ManagedUserSummary, PasswordResetRequest

app = typer.Typer(help="Reset passwords for accounts delegated to you in Active Directory.")

GENERIC_FAILURE = "An error occurred while updating the user. Please check the application logs for details."


@app.callback()
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override the configured log level (DEBUG, INFO, WARNING...)."
    ),
) -> None:
    ctx.obj = {"log_level": log_level}


def configure_logging(config: AppConfig, override: Optional[str] = None) -> None:
    level_name = (override or config.logging.level or "INFO").upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level '{level_name}'.", param_hint="--log-level")
    logging.basicConfig(level=level, format=config.logging.format)
    logging.getLogger().setLevel(level)


def _load_configuration(ctx: typer.Context, config_path: Optional[Path]) -> AppConfig:
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    configure_logging(config, (ctx.obj or {}).get("log_level"))
    return config


def _echo_summary(summary: ManagedUserSummary) -> None:
    flags = []
    if summary.password_never_expires:
        flags.append("never-expires")
    if summary.password_change_required:
        flags.append("change-required")
    email = f" <{summary.email_address}>" if summary.email_address else ""
    suffix = f" [{', '.join(flags)}]" if flags else ""
    typer.echo(f"- {summary.username}: {summary.display_name}{email}{suffix}")


@app.command("managed-users")
def list_managed_users(
    ctx: typer.Context,
    admin: str = typer.Argument(..., help="sAMAccountName (or DOMAIN\\user) of the delegated admin."),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """List the accounts an admin may manage."""

    config = _load_configuration(ctx, config_path)
    users = DelegationResolver(config).resolve_managed_users(admin)

    if as_json:
        typer.echo(json.dumps([user.to_dict() for user in users], indent=2))
        return
    if not users:
        typer.echo("No managed users found.")
        return
    for user in users:
        _echo_summary(user)


@app.command("status")
def show_status(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="sAMAccountName of the account."),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Show the password status of a single account."""

    config = _load_configuration(ctx, config_path)
    status = AccountStatusReader(config).get_status(username)
    if status is None:
        typer.echo(f"User '{username}' not found.")
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(status.to_dict(), indent=2))
    else:
        _echo_summary(status)


@app.command("reset-password")
def reset_password(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="sAMAccountName of the account to reset."),
    admin: str = typer.Option(..., "--admin", help="Delegated admin performing the reset."),
    never_expires: Optional[bool] = typer.Option(
        None,
        "--never-expires/--expires",
        help="Set or clear 'password never expires'. Defaults to the account's current value.",
    ),
    require_change: Optional[bool] = typer.Option(
        None,
        "--require-change/--no-require-change",
        help="Force a password change at next logon. Defaults to the account's current value.",
    ),
    password: str = typer.Option(
        ...,
        "--password",
        help="New password for the account.",
        prompt=True,
        hide_input=True,
        confirmation_prompt=True,
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Reset a managed account's password, update its flags and unlock it."""

    config = _load_configuration(ctx, config_path)

    resolution = DelegationResolver(config).resolve(admin)
    if not resolution.contains(username):
        if resolution.complete:
            typer.echo(f"User '{username}' is not managed by '{admin}'.")
        else:
            typer.echo(GENERIC_FAILURE)
        raise typer.Exit(code=1)

    if never_expires is None or require_change is None:
        current = AccountStatusReader(config).get_status(username)
        if current is None:
            typer.echo(f"User '{username}' not found.")
            raise typer.Exit(code=1)
        if never_expires is None:
            never_expires = current.password_never_expires
        if require_change is None:
            require_change = current.password_change_required

    request = PasswordResetRequest(
        username=username,
        new_password=password,
        set_password_never_expires=never_expires,
        require_change_on_next_logon=require_change,
    )
    if not AccountMutator(config).reset_password(request):
        typer.echo(GENERIC_FAILURE)
        raise typer.Exit(code=1)

    typer.echo(f"Password and options for user '{username}' have been updated successfully.")


@app.command("mappings")
def show_mappings(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Display configured delegation mappings."""

    config = _load_configuration(ctx, config_path)
    if not config.delegation:
        typer.echo("No delegation mappings configured; nobody can manage any account.")
        return

    for mapping in config.delegation:
        typer.echo(f"- {mapping.admin_group}")
        managed: List[str] = sorted(mapping.managed_groups, key=str.casefold)
        for group in managed:
            typer.echo(f"    manages: {group}")


def run():
    app()


if __name__ == "__main__":
    run()
