"""Command line interface for the directory provisioning engine."""
from __future__ import annotations

import contextlib
import json
import logging
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple

import typer

from .config import AppConfig, ConfigurationError, load_config
from .errors import OrgDirectoryError
from .groups import GroupMembershipResolver
from .models import GuestRequest
from .org_cache import OrgTreeCache
from .ou_builder import AssetStructureBuilder
from .provisioner import AccountProvisioner
from .records import RecordStore
from .retirement import AccountRetirement
from .session import LDAPSession, SessionPool

app = typer.Typer(help="Synchronize the directory org tree and accounts from HR records.")
groups_app = typer.Typer(help="Inspect and change group memberships.")
app.add_typer(groups_app, name="groups")

_state = {"verbose": False}

ConfigOption = typer.Option(
    None, "--config", help="Path to a specific settings file (overrides default)."
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    _state["verbose"] = verbose


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    _configure_logging(config)
    return config


def _configure_logging(config: AppConfig) -> None:
    level = logging.DEBUG if _state["verbose"] else getattr(logging, config.logging.level, logging.INFO)
    logging.basicConfig(level=level, format=config.logging.format)


def _session_pool(config: AppConfig) -> SessionPool:
    return SessionPool(config.directory)


def _record_store(config: AppConfig) -> RecordStore:
    return RecordStore.from_config(config.database)


@contextlib.contextmanager
def _services(config: AppConfig) -> Iterator[Tuple[LDAPSession, RecordStore]]:
    """Authenticated directory session plus record store, translating failures to exit code 1."""

    try:
        store = _record_store(config)
        try:
            with _session_pool(config).session() as session:
                yield session, store
        finally:
            store.dispose()
    except OrgDirectoryError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@app.command("rebuild")
def rebuild_tree(config_path: Optional[Path] = ConfigOption) -> None:
    """Wipe and recreate the asset OU tree from the department records."""

    config = _load_configuration(config_path)
    with _services(config) as (session, store):
        cache = OrgTreeCache(store, config.provisioning.fallback_department_prefix)
        report = AssetStructureBuilder(session, config.directory, cache).rebuild()
    _echo_json(report.to_dict())


@app.command("provision")
def provision_account(
    person_id: str = typer.Argument(..., help="Identity card number of the employee."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Create the directory account of one employee."""

    config = _load_configuration(config_path)
    with _services(config) as (session, store):
        result = AccountProvisioner(session, config, store).provision(person_id)
    _echo_json(result.to_dict())


@app.command("provision-all")
def provision_all_accounts(config_path: Optional[Path] = ConfigOption) -> None:
    """Create the directory accounts of every active employee."""

    config = _load_configuration(config_path)
    with _services(config) as (session, store):
        summary = AccountProvisioner(session, config, store).provision_all()
    _echo_json(summary.to_dict())


@app.command("invite")
def invite_guest(
    username: str = typer.Argument(..., help="Requested login name."),
    email: str = typer.Argument(..., help="Contact e-mail address."),
    first_name: str = typer.Argument(..., help="Guest first name."),
    last_name: str = typer.Argument(..., help="Guest last name."),
    password: Optional[str] = typer.Option(None, "--password", help="Initial password."),
    identity_card: Optional[str] = typer.Option(None, "--identity-card", help="Identity card number."),
    reason: Optional[str] = typer.Option(None, "--reason", help="Why the guest is invited."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Create an invited (guest) account."""

    config = _load_configuration(config_path)
    request = GuestRequest(
        username=username,
        email=email,
        first_name=first_name,
        last_name=last_name,
        password=password,
        identity_card=identity_card,
        reason=reason,
    )
    with _services(config) as (session, store):
        result = AccountProvisioner(session, config, store).provision_guest(request)
    _echo_json(result.to_dict())


@app.command("remove-account")
def remove_account(
    identifier: str = typer.Argument(..., help="Employee id or login name."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Delete an account and its registered devices."""

    config = _load_configuration(config_path)
    with _services(config) as (session, store):
        result = AccountRetirement(session, config.directory, store).remove_account(identifier)
    _echo_json(result)


@groups_app.command("list")
def list_user_groups(
    login: str = typer.Argument(..., help="Login name of the account."),
    nested: bool = typer.Option(False, "--nested", help="Include groups inherited through nesting."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Show the groups of an account."""

    config = _load_configuration(config_path)
    with _services(config) as (session, _store):
        resolver = GroupMembershipResolver(session, config.directory)
        if nested:
            payload = resolver.list_all_groups(login).to_dict()
        else:
            payload = [group.to_dict() for group in resolver.list_direct_groups(login)]
    _echo_json(payload)


def _change_membership(config_path: Optional[Path], login: str, group_dns: List[str], add: bool) -> None:
    config = _load_configuration(config_path)
    with _services(config) as (session, _store):
        resolver = GroupMembershipResolver(session, config.directory)
        if add:
            result = resolver.add_member(login, group_dns)
        else:
            result = resolver.remove_member(login, group_dns)
    _echo_json(result.to_dict())
    if not result.success:
        raise typer.Exit(code=1)


@groups_app.command("add")
def add_to_groups(
    login: str = typer.Argument(..., help="Login name of the account."),
    group_dns: List[str] = typer.Argument(..., help="Distinguished names of the groups."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Add an account to one or more groups."""

    _change_membership(config_path, login, group_dns, add=True)


@groups_app.command("remove")
def remove_from_groups(
    login: str = typer.Argument(..., help="Login name of the account."),
    group_dns: List[str] = typer.Argument(..., help="Distinguished names of the groups."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Remove an account from one or more groups."""

    _change_membership(config_path, login, group_dns, add=False)


@groups_app.command("search")
def search_groups(
    term: str = typer.Argument(..., help="Substring of the group name or description."),
    limit: int = typer.Option(50, "--limit", help="Maximum number of groups returned."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Search groups by name, description or account name."""

    config = _load_configuration(config_path)
    with _services(config) as (session, _store):
        groups = GroupMembershipResolver(session, config.directory).search_groups(term, limit)
    _echo_json([group.to_dict() for group in groups])


@groups_app.command("page")
def page_groups(
    page: int = typer.Option(1, "--page", help="Page number, starting at 1."),
    page_size: int = typer.Option(100, "--page-size", help="Groups per page."),
    term: str = typer.Option("", "--term", help="Optional name or description filter."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """List every group one page at a time."""

    config = _load_configuration(config_path)
    with _services(config) as (session, _store):
        result = GroupMembershipResolver(session, config.directory).list_groups(page, page_size, term)
    _echo_json(result.to_dict())


@groups_app.command("show")
def show_group(
    group_dn: str = typer.Argument(..., help="Distinguished name of the group."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Display a single group."""

    config = _load_configuration(config_path)
    with _services(config) as (session, _store):
        group = GroupMembershipResolver(session, config.directory).get_group(group_dn)
    if group is None:
        typer.echo(f"Error: Group not found: {group_dn}")
        raise typer.Exit(code=1)
    _echo_json(group.to_dict())


@groups_app.command("check")
def check_membership(
    login: str = typer.Argument(..., help="Login name of the account."),
    group_dn: str = typer.Argument(..., help="Distinguished name of the group."),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Tell whether an account is a direct member of a group."""

    config = _load_configuration(config_path)
    with _services(config) as (session, _store):
        member = GroupMembershipResolver(session, config.directory).is_member(login, group_dn)
    _echo_json({"login": login, "group": group_dn, "member": member})


def run():
    app()


if __name__ == "__main__":
    run()
