"""CLI entry point for bastion-iam."""

from __future__ import annotations

import copy
import json
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from bastion_iam import __version__
from bastion_iam.config import (
    DEFAULT_CONFIG_PATH,
    generate_default_yaml,
    load_config,
)
from bastion_iam.errors import IAMError
from bastion_iam.logging_config import setup_logging
from bastion_iam.store import utcnow

console = Console()

_STATUS_COLORS = {
    "ACTIVE": "green",
    "LOCKED": "bold red",
    "SUSPENDED": "yellow",
    "PENDING": "dim",
}


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn IAM errors into a one-line message and exit status 1."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except IAMError as e:
            _fail(str(e))

    return wrapper


@contextmanager
def _service(ctx: click.Context) -> Iterator[Any]:
    from bastion_iam.service import IAMService

    service = IAMService(ctx.obj["config"])
    try:
        yield service
    finally:
        service.close()


@click.group()
@click.version_option(__version__, prog_name="bastion-iam")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False),
    default=None,
    help="Path to config file (default: ~/.bastion-iam/config.yaml)",
)
@click.option(
    "--profile",
    "-p",
    type=click.Choice(["development", "staging", "production"], case_sensitive=False),
    default=None,
    help="Environment preset applied under the config file",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging verbosity",
)
@click.pass_context
def cli(
    ctx: click.Context, config: str | None, profile: str | None, log_level: str | None
) -> None:
    """Bastion-IAM: authentication, MFA, sessions, RBAC and audit.

    Quick start:
      bastion-iam config init
      bastion-iam user create admin --role admin
      bastion-iam serve
    """
    ctx.ensure_object(dict)
    try:
        cfg = load_config(config, profile.lower() if profile else None)
    except IAMError as e:
        _fail(str(e))
    if log_level:
        cfg["logging"]["level"] = log_level
    setup_logging(cfg["logging"]["level"], cfg["logging"].get("file"))
    ctx.obj["config"] = cfg


# ---------------------------------------------------------------------------
# config command group
# ---------------------------------------------------------------------------

@cli.group()
def config() -> None:
    """Manage bastion-iam configuration."""


@config.command("init")
@click.option(
    "--path",
    type=click.Path(),
    default=None,
    help=f"Where to create the config (default: {DEFAULT_CONFIG_PATH})",
)
@click.option("--force", is_flag=True, help="Overwrite existing config")
def config_init(path: str | None, force: bool) -> None:
    """Create a default configuration file.

    Example:
      bastion-iam config init
      bastion-iam config init --path ./bastion-iam.yaml
    """
    target = Path(path) if path else DEFAULT_CONFIG_PATH

    if target.exists() and not force:
        _fail(f"Config already exists at {target}. Use --force to overwrite.")

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(generate_default_yaml())
    click.echo(f"Config created at: {target}")


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current effective configuration."""
    import yaml

    display = _mask_secrets(ctx.obj["config"])
    click.echo(yaml.dump(display, default_flow_style=False, sort_keys=False))


# ---------------------------------------------------------------------------
# user command group
# ---------------------------------------------------------------------------

@cli.group()
def user() -> None:
    """Manage principals."""


@user.command("create")
@click.argument("username")
@click.option("--email", default="", help="Contact address (also the EMAIL factor default)")
@click.option("--display-name", default="", help="Human readable name")
@click.option("--role", "roles", multiple=True, help="Role to assign (repeatable)")
@click.option(
    "--status",
    type=click.Choice(["ACTIVE", "PENDING", "SUSPENDED"], case_sensitive=False),
    default="ACTIVE",
)
@click.password_option("--password", help="Initial password (prompted when omitted)")
@click.pass_context
@handle_errors
def user_create(
    ctx: click.Context,
    username: str,
    email: str,
    display_name: str,
    roles: tuple[str, ...],
    status: str,
    password: str,
) -> None:
    """Create a principal.

    Example:
      bastion-iam user create alice --email alice@example.com --role developer
    """
    from bastion_iam.auth.models import AccountStatus

    with _service(ctx) as service:
        principal = service.create_principal(
            username,
            password,
            email=email,
            display_name=display_name,
            roles=list(roles),
            status=AccountStatus(status.upper()),
            actor="cli",
        )
    click.echo(f"Created {principal.username} ({principal.principal_id})")


@user.command("list")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["console", "json"], case_sensitive=False),
    default="console",
    help="Output format",
)
@click.pass_context
@handle_errors
def user_list(ctx: click.Context, output: str) -> None:
    """List principals."""
    with _service(ctx) as service:
        principals = service.users.list_principals()

    if output == "json":
        click.echo(
            json.dumps(
                [
                    p.model_dump(mode="json", exclude={"mfa_methods"})
                    | {"mfaMethods": [m.type.value for m in p.enabled_mfa_methods]}
                    for p in principals
                ],
                indent=2,
            )
        )
        return

    table = Table(title="Principals", expand=True)
    table.add_column("ID", style="dim", width=18)
    table.add_column("Username", style="cyan")
    table.add_column("Status", width=10)
    table.add_column("Roles")
    table.add_column("Groups")
    table.add_column("MFA")
    table.add_column("Last login", style="dim", width=19)
    for p in principals:
        color = _STATUS_COLORS.get(p.status.value, "white")
        table.add_row(
            p.principal_id,
            p.username,
            f"[{color}]{p.status.value}[/{color}]",
            ", ".join(p.roles) or "-",
            ", ".join(p.groups) or "-",
            ", ".join(m.type.value for m in p.enabled_mfa_methods) or "-",
            p.last_login.strftime("%Y-%m-%d %H:%M:%S") if p.last_login else "-",
        )
    console.print(table)
    console.print(f"  Total: {len(principals)} principal(s)")


@user.command("show")
@click.argument("principal")
@click.pass_context
@handle_errors
def user_show(ctx: click.Context, principal: str) -> None:
    """Show one principal with its lockout state and effective permissions."""
    with _service(ctx) as service:
        p = service.users.resolve(principal)
        lock = service.lockout.state(p.principal_id)
        perms = service.permissions.effective_permissions(p.principal_id)
        sessions = service.sessions.list_active(p.principal_id)

    console.print(f"[bold]{p.username}[/bold] ({p.principal_id})")
    console.print(f"  Status:   {p.status.value}")
    console.print(f"  Email:    {p.email or '-'}")
    console.print(f"  Roles:    {', '.join(p.roles) or '-'}")
    console.print(f"  Groups:   {', '.join(p.groups) or '-'}")
    console.print(
        f"  MFA:      {', '.join(m.type.value for m in p.enabled_mfa_methods) or '-'}"
    )
    console.print(
        f"  Lockout:  {lock.status(utcnow()).value} ({lock.failed_attempts} failed attempt(s))"
    )
    console.print(f"  Sessions: {len(sessions)} active")

    table = Table(title="Effective permissions")
    table.add_column("Pattern", style="cyan")
    table.add_column("Effect", width=6)
    table.add_column("Source", style="dim")
    for pattern, source in sorted(perms.deny.items()):
        table.add_row(pattern, "[red]deny[/red]", source)
    for pattern, source in sorted(perms.allow.items()):
        table.add_row(pattern, "[green]allow[/green]", source)
    console.print(table)


@user.command("set-status")
@click.argument("principal")
@click.argument(
    "status", type=click.Choice(["ACTIVE", "PENDING", "SUSPENDED"], case_sensitive=False)
)
@click.pass_context
@handle_errors
def user_set_status(ctx: click.Context, principal: str, status: str) -> None:
    """Activate, suspend or park a principal. Suspension ends all its sessions."""
    from bastion_iam.auth.models import AccountStatus

    with _service(ctx) as service:
        updated = service.set_status(principal, AccountStatus(status.upper()), actor="cli")
    click.echo(f"{updated.username} is now {updated.status.value}")


@user.command("unlock")
@click.argument("principal")
@click.pass_context
@handle_errors
def user_unlock(ctx: click.Context, principal: str) -> None:
    """Clear a lockout and its failed-attempt counter."""
    with _service(ctx) as service:
        was_locked = service.unlock(principal, actor="cli")
    click.echo("Unlocked." if was_locked else "Principal was not locked; counter cleared.")


@user.command("passwd")
@click.argument("principal")
@click.password_option("--password", help="New password (prompted when omitted)")
@click.pass_context
@handle_errors
def user_passwd(ctx: click.Context, principal: str, password: str) -> None:
    """Reset a principal's password and end its sessions."""
    with _service(ctx) as service:
        p = service.users.resolve(principal)
        revoked = service.change_password(p.principal_id, password, actor="cli")
    click.echo(f"Password updated; {len(revoked)} session(s) revoked.")


# ---------------------------------------------------------------------------
# role / group / grant commands
# ---------------------------------------------------------------------------

@cli.group()
def role() -> None:
    """Manage roles and role assignments."""


@role.command("define")
@click.argument("name")
@click.option("--permission", "permissions", multiple=True, help="Allowed pattern (repeatable)")
@click.option("--deny", "denials", multiple=True, help="Denied pattern (repeatable)")
@click.option("--description", default="")
@click.pass_context
@handle_errors
def role_define(
    ctx: click.Context,
    name: str,
    permissions: tuple[str, ...],
    denials: tuple[str, ...],
    description: str,
) -> None:
    """Create or replace a role.

    Example:
      bastion-iam role define developer --permission 'repo:*' --deny 'repo:delete'
    """
    from bastion_iam.auth.models import Role

    with _service(ctx) as service:
        service.define_role(
            Role(
                name=name,
                description=description,
                permissions=list(permissions),
                denials=list(denials),
            ),
            actor="cli",
        )
    click.echo(f"Role '{name}' defined.")


@role.command("list")
@click.pass_context
@handle_errors
def role_list(ctx: click.Context) -> None:
    """List roles and their patterns."""
    with _service(ctx) as service:
        roles = service.users.list_roles()
    table = Table(title="Roles")
    table.add_column("Role", style="cyan")
    table.add_column("Allows")
    table.add_column("Denies", style="red")
    table.add_column("Description", style="dim")
    for r in roles:
        table.add_row(
            r.name, ", ".join(r.permissions) or "-", ", ".join(r.denials) or "-", r.description
        )
    console.print(table)


@role.command("assign")
@click.argument("principal")
@click.argument("role_name")
@click.option("--remove", is_flag=True, help="Unassign instead")
@click.pass_context
@handle_errors
def role_assign(ctx: click.Context, principal: str, role_name: str, remove: bool) -> None:
    """Assign a role directly to a principal."""
    with _service(ctx) as service:
        changed = service.assign_role(principal, role_name, remove=remove, actor="cli")
    click.echo("Updated." if changed else "No change.")


@cli.group()
def group() -> None:
    """Manage groups and memberships."""


@group.command("define")
@click.argument("name")
@click.option("--role", "roles", multiple=True, help="Role granted to members (repeatable)")
@click.option("--description", default="")
@click.pass_context
@handle_errors
def group_define(
    ctx: click.Context, name: str, roles: tuple[str, ...], description: str
) -> None:
    """Create or replace a group's roles (members are kept)."""
    from bastion_iam.auth.models import Group

    with _service(ctx) as service:
        service.define_group(
            Group(name=name, description=description, roles=list(roles)), actor="cli"
        )
    click.echo(f"Group '{name}' defined.")


@group.command("list")
@click.pass_context
@handle_errors
def group_list(ctx: click.Context) -> None:
    """List groups with their roles and members."""
    with _service(ctx) as service:
        groups = service.users.list_groups()
        names = {p.principal_id: p.username for p in service.users.list_principals()}
    table = Table(title="Groups")
    table.add_column("Group", style="cyan")
    table.add_column("Roles")
    table.add_column("Members")
    table.add_column("Description", style="dim")
    for g in groups:
        table.add_row(
            g.name,
            ", ".join(g.roles) or "-",
            ", ".join(names.get(m, m) for m in g.members) or "-",
            g.description,
        )
    console.print(table)


@group.command("add-member")
@click.argument("group_name")
@click.argument("principal")
@click.option("--remove", is_flag=True, help="Remove the member instead")
@click.pass_context
@handle_errors
def group_add_member(ctx: click.Context, group_name: str, principal: str, remove: bool) -> None:
    """Add a principal to a group."""
    with _service(ctx) as service:
        changed = service.add_group_member(group_name, principal, remove=remove, actor="cli")
    click.echo("Updated." if changed else "No change.")


@cli.command()
@click.argument("principal")
@click.argument("pattern")
@click.option("--deny", is_flag=True, help="Grant an explicit denial")
@click.option("--remove", is_flag=True, help="Remove the grant instead")
@click.pass_context
@handle_errors
def grant(ctx: click.Context, principal: str, pattern: str, deny: bool, remove: bool) -> None:
    """Grant a permission pattern directly to a principal.

    Example:
      bastion-iam grant alice 'billing:read'
      bastion-iam grant alice 'billing:*' --deny
    """
    from bastion_iam.auth.models import GrantEffect

    effect = GrantEffect.DENY if deny else GrantEffect.ALLOW
    with _service(ctx) as service:
        changed = service.grant(principal, pattern, effect, remove=remove, actor="cli")
    click.echo("Updated." if changed else "No change.")


# ---------------------------------------------------------------------------
# policy command group
# ---------------------------------------------------------------------------

@cli.group()
def policy() -> None:
    """Show or change the live IAM policy."""


@policy.command("show")
@click.pass_context
@handle_errors
def policy_show(ctx: click.Context) -> None:
    """Print the live policy as JSON."""
    with _service(ctx) as service:
        current = service.get_policy()
    click.echo(json.dumps(current.model_dump(by_alias=True), indent=2))


@policy.command("set")
@click.argument("assignments", nargs=-1, required=True)
@click.pass_context
@handle_errors
def policy_set(ctx: click.Context, assignments: tuple[str, ...]) -> None:
    """Update policy values given as section.key=value.

    Example:
      bastion-iam policy set session.requireMfa=true security.maxLoginAttempts=3
    """
    patch: dict[str, dict[str, Any]] = {}
    for item in assignments:
        key, sep, raw = item.partition("=")
        section, dot, name = key.partition(".")
        if not sep or not dot or not section or not name:
            _fail(f"Expected section.key=value, got '{item}'")
        patch.setdefault(section, {})[name] = _parse_value(raw)

    with _service(ctx) as service:
        updated = service.update_policy(patch, actor="cli")
    click.echo(json.dumps(updated.model_dump(by_alias=True), indent=2))


# ---------------------------------------------------------------------------
# audit command group
# ---------------------------------------------------------------------------

@cli.group()
def audit() -> None:
    """Inspect the audit trail."""


def _audit_query_options(func: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.option("--principal", default=None, help="Principal ID"),
        click.option("--event-type", "event_types", multiple=True, help="Event type (repeatable)"),
        click.option("--since", type=click.DateTime(), default=None, help="Start (UTC)"),
        click.option("--until", type=click.DateTime(), default=None, help="End (UTC)"),
        click.option("--limit", type=click.IntRange(min=1), default=None),
        click.option("--desc", is_flag=True, help="Newest first"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_query(
    principal: str | None,
    event_types: tuple[str, ...],
    since: datetime | None,
    until: datetime | None,
    limit: int | None,
    desc: bool,
) -> Any:
    from bastion_iam.audit.models import AuditEventType, AuditQuery

    try:
        types = [AuditEventType(t.upper()) for t in event_types]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--event-type") from e
    return AuditQuery(
        principal_id=principal,
        event_types=types,
        since=since,
        until=until,
        limit=limit,
        order="desc" if desc else "asc",
    )


@audit.command("list")
@_audit_query_options
@click.option(
    "--output",
    "-o",
    type=click.Choice(["console", "json"], case_sensitive=False),
    default="console",
    help="Output format",
)
@click.pass_context
@handle_errors
def audit_list(
    ctx: click.Context,
    principal: str | None,
    event_types: tuple[str, ...],
    since: datetime | None,
    until: datetime | None,
    limit: int | None,
    desc: bool,
    output: str,
) -> None:
    """Show audit events.

    Example:
      bastion-iam audit list --event-type LOGIN_FAILURE --desc --limit 20
    """
    from bastion_iam.audit.viewer import print_audit_events

    query = _build_query(principal, event_types, since, until, limit, desc)
    with _service(ctx) as service:
        page = service.query_audit(query)

    if output == "json":
        click.echo(json.dumps([e.model_dump(mode="json") for e in page.events], indent=2))
        return
    print_audit_events(page.events, title=f"Audit Events ({page.total} matching)")
    if page.next_cursor:
        console.print(f"  More results available (cursor {page.next_cursor})")


@audit.command("export")
@_audit_query_options
@click.option("--out", "out_path", type=click.Path(dir_okay=False), required=True)
@click.pass_context
@handle_errors
def audit_export(
    ctx: click.Context,
    principal: str | None,
    event_types: tuple[str, ...],
    since: datetime | None,
    until: datetime | None,
    limit: int | None,
    desc: bool,
    out_path: str,
) -> None:
    """Export matching audit events to CSV."""
    query = _build_query(principal, event_types, since, until, limit, desc)
    with _service(ctx) as service:
        count = service.audit.export_csv(out_path, query)
    click.echo(f"Exported {count} event(s) to {out_path}")


@audit.command("verify")
@click.pass_context
@handle_errors
def audit_verify(ctx: click.Context) -> None:
    """Re-compute the hash chain. Exits 1 if it is broken."""
    from bastion_iam.audit.viewer import print_chain_verification

    with _service(ctx) as service:
        result = service.audit.verify_chain()
    print_chain_verification(result)
    if not result.ok:
        sys.exit(1)


# ---------------------------------------------------------------------------
# serve command
# ---------------------------------------------------------------------------

@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.pass_context
@handle_errors
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from bastion_iam.web.api import create_app

    serve_cfg = ctx.obj["config"].get("serve", {})
    bind_host = host or serve_cfg.get("host", "127.0.0.1")
    bind_port = port or serve_cfg.get("port", 8080)

    with _service(ctx) as service:
        click.echo(f"Bastion-IAM listening on http://{bind_host}:{bind_port}", err=True)
        uvicorn.run(create_app(service), host=bind_host, port=bind_port, log_level="warning")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_value(raw: str) -> Any:
    """Interpret a CLI value as JSON where possible (true, 3, ...), else as text."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _mask_secrets(cfg: dict[str, Any]) -> dict[str, Any]:
    """Replace secret values with masked placeholders for display."""
    display = copy.deepcopy(cfg)
    secret_keys = {"password", "token", "secret"}

    def _mask(d: dict) -> None:
        for k, v in d.items():
            if any(s in k.lower() for s in secret_keys) and isinstance(v, str) and v:
                d[k] = "***"
            elif isinstance(v, dict):
                _mask(v)

    _mask(display)
    return display


def main() -> None:
    """Entry point for the bastion-iam CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
