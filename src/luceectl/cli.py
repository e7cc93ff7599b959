"""Typer-powered command line for ``luceectl``.

Commands read the project's ``lucee.json`` (``--project-dir``, default: the
current directory), act on the matching instance under ``~/.lucli/servers``
and record one structured log entry per invocation.
"""
from __future__ import annotations

import textwrap
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import (
    AppConfig,
    ConfigError,
    ServerConfig,
    load_config,
    load_server_config,
    save_server_config,
)
from .config_keys import ConfigKeyResolver
from .exit_codes import ExitCode, exit_code_for
from .keystore import KeystoreError, KeystoreProvisioner
from .logging import OperationScope, StructuredLogger
from .ports import (
    PortConflictError,
    check_availability,
    find_conflicts,
    is_port_available,
    port_plan,
)
from .providers import VersionCatalog
from .provisioner import InstanceProvisioner, ProvisionError
from .server_xml import ServerXmlError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to luceectl's YAML config file.",
)

PROJECT_DIR_OPTION = typer.Option(
    None,
    "--project-dir",
    "-p",
    file_okay=False,
    help="Project directory containing lucee.json (defaults to the current directory).",
)

JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Lucee server instance provisioning CLI.

        Renders Tomcat server.xml, TLS keystores and rewrite rules for the
        server described by a project's lucee.json.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    catalog: VersionCatalog
    keystores: KeystoreProvisioner
    provisioner: InstanceProvisioner
    resolver: ConfigKeyResolver


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    logger = StructuredLogger(config.logs_dir)
    catalog = VersionCatalog(
        config.versions.cache,
        source_url=config.versions.url,
        timeout=config.versions.timeout,
    )
    keystores = KeystoreProvisioner(config.keytool_bin)
    provisioner = InstanceProvisioner(config, keystores=keystores)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        catalog=catalog,
        keystores=keystores,
        provisioner=provisioner,
        resolver=ConfigKeyResolver(),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the luceectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"luceectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: list[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _project_dir(value: Path | None) -> Path:
    return (value or Path.cwd()).expanduser().absolute()


def _load_project(op: OperationScope, project_dir: Path) -> ServerConfig:
    try:
        return load_server_config(project_dir)
    except ConfigError as exc:
        _command_error(op, str(exc))


def _format_age(seconds: float | None) -> str:
    if seconds is None:
        return "unknown"
    if seconds < 60:
        return "just now"
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 48:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


config_app = typer.Typer(help="Read and change values in a project's lucee.json.")
versions_app = typer.Typer(help="List available Lucee versions.")
server_app = typer.Typer(help="Provision and inspect server instances.")

app.add_typer(config_app, name="config")
app.add_typer(versions_app, name="versions")
app.add_typer(server_app, name="server")


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("get")
def config_get(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Dotted key, e.g. jvm.maxMemory."),
    project_dir: Path | None = PROJECT_DIR_OPTION,
) -> None:
    """Print the value stored under KEY."""
    runtime = _get_runtime(ctx)
    project = _project_dir(project_dir)
    with runtime.logger.operation(
        "config get",
        args={"key": key},
        target={"kind": "project", "scope": str(project)},
    ) as op:
        if not runtime.resolver.is_known_key(key):
            _command_error(op, f"Unknown configuration key: {key}")
        server_config = _load_project(op, project)
        value = runtime.resolver.get(server_config, key)
        if key == "admin.password" and value:
            console.print("********")
        elif value is None:
            console.print("[dim](not set)[/dim]")
        else:
            console.print(value, markup=False, highlight=False)
        op.success("Read configuration value.", changed=0, context={"key": key})


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Dotted key, e.g. https.port."),
    value: str = typer.Argument(..., help="New value (as a string)."),
    project_dir: Path | None = PROJECT_DIR_OPTION,
) -> None:
    """Store VALUE under KEY in lucee.json."""
    runtime = _get_runtime(ctx)
    project = _project_dir(project_dir)
    with runtime.logger.operation(
        "config set",
        args={"key": key},
        target={"kind": "project", "scope": str(project)},
    ) as op:
        problem = runtime.resolver.validate(key, value)
        if problem is not None:
            _command_error(op, problem)
        server_config = _load_project(op, project)
        runtime.resolver.set(server_config, key, value)
        path = project / "lucee.json"
        try:
            save_server_config(server_config, path)
        except OSError as exc:
            _command_error(op, f"Unable to write {path}: {exc}", rc=ExitCode.ENVIRONMENT)
        console.print(f"[green]Set[/green] {key} in {path}")
        op.success("Updated configuration value.", changed=1, context={"key": key})


@config_app.command("keys")
def config_keys(
    ctx: typer.Context,
    project_dir: Path | None = PROJECT_DIR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List every supported key with its current value."""
    runtime = _get_runtime(ctx)
    project = _project_dir(project_dir)
    with runtime.logger.operation(
        "config keys",
        args={"json": json_output},
        target={"kind": "project", "scope": str(project)},
    ) as op:
        server_config = _load_project(op, project)
        values: dict[str, str | None] = {}
        for key in runtime.resolver.available_keys():
            value = runtime.resolver.get(server_config, key)
            if key == "admin.password" and value:
                value = "********"
            values[key] = value
        if json_output:
            console.print_json(data=values)
        else:
            table = Table(title="Configuration keys", header_style="bold magenta")
            table.add_column("Key")
            table.add_column("Value")
            for key, value in values.items():
                table.add_row(key, value if value is not None else "-")
            console.print(table)
        op.success("Listed configuration keys.", changed=0, context={"count": len(values)})


# ----------------------------------------------------------------------
# versions
# ----------------------------------------------------------------------
@versions_app.command("list")
def versions_list(
    ctx: typer.Context,
    refresh: bool = typer.Option(False, "--refresh", help="Bypass the 24h cache."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show installable Lucee versions, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "versions list",
        args={"refresh": refresh, "json": json_output},
        target={"kind": "versions", "scope": runtime.catalog.source_url},
    ) as op:
        versions = runtime.catalog.available_versions(bypass_cache=refresh)
        entry = runtime.catalog.cache_entry()
        age = entry.age_seconds(datetime.now(UTC).timestamp()) if entry else None
        if json_output:
            console.print_json(
                data={
                    "versions": versions,
                    "cache": str(runtime.catalog.cache_path),
                    "cache_age_seconds": age,
                }
            )
        else:
            table = Table(title="Lucee versions", header_style="bold magenta")
            table.add_column("Version")
            for version in versions:
                table.add_row(version)
            console.print(table)
            if entry is not None:
                console.print(f"[dim]Cache updated {_format_age(age)}[/dim]")
            else:
                console.print("[yellow]Using built-in version list (registry unavailable).[/yellow]")
        op.success("Listed versions.", changed=0, context={"count": len(versions)})


@versions_app.command("clear-cache")
def versions_clear_cache(ctx: typer.Context) -> None:
    """Delete the cached version list."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "versions clear-cache",
        target={"kind": "versions", "scope": str(runtime.catalog.cache_path)},
    ) as op:
        removed = runtime.catalog.clear_cache()
        if removed:
            console.print(f"Removed {runtime.catalog.cache_path}")
        else:
            console.print("No version cache to remove.")
        op.success("Cleared version cache.", changed=int(removed))


# ----------------------------------------------------------------------
# server
# ----------------------------------------------------------------------
@server_app.command("configure")
def server_configure(
    ctx: typer.Context,
    project_dir: Path | None = PROJECT_DIR_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Render server.xml without writing any files.",
    ),
    show: bool = typer.Option(False, "--show", help="Print the rendered server.xml."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Render conf/server.xml, keystore and rewrite rules for the project."""
    runtime = _get_runtime(ctx)
    project = _project_dir(project_dir)
    with runtime.logger.operation(
        "server configure",
        args={"dry_run": dry_run, "show": show},
        target={"kind": "project", "scope": str(project)},
    ) as op:
        server_config = _load_project(op, project)
        try:
            result = runtime.provisioner.provision(server_config, project, dry_run=dry_run)
        except PortConflictError as exc:
            _command_error(op, "Port conflicts detected.", errors=exc.conflicts)
        except KeystoreError as exc:
            errors = [str(exc)]
            if exc.output:
                errors.append(exc.output)
            _command_error(op, str(exc), rc=exit_code_for(exc), errors=errors)
        except (ConfigError, ServerXmlError, ProvisionError, OSError) as exc:
            _command_error(op, str(exc), rc=exit_code_for(exc))

        if json_output:
            payload = result.to_dict()
            if show:
                payload["document"] = result.document
            console.print_json(data=payload)
        else:
            if show:
                console.print(result.document, markup=False, highlight=False)
            label = "[yellow]Dry run[/yellow]" if dry_run else "[green]Configured[/green]"
            state = "changed" if result.changed else "unchanged"
            console.print(f"{label}: {result.server_xml} ({state})")
            if result.keystore is not None:
                console.print(f"Keystore: {result.keystore.keystore_path}")
            if result.rewrite_config is not None:
                console.print(f"Rewrite rules: {result.rewrite_config}")
        op.success(
            "Dry run complete." if dry_run else "Server configured.",
            changed=0 if dry_run else int(result.changed),
            context=result.to_dict(),
        )


@server_app.command("ports")
def server_ports(
    ctx: typer.Context,
    project_dir: Path | None = PROJECT_DIR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the ports the instance uses and whether they are free."""
    runtime = _get_runtime(ctx)
    project = _project_dir(project_dir)
    with runtime.logger.operation(
        "server ports",
        args={"json": json_output},
        target={"kind": "project", "scope": str(project)},
    ) as op:
        server_config = _load_project(op, project)
        plan = port_plan(server_config)
        conflicts = find_conflicts(plan)
        availability = check_availability(plan, is_available=is_port_available)
        if json_output:
            console.print_json(
                data={
                    "ports": {label.lower(): port for label, port in plan.labelled()},
                    "available": {label.lower(): free for label, free in availability.items()},
                    "conflicts": conflicts,
                }
            )
        else:
            table = Table(title="Instance ports", header_style="bold magenta")
            table.add_column("Listener")
            table.add_column("Port", justify="right")
            table.add_column("Status")
            for label, port in plan.labelled():
                status = "[green]free[/green]" if availability[label] else "[yellow]in use[/yellow]"
                table.add_row(label, str(port), status)
            console.print(table)
        if conflicts:
            for message in conflicts:
                console.print(f"[red]{message}[/red]")
            op.error("Port conflicts detected.", errors=conflicts, rc=int(ExitCode.VALIDATION))
            raise typer.Exit(code=int(ExitCode.VALIDATION))
        busy = [label for label, free in availability.items() if not free]
        if busy:
            op.warning(
                "Some ports are in use.",
                warnings=[f"{label} port in use" for label in busy],
            )
        else:
            op.success("All ports available.", changed=0)


@server_app.command("tls")
def server_tls(
    ctx: typer.Context,
    project_dir: Path | None = PROJECT_DIR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Describe the instance keystore certificate."""
    runtime = _get_runtime(ctx)
    project = _project_dir(project_dir)
    with runtime.logger.operation(
        "server tls",
        args={"json": json_output},
        target={"kind": "project", "scope": str(project)},
    ) as op:
        server_config = _load_project(op, project)
        try:
            instance_dir = runtime.provisioner.instance_dir(server_config, project)
        except ProvisionError as exc:
            _command_error(op, str(exc))
        try:
            status = runtime.keystores.inspect(instance_dir)
        except KeystoreError as exc:
            _command_error(op, str(exc), rc=exit_code_for(exc))

        if json_output:
            console.print_json(data=status.to_dict())
        elif not status.exists:
            console.print(
                f"No keystore at {status.keystore_path}. "
                "Enable https and run `luceectl server configure`."
            )
        else:
            table = Table(title="Instance keystore", header_style="bold magenta")
            table.add_column("Field")
            table.add_column("Value")
            table.add_row("Keystore", str(status.keystore_path))
            table.add_row("Alias", status.alias or "-")
            table.add_row("Subject", status.subject or "-")
            table.add_row("DNS names", ", ".join(status.dns_names) or "-")
            table.add_row("IP addresses", ", ".join(status.ip_addresses) or "-")
            if status.not_valid_before is not None:
                table.add_row("Not valid before", status.not_valid_before.isoformat())
            if status.not_valid_after is not None:
                table.add_row("Not valid after", status.not_valid_after.isoformat())
            console.print(table)

        if status.exists:
            op.success("Inspected keystore.", changed=0, context=status.to_dict())
        else:
            op.warning("Keystore not found.", warnings=["keystore missing"])


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
