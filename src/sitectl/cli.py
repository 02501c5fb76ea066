"""Typer-powered command line interface for ``sitectl``.

Every command opens a structured operation record, delegates to the site
registry or the provisioning workflow and maps failures onto the exit codes in
:mod:`sitectl.exit_codes`.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import GIT_TOKEN_ENV_VAR, AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .ports import PortAllocationError, PortAllocator
from .providers import NginxError, SourceError, SystemdError
from .sites import Site, SiteRegistry, SiteRegistryError, SiteState, normalize_domain
from .state import StateRegistry, StateRegistryError
from .templates import TemplateError
from .tls import TLS_MODES, CertificateError
from .workflow import SiteWorkflow, WorkflowError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sitectl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

DOMAIN_ARGUMENT = typer.Argument(..., help="Fully qualified domain name of the site.")

_PROVIDER_ERRORS = (NginxError, SystemdError, CertificateError, SourceError, TemplateError)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Multi-tenant web host site manager.

        Registers domains, assigns backend ports and drives nginx, certbot,
        systemd and git around the site lifecycle.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    state: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    sites: SiteRegistry
    workflow: SiteWorkflow


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
        allocator = PortAllocator.from_config(config.ports)
    except (ConfigError, PortAllocationError) as exc:
        console.print(f"[red]Invalid configuration: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    state = StateRegistry(config.registry_dir)
    try:
        state.ensure_root()
    except StateRegistryError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    sites = SiteRegistry(state, allocator, locks)
    workflow = SiteWorkflow.from_config(config, registry=sites, locks=locks)
    runtime = RuntimeContext(
        config=config,
        state=state,
        locks=locks,
        logger=logger,
        sites=sites,
        workflow=workflow,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the sitectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"sitectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, (SiteRegistryError, WorkflowError)):
        return exc.exit_code
    if isinstance(exc, (LockError, StateRegistryError)):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, _PROVIDER_ERRORS):
        return ExitCode.PROVIDER
    return ExitCode.INTERNAL


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    """Map *exc* to its exit code and terminate the command."""
    _command_error(op, str(exc), rc=int(_exit_code_for(exc)))


_HANDLED_ERRORS = (
    SiteRegistryError,
    WorkflowError,
    LockError,
    StateRegistryError,
    *_PROVIDER_ERRORS,
)


def _site_table(sites: Sequence[Site]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Domain", style="bold")
    table.add_column("Port", justify="right")
    table.add_column("State")
    table.add_column("Created At")
    table.add_column("Activated At")
    table.add_column("Removed At")
    if not sites:
        table.add_row("(none)", "", "", "", "", "")
        return table
    for site in sites:
        table.add_row(
            site.domain,
            str(site.port),
            _state_label(site.state),
            site.created_at,
            site.activated_at or "",
            site.removed_at or "",
        )
    return table


def _state_label(state: SiteState) -> str:
    if state is SiteState.ACTIVE:
        return "[green]active[/green]"
    if state is SiteState.PENDING:
        return "[yellow]pending[/yellow]"
    return "[dim]removed[/dim]"


def _site_target(domain: str) -> dict[str, object]:
    return {"kind": "site", "domain": domain}


@app.command()
def add(
    ctx: typer.Context,
    domain: str = DOMAIN_ARGUMENT,
    port: int | None = typer.Option(
        None,
        "--port",
        min=1,
        max=65535,
        help="Request a specific backend port instead of the lowest free one.",
    ),
    exist_ok: bool = typer.Option(
        False,
        "--exist-ok",
        help="Reuse an existing pending/active registration instead of failing.",
    ),
    register_only: bool = typer.Option(
        False,
        "--register-only",
        help="Only record the site in the registry; skip nginx, TLS and .env.",
    ),
    no_tls: bool = typer.Option(False, "--no-tls", help="Do not issue a certificate."),
    rollback: bool = typer.Option(
        False,
        "--rollback",
        help="Release the site and delete generated files when a step fails.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Register a site, assign it a port and publish it through nginx."""
    runtime = _get_runtime(ctx)
    args = {
        "domain": domain,
        "port": port,
        "exist_ok": exist_ok,
        "register_only": register_only,
        "no_tls": no_tls,
        "rollback": rollback,
    }
    with runtime.logger.operation("add", args=args, target=_site_target(domain)) as op:
        try:
            result = runtime.workflow.provision(
                domain,
                requested_port=port,
                exist_ok=exist_ok,
                register_only=register_only,
                tls=not no_tls,
                rollback=rollback,
                op=op,
            )
        except WorkflowError as exc:
            if exc.site is not None and not rollback:
                console.print(
                    f"[yellow]Site '{exc.site.domain}' left pending on port {exc.site.port}; "
                    "retry with --exist-ok or run 'sitectl remove'.[/yellow]"
                )
            _fail(op, exc)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        elif result.created:
            console.print(
                f"[green]Site '{result.site.domain}' registered on port {result.site.port} "
                f"({result.site.state.value}).[/green]"
            )
        else:
            console.print(
                f"Site '{result.site.domain}' already registered on port {result.site.port} "
                f"({result.site.state.value})."
            )
        op.success(
            "Site provisioned." if result.created else "Site already registered.",
            changed=len(op.steps),
            context=payload,
        )


@app.command()
def activate(
    ctx: typer.Context,
    domain: str = DOMAIN_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Mark a pending site active after manual provisioning."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "activate",
        args={"domain": domain},
        target=_site_target(domain),
    ) as op:
        try:
            site = runtime.workflow.activate(domain, op=op)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=site.to_dict())
        else:
            console.print(f"[green]Site '{site.domain}' is now active.[/green]")
        op.success("Site activated.", changed=1, context=site.to_dict())


@app.command()
def remove(
    ctx: typer.Context,
    domain: str = DOMAIN_ARGUMENT,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    register_only: bool = typer.Option(
        False,
        "--register-only",
        help="Only release the registry entry; leave nginx, systemd and TLS alone.",
    ),
    purge_files: bool = typer.Option(
        False,
        "--purge-files",
        help="Also delete the site's web root directory.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Release a site's port and tear down its generated configuration."""
    runtime = _get_runtime(ctx)
    args = {
        "domain": domain,
        "yes": yes,
        "register_only": register_only,
        "purge_files": purge_files,
    }
    with runtime.logger.operation("remove", args=args, target=_site_target(domain)) as op:
        if not yes:
            confirmed = typer.confirm(f"Remove site '{domain}'?", default=False)
            if not confirmed:
                console.print("[yellow]Removal cancelled.[/yellow]")
                op.warning("Removal cancelled by operator.", warnings=["user-cancelled"])
                return

        try:
            result = runtime.workflow.deprovision(
                domain,
                register_only=register_only,
                purge_files=purge_files,
                op=op,
            )
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(
                f"[green]Site '{result.domain}' removed; port {result.port} released.[/green]"
            )
            for warning in result.warnings:
                console.print(f"[yellow]warning:[/yellow] {warning}")

        changed = 1 + len(result.removed)
        if result.warnings:
            op.warning(
                "Site removed with cleanup warnings.",
                warnings=result.warnings,
                changed=changed,
                context=payload,
            )
        else:
            op.success("Site removed.", changed=changed, context=payload)


@app.command()
def status(
    ctx: typer.Context,
    domain: str = DOMAIN_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the registry record and host state of a site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"domain": domain, "json": json_output},
        target=_site_target(domain),
    ) as op:
        try:
            site = runtime.sites.lookup(domain)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        workflow = runtime.workflow
        unit_name = workflow.systemd.unit_name(site.domain)
        nginx = workflow.nginx.diagnostics(site.domain)
        service_active = workflow.systemd.is_active(site.domain) if site.live else None
        try:
            certificate = workflow.certificates.status(site.domain).to_dict()
        except CertificateError as exc:
            certificate = {"status": "error", "message": str(exc)}

        payload: dict[str, object] = {
            **site.to_dict(),
            "nginx": {
                "site_path": str(nginx["site_path"]),
                "site_exists": nginx["site_exists"],
                "enabled": nginx["enabled"],
                "upstream_port": nginx["upstream_port"],
            },
            "service": {
                "unit": unit_name,
                "unit_exists": workflow.systemd.unit_exists(site.domain),
                "active": service_active,
            },
            "tls": certificate,
        }

        if json_output:
            console.print_json(data=payload)
            op.success("Reported site status (JSON).", changed=0)
            return

        table = Table(show_header=False)
        table.add_row("Domain", site.domain)
        table.add_row("Port", str(site.port))
        table.add_row("State", _state_label(site.state))
        table.add_row("Created At", site.created_at)
        if site.activated_at:
            table.add_row("Activated At", site.activated_at)
        if site.removed_at:
            table.add_row("Removed At", site.removed_at)
        table.add_row(
            "Nginx",
            f"{nginx['site_path']} ({'enabled' if nginx['enabled'] else 'not enabled'})"
            if nginx["site_exists"]
            else "(no site file)",
        )
        table.add_row("Service", f"{unit_name} ({_service_label(service_active)})")
        table.add_row("TLS", str(certificate.get("message", "")))
        console.print(table)
        op.success("Reported site status.", changed=0)


def _service_label(active: bool | None) -> str:
    if active is None:
        return "unknown"
    return "active" if active else "inactive"


@app.command("list")
def list_sites(
    ctx: typer.Context,
    include_removed: bool = typer.Option(
        False,
        "--all",
        "-a",
        help="Include removed sites kept for audit.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered sites ordered by domain."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"all": include_removed, "json": json_output},
        target={"kind": "site", "scope": "registry"},
    ) as op:
        try:
            sites = runtime.sites.list_sites(include_removed=include_removed)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data={"sites": [site.to_dict() for site in sites]})
            op.success("Reported site list (JSON).", changed=0)
            return

        console.print(_site_table(sites))
        op.success("Reported site list.", changed=0)


@app.command()
def deploy(
    ctx: typer.Context,
    domain: str = DOMAIN_ARGUMENT,
    repo: str = typer.Argument(..., help="Git repository URL to deploy."),
    branch: str | None = typer.Option(None, "--branch", "-b", help="Branch to deploy."),
    token: str | None = typer.Option(
        None,
        "--token",
        envvar=GIT_TOKEN_ENV_VAR,
        help="Access token injected into https://github.com/ URLs.",
    ),
    force: bool = typer.Option(False, "--force", help="Delete the checkout and clone again."),
    no_restart: bool = typer.Option(
        False,
        "--no-restart",
        help="Render the unit but do not enable or restart it.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Fetch, publish and start the application behind a site."""
    runtime = _get_runtime(ctx)
    args = {
        "domain": domain,
        "repo": repo,
        "branch": branch,
        "token": "***" if token else None,
        "force": force,
        "no_restart": no_restart,
    }
    with runtime.logger.operation("deploy", args=args, target=_site_target(domain)) as op:
        try:
            result = runtime.workflow.deploy(
                domain,
                repo,
                branch=branch,
                token=token,
                force=force,
                restart=not no_restart,
                op=op,
            )
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(
                f"[green]Deployed {result.fetch.branch}@{result.fetch.commit[:12]} to "
                f"'{result.site.domain}' ({result.unit}, port {result.site.port}).[/green]"
            )
        op.success("Site deployed.", changed=len(op.steps), context=payload)


@app.command()
def reconcile(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report drift between the registry and nginx/systemd on disk."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "reconcile",
        args={"json": json_output},
        target={"kind": "site", "scope": "registry"},
    ) as op:
        try:
            report = runtime.workflow.reconcile()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        elif not report.has_drift:
            console.print(
                f"[green]No drift detected across {report.checked} active site(s).[/green]"
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Kind", style="bold")
            table.add_column("Domain")
            table.add_column("Expected")
            table.add_column("Actual")
            table.add_column("Detail")
            for entry in report.entries:
                table.add_row(
                    entry.kind,
                    entry.domain,
                    "" if entry.expected_port is None else str(entry.expected_port),
                    "" if entry.actual_port is None else str(entry.actual_port),
                    entry.detail,
                )
            console.print(table)

        if report.has_drift:
            rc = int(ExitCode.DRIFT)
            op.error(
                "Drift detected.",
                errors=[f"{entry.kind}: {entry.domain}" for entry in report.entries],
                rc=rc,
                context=payload,
            )
            raise typer.Exit(code=rc)
        op.success("No drift detected.", changed=0, context=payload)


tls_app = typer.Typer(help="Issue and inspect site certificates.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(tls_app, name="tls")
app.add_typer(config_app, name="config")


@tls_app.command("issue")
def tls_issue(
    ctx: typer.Context,
    domain: str = DOMAIN_ARGUMENT,
    mode: str | None = typer.Option(
        None,
        "--mode",
        help=f"Certificate mode ({', '.join(TLS_MODES)}); defaults to tls.mode.",
    ),
) -> None:
    """Issue (or re-issue) the certificate for a site and enable HTTPS."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tls issue",
        args={"domain": domain, "mode": mode},
        target=_site_target(domain),
    ) as op:
        if mode is not None and mode not in TLS_MODES:
            _command_error(
                op,
                f"Unsupported TLS mode '{mode}'. Allowed: {', '.join(TLS_MODES)}.",
                rc=int(ExitCode.VALIDATION),
            )
        try:
            material = runtime.workflow.issue_certificate(domain, mode=mode, op=op)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        if material is None:
            console.print("[yellow]TLS is disabled for this mode; nothing issued.[/yellow]")
            op.warning("TLS disabled; no certificate issued.", warnings=["tls-disabled"])
            return
        console.print(f"[green]Certificate installed at {material.certificate}.[/green]")
        op.success(
            "Certificate issued.",
            changed=2,
            context={"certificate": material.certificate, "key": material.key},
        )


@tls_app.command("status")
def tls_status(
    ctx: typer.Context,
    domain: str = DOMAIN_ARGUMENT,
    mode: str | None = typer.Option(None, "--mode", help="Inspect a specific mode."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report certificate location and expiry for a site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "tls status",
        args={"domain": domain, "mode": mode, "json": json_output},
        target=_site_target(domain),
    ) as op:
        try:
            normalized = normalize_domain(domain)
            report = runtime.workflow.certificates.status(normalized, mode=mode)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=False)
            table.add_row("Domain", report.domain)
            table.add_row("Mode", report.mode)
            table.add_row("Status", _tls_label(report.status))
            if report.material is not None:
                table.add_row("Certificate", str(report.material.certificate))
                table.add_row("Key", str(report.material.key))
            if report.not_valid_after is not None:
                table.add_row("Expires", report.not_valid_after.isoformat())
                table.add_row("Days Remaining", str(report.days_remaining))
            table.add_row("Message", report.message)
            console.print(table)

        if report.status in {"missing", "error"}:
            rc = int(ExitCode.PROVIDER)
            op.error(report.message, rc=rc, context=payload)
            raise typer.Exit(code=rc)
        if report.status == "warning":
            op.warning(report.message, warnings=[report.message], context=payload)
            return
        op.success(report.message, changed=0, context=payload)


def _tls_label(status: str) -> str:
    styles = {"ok": "green", "warning": "yellow", "error": "red", "missing": "red"}
    style = styles.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


__all__ = ["app"]
