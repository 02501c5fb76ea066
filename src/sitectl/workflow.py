"""Provisioning workflows sequenced around site registry transitions.

The registry only records domains and ports. Everything that touches the host
(nginx, certificates, systemd units, git checkouts, the publish step) happens
here, after the registry call returns and outside the registry lock. A
per-site lock serialises workflows for the same domain.
"""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig
from .exit_codes import ExitCode
from .locking import LockError, LockManager
from .logging import OperationScope
from .providers.nginx import NginxError, NginxProvider
from .providers.source import FetchResult, PublishResult, SourceError, SourceProvider
from .providers.systemd import SystemdError, SystemdProvider
from .sites import (
    Site,
    SiteNotFoundError,
    SiteRegistry,
    SiteRegistryError,
    SiteState,
    normalize_domain,
)
from .templates import TemplateEngine, TemplateError
from .tls import CertificateError, CertificateManager, TLSMaterial

LOGGER = logging.getLogger(__name__)

ENV_FILE = ".env"
SERVICE_ENVIRONMENT = (
    "ASPNETCORE_ENVIRONMENT=Production",
    "DOTNET_PRINT_TELEMETRY_MESSAGE=false",
)

_COLLABORATOR_ERRORS = (
    NginxError,
    SystemdError,
    CertificateError,
    SourceError,
    TemplateError,
    OSError,
)


class WorkflowError(RuntimeError):
    """Raised when a collaborator step fails during a workflow."""

    exit_code = ExitCode.PROVIDER

    def __init__(self, step: str, message: str, *, site: Site | None = None) -> None:
        """Remember which step failed and the site it was working on."""
        super().__init__(f"{step}: {message}")
        self.step = step
        self.site = site


@dataclass(slots=True)
class ProvisionResult:
    """Outcome of :meth:`SiteWorkflow.provision`."""

    site: Site
    created: bool
    tls: TLSMaterial | None = None
    nginx_changed: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            **self.site.to_dict(),
            "created": self.created,
            "nginx_changed": self.nginx_changed,
            "tls": (
                {"certificate": str(self.tls.certificate), "key": str(self.tls.key)}
                if self.tls
                else None
            ),
        }


@dataclass(slots=True)
class DeprovisionResult:
    """Outcome of :meth:`SiteWorkflow.deprovision`."""

    domain: str
    port: int
    removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "port": self.port,
            "removed": list(self.removed),
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class DeployResult:
    """Outcome of :meth:`SiteWorkflow.deploy`."""

    site: Site
    fetch: FetchResult
    publish: PublishResult
    unit: str
    unit_changed: bool
    restarted: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.site.domain,
            "port": self.site.port,
            "branch": self.fetch.branch,
            "commit": self.fetch.commit,
            "cloned": self.fetch.cloned,
            "project": str(self.publish.project),
            "entrypoint": str(self.publish.entrypoint),
            "unit": self.unit,
            "unit_changed": self.unit_changed,
            "restarted": self.restarted,
        }


@dataclass(frozen=True, slots=True)
class DriftEntry:
    """A single difference between the registry and the host."""

    kind: str
    domain: str
    detail: str
    expected_port: int | None = None
    actual_port: int | None = None
    path: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind,
            "domain": self.domain,
            "detail": self.detail,
            "expected_port": self.expected_port,
            "actual_port": self.actual_port,
            "path": str(self.path) if self.path else None,
        }


@dataclass(slots=True)
class DriftReport:
    """Result of :meth:`SiteWorkflow.reconcile`."""

    checked: int = 0
    entries: list[DriftEntry] = field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        """Return True when any difference was found."""
        return bool(self.entries)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "checked": self.checked,
            "drift": self.has_drift,
            "entries": [entry.to_dict() for entry in self.entries],
        }


class SiteWorkflow:
    """Drive collaborators around :class:`SiteRegistry` transitions."""

    def __init__(
        self,
        config: AppConfig,
        *,
        registry: SiteRegistry,
        locks: LockManager,
        templates: TemplateEngine,
        nginx: NginxProvider,
        systemd: SystemdProvider,
        certificates: CertificateManager,
        source: SourceProvider,
    ) -> None:
        """Bind the workflow to its registry and collaborators."""
        self.config = config
        self.registry = registry
        self.locks = locks
        self.templates = templates
        self.nginx = nginx
        self.systemd = systemd
        self.certificates = certificates
        self.source = source

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        registry: SiteRegistry,
        locks: LockManager,
    ) -> SiteWorkflow:
        """Build a workflow with providers configured from *config*."""
        templates = TemplateEngine.with_overrides(config.templates_dir)
        return cls(
            config,
            registry=registry,
            locks=locks,
            templates=templates,
            nginx=NginxProvider(
                templates=templates,
                sites_available=config.nginx.sites_available,
                sites_enabled=config.nginx.sites_enabled,
                nginx_bin=config.nginx.nginx_bin,
                upstream_host=config.nginx.upstream_host,
            ),
            systemd=SystemdProvider(
                templates=templates,
                unit_dir=config.systemd.unit_dir,
                unit_prefix=config.systemd.unit_prefix,
                systemctl_bin=config.systemd.systemctl_bin,
            ),
            certificates=CertificateManager(config.tls),
            source=SourceProvider(
                git_bin=config.git.git_bin,
                runtime_bin=config.runtime_bin,
                default_branch=config.git.default_branch,
            ),
        )

    # ------------------------------------------------------------------
    def provision(
        self,
        domain: str,
        *,
        requested_port: int | None = None,
        exist_ok: bool = False,
        register_only: bool = False,
        tls: bool = True,
        tls_mode: str | None = None,
        rollback: bool = False,
        op: OperationScope | None = None,
    ) -> ProvisionResult:
        """Register *domain* and bring up its proxy, environment and certificate.

        A failing collaborator leaves the site ``pending`` so the operator can
        retry with ``exist_ok`` or remove it. With ``rollback`` the site is
        released and generated files are deleted instead.
        """
        normalized = normalize_domain(domain)
        with self.locks.site_lock(normalized) as handle:
            _lock_wait(op, handle.wait_ms)
            before = self._live_site(normalized) if exist_ok else None
            site = self.registry.register(
                normalized,
                requested_port=requested_port,
                exist_ok=exist_ok,
            )
            _lock_wait(op, self.registry.last_lock_wait_ms)
            created = before is None
            _step(
                op,
                "registry.register",
                detail=f"port {site.port}" if created else f"existing {site.state.value} site",
            )

            if register_only or site.state is SiteState.ACTIVE:
                return ProvisionResult(site=site, created=created)

            created_paths: list[Path] = []
            issued: TLSMaterial | None = None
            try:
                env_path = self.write_env(site)
                created_paths.append(env_path)
                _step(op, "site.env", detail=str(env_path))

                nginx_changed = self._publish_route(site, tls=None)
                _step(op, "nginx.render", detail=str(self.nginx.site_path(normalized)))

                mode = (tls_mode or self.certificates.mode) if tls else "none"
                if mode != "none":
                    issued = self.certificates.issue(
                        normalized,
                        email=self.config.contact_email(normalized),
                        mode=mode,
                    )
                    _step(op, "tls.issue", detail=mode)
                    if issued is not None:
                        nginx_changed = self._publish_route(site, tls=issued) or nginx_changed
                        _step(op, "nginx.tls", detail=str(issued.certificate))

                site = self.registry.activate(normalized)
                _lock_wait(op, self.registry.last_lock_wait_ms)
                _step(op, "registry.activate")
            except _COLLABORATOR_ERRORS as exc:
                _step(op, "provision", status="failed", detail=str(exc))
                if rollback:
                    self._rollback(site, created_paths, issued, tls_mode=tls_mode, op=op)
                raise WorkflowError("provision", str(exc), site=site) from exc
            return ProvisionResult(
                site=site,
                created=created,
                tls=issued,
                nginx_changed=nginx_changed,
            )

    def activate(self, domain: str, *, op: OperationScope | None = None) -> Site:
        """Mark a pending site active without touching collaborators."""
        normalized = normalize_domain(domain)
        with self.locks.site_lock(normalized) as handle:
            _lock_wait(op, handle.wait_ms)
            site = self.registry.activate(normalized)
            _lock_wait(op, self.registry.last_lock_wait_ms)
            _step(op, "registry.activate")
            return site

    def deprovision(
        self,
        domain: str,
        *,
        register_only: bool = False,
        purge_files: bool = False,
        op: OperationScope | None = None,
    ) -> DeprovisionResult:
        """Release *domain* and tear down everything generated for it.

        The registry release happens first. Cleanup failures afterwards are
        collected as warnings so one broken collaborator does not stop the rest.
        """
        normalized = normalize_domain(domain)
        with self.locks.site_lock(normalized) as handle:
            _lock_wait(op, handle.wait_ms)
            port = self.registry.release(normalized)
            _lock_wait(op, self.registry.last_lock_wait_ms)
            _step(op, "registry.release", detail=f"port {port}")
            result = DeprovisionResult(domain=normalized, port=port)
            if register_only:
                return result

            def attempt(name: str, action: Callable[[], bool]) -> None:
                try:
                    if action():
                        result.removed.append(name)
                    _step(op, name)
                except _COLLABORATOR_ERRORS as exc:
                    LOGGER.warning("Cleanup step %s failed for %s: %s", name, normalized, exc)
                    result.warnings.append(f"{name}: {exc}")
                    _step(op, name, status="failed", detail=str(exc))

            attempt("systemd.remove", lambda: self.systemd.remove(normalized))
            attempt("nginx.remove", lambda: self._remove_route(normalized))
            attempt("tls.delete", lambda: self.certificates.delete_all(normalized))
            if purge_files:
                attempt("site.purge", lambda: self._purge_site_dir(normalized))
            return result

    def deploy(
        self,
        domain: str,
        repo: str,
        *,
        branch: str | None = None,
        token: str | None = None,
        force: bool = False,
        restart: bool = True,
        op: OperationScope | None = None,
    ) -> DeployResult:
        """Fetch, publish and (re)start the application behind a live site."""
        normalized = normalize_domain(domain)
        with self.locks.site_lock(normalized) as handle:
            _lock_wait(op, handle.wait_ms)
            site = self._live_site(normalized)
            if site is None:
                raise SiteNotFoundError(f"Site '{normalized}' is not registered.")

            site_dir = self.config.site_dir(normalized)
            try:
                fetched = self.source.fetch(
                    repo,
                    site_dir / "src",
                    branch=branch,
                    token=token,
                    force=force,
                )
                _step(op, "source.fetch", detail=f"{fetched.branch}@{fetched.commit[:12]}")

                published = self.source.publish(site_dir / "src", site_dir / "app")
                _step(op, "source.publish", detail=str(published.entrypoint))

                context = self.systemd.build_context(
                    normalized,
                    exec_start=(
                        f"{self.config.runtime_bin} {published.entrypoint} "
                        f"--urls http://localhost:{site.port}"
                    ),
                    working_directory=published.output_dir,
                    user=self.config.service_user,
                    group=self.config.service_group,
                    environment=SERVICE_ENVIRONMENT,
                )
                unit_changed = self.systemd.render_unit(normalized, context)
                _step(op, "systemd.render", detail=self.systemd.unit_name(normalized))

                if restart:
                    self.systemd.enable(normalized)
                    self.systemd.restart(normalized)
                    _step(op, "systemd.restart")
            except _COLLABORATOR_ERRORS as exc:
                _step(op, "deploy", status="failed", detail=str(exc))
                raise WorkflowError("deploy", str(exc), site=site) from exc

            return DeployResult(
                site=site,
                fetch=fetched,
                publish=published,
                unit=self.systemd.unit_name(normalized),
                unit_changed=unit_changed,
                restarted=restart,
            )

    def issue_certificate(
        self,
        domain: str,
        *,
        mode: str | None = None,
        op: OperationScope | None = None,
    ) -> TLSMaterial | None:
        """(Re)issue the certificate for a live site and switch nginx to HTTPS."""
        normalized = normalize_domain(domain)
        with self.locks.site_lock(normalized) as handle:
            _lock_wait(op, handle.wait_ms)
            site = self._live_site(normalized)
            if site is None:
                raise SiteNotFoundError(f"Site '{normalized}' is not registered.")
            try:
                material = self.certificates.issue(
                    normalized,
                    email=self.config.contact_email(normalized),
                    mode=mode,
                )
                _step(op, "tls.issue", detail=mode or self.certificates.mode)
                self._publish_route(site, tls=material)
                _step(op, "nginx.render")
            except _COLLABORATOR_ERRORS as exc:
                _step(op, "tls.issue", status="failed", detail=str(exc))
                raise WorkflowError("tls", str(exc), site=site) from exc
            return material

    def reconcile(self) -> DriftReport:
        """Compare active sites against the nginx and systemd state on disk."""
        active = self.registry.list_active()
        live_domains = {site.domain for site in self.registry.list_sites()}
        report = DriftReport(checked=len(active))

        upstreams = {upstream.path.name: upstream for upstream in self.nginx.list_upstreams()}
        for site in active:
            upstream = upstreams.get(self.nginx.site_name(site.domain))
            if upstream is None:
                report.entries.append(
                    DriftEntry(
                        kind="missing-config",
                        domain=site.domain,
                        detail="No nginx site file for active site.",
                        expected_port=site.port,
                        path=self.nginx.site_path(site.domain),
                    )
                )
                continue
            if upstream.upstream_port != site.port:
                report.entries.append(
                    DriftEntry(
                        kind="port-mismatch",
                        domain=site.domain,
                        detail="nginx proxies to a different port than the registry holds.",
                        expected_port=site.port,
                        actual_port=upstream.upstream_port,
                        path=upstream.path,
                    )
                )
            if not upstream.enabled:
                report.entries.append(
                    DriftEntry(
                        kind="disabled",
                        domain=site.domain,
                        detail="nginx site file is not linked into sites-enabled.",
                        expected_port=site.port,
                        path=upstream.path,
                    )
                )

        for name, upstream in upstreams.items():
            domain = name.removesuffix(".conf")
            if domain in live_domains:
                continue
            report.entries.append(
                DriftEntry(
                    kind="orphan-config",
                    domain=domain,
                    detail="nginx site file has no live registry entry.",
                    actual_port=upstream.upstream_port,
                    path=upstream.path,
                )
            )

        for domain in self.systemd.list_units():
            if domain in live_domains:
                continue
            report.entries.append(
                DriftEntry(
                    kind="orphan-unit",
                    domain=domain,
                    detail="systemd unit has no live registry entry.",
                    path=self.systemd.unit_path(domain),
                )
            )
        return report

    def write_env(self, site: Site) -> Path:
        """Render the ``.env`` file for *site* into its web root directory."""
        destination = self.config.site_dir(site.domain) / ENV_FILE
        self.templates.render_to_path(
            "site/env.j2",
            destination,
            {"port": site.port, "environment_name": "Production"},
            mode=0o640,
        )
        return destination

    # ------------------------------------------------------------------
    def _live_site(self, domain: str) -> Site | None:
        try:
            site = self.registry.lookup(domain)
        except SiteNotFoundError:
            return None
        return site if site.live else None

    def _publish_route(self, site: Site, *, tls: TLSMaterial | None) -> bool:
        context = self.nginx.build_context(
            site.domain,
            site.port,
            certificate=tls.certificate if tls else None,
            certificate_key=tls.key if tls else None,
        )
        rendered = self.nginx.render_site(site.domain, context, reload_on_change=False)
        if rendered.validation_error:
            raise NginxError(rendered.validation_error)
        linked = self.nginx.enable(site.domain)
        if not (rendered.changed or linked):
            return False
        try:
            self.nginx.test_config()
        except NginxError:
            if linked:
                self.nginx.disable(site.domain)
            raise
        self.nginx.reload()
        return True

    def _remove_route(self, domain: str) -> bool:
        removed = self.nginx.remove(domain)
        if removed:
            self.nginx.reload()
        return removed

    def _purge_site_dir(self, domain: str) -> bool:
        site_dir = self.config.site_dir(domain)
        if not site_dir.exists():
            return False
        shutil.rmtree(site_dir)
        return True

    def _rollback(
        self,
        site: Site,
        created_paths: list[Path],
        issued: TLSMaterial | None,
        *,
        tls_mode: str | None,
        op: OperationScope | None,
    ) -> None:
        try:
            self.registry.release(site.domain)
            _step(op, "rollback.release", detail=f"port {site.port}")
        except SiteNotFoundError:
            pass
        except (SiteRegistryError, LockError) as exc:
            LOGGER.warning("Rollback could not release %s: %s", site.domain, exc)
            _step(op, "rollback.release", status="failed", detail=str(exc))
        cleanups: list[tuple[str, Callable[[], object]]] = [
            ("rollback.nginx", lambda: self._remove_route(site.domain)),
        ]
        if issued is not None:
            cleanups.append(
                ("rollback.tls", lambda: self.certificates.delete(site.domain, mode=tls_mode))
            )
        for path in created_paths:
            cleanups.append(
                (f"rollback.file:{path.name}", lambda path=path: path.unlink(missing_ok=True))
            )
        for name, action in cleanups:
            try:
                action()
                _step(op, name)
            except _COLLABORATOR_ERRORS as exc:
                LOGGER.warning("Rollback step %s failed for %s: %s", name, site.domain, exc)
                _step(op, name, status="failed", detail=str(exc))


def _step(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: str | None = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


def _lock_wait(op: OperationScope | None, wait_ms: int) -> None:
    if op is not None:
        op.set_lock_wait_ms(wait_ms)


__all__ = [
    "DeployResult",
    "DeprovisionResult",
    "DriftEntry",
    "DriftReport",
    "ProvisionResult",
    "SiteWorkflow",
    "WorkflowError",
]
