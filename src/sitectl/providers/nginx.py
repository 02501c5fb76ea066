"""Nginx provider for managing per-domain reverse proxy sites."""
from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

_SERVER_NAME_RE = re.compile(r"^\s*server_name\s+([^;]+);", re.MULTILINE)
_PROXY_PASS_RE = re.compile(r"^\s*proxy_pass\s+https?://([\w.\-\[\]:]+?):(\d+)\s*;", re.MULTILINE)


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxRenderResult:
    """Outcome of rendering an nginx site configuration."""

    changed: bool
    validation: subprocess.CompletedProcess[str] | None = None
    reload: subprocess.CompletedProcess[str] | None = None
    validation_error: str | None = None


@dataclass(slots=True)
class NginxUpstream:
    """Routing facts scraped from a rendered site file."""

    path: Path
    server_names: list[str] = field(default_factory=list)
    upstream_host: str | None = None
    upstream_port: int | None = None
    enabled: bool = False


@dataclass(slots=True)
class NginxProvider:
    """Render and manage nginx site configurations for registered domains."""

    templates: TemplateEngine
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    upstream_host: str = "127.0.0.1"

    def site_name(self, domain: str) -> str:
        """Return the canonical site file name for *domain*."""
        safe = domain.replace("/", "-")
        return f"{safe}.conf"

    def site_path(self, domain: str) -> Path:
        """Return the path to the nginx site configuration file."""
        return self.sites_available / self.site_name(domain)

    def enabled_path(self, domain: str) -> Path:
        """Return the path of the symlink in sites-enabled for *domain*."""
        return self.sites_enabled / self.site_name(domain)

    def build_context(
        self,
        domain: str,
        port: int,
        *,
        certificate: Path | None = None,
        certificate_key: Path | None = None,
    ) -> dict[str, object]:
        """Return the template context routing *domain* to *port*."""
        tls_enabled = certificate is not None and certificate_key is not None
        return {
            "server_name": domain,
            "upstream_host": self.upstream_host,
            "upstream_port": port,
            "tls": {
                "enabled": tls_enabled,
                "certificate": str(certificate) if certificate else "",
                "certificate_key": str(certificate_key) if certificate_key else "",
            },
        }

    def render_site(
        self,
        domain: str,
        context: Mapping[str, object],
        *,
        reload_on_change: bool = True,
    ) -> NginxRenderResult:
        """Render the nginx site configuration for *domain*.

        When the on-disk configuration changes the new file is validated with
        ``nginx -t`` before nginx is reloaded. Validation failures restore the
        previous configuration (or delete a brand new file) so nginx keeps a
        working state.
        """
        template_name = "nginx/site.conf.j2"
        destination = self.site_path(domain)
        destination.parent.mkdir(parents=True, exist_ok=True)

        previous: tuple[str, int] | None = None
        if destination.exists():
            previous = (
                destination.read_text(encoding="utf-8"),
                destination.stat().st_mode,
            )

        changed = self.templates.render_to_path(
            template_name,
            destination,
            context,
            mode=0o644,
        )
        if not changed:
            return NginxRenderResult(changed=False)

        try:
            validation_result = self.test_config()
        except NginxError as exc:
            LOGGER.warning("nginx rejected %s, restoring previous file: %s", destination, exc)
            if previous is None:
                destination.unlink(missing_ok=True)
            else:
                content, mode = previous
                destination.write_text(content, encoding="utf-8")
                destination.chmod(mode)
            return NginxRenderResult(changed=False, validation_error=str(exc))

        reload_result: subprocess.CompletedProcess[str] | None = None
        if reload_on_change:
            reload_result = self.reload()
        return NginxRenderResult(
            changed=True,
            validation=validation_result,
            reload=reload_result,
        )

    def enable(self, domain: str) -> bool:
        """Enable the site by creating a symlink in sites-enabled.

        Returns True when a link was created or replaced.
        """
        source = self.site_path(domain)
        target = self.enabled_path(domain)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            try:
                if target.resolve() == source.resolve():
                    return False
            except FileNotFoundError:
                # Broken symlink; replace it with a fresh one.
                pass
            target.unlink()
        target.symlink_to(source)
        return True

    def disable(self, domain: str) -> None:
        """Disable the site by removing the symlink."""
        self.enabled_path(domain).unlink(missing_ok=True)

    def remove(self, domain: str) -> bool:
        """Remove both the configuration and symlink for *domain*.

        Returns True when a site file existed.
        """
        self.disable(domain)
        path = self.site_path(domain)
        existed = path.exists()
        path.unlink(missing_ok=True)
        return existed

    def site_exists(self, domain: str) -> bool:
        """Return True when the rendered site configuration exists."""
        return self.site_path(domain).exists()

    def is_enabled(self, domain: str) -> bool:
        """Return True when the site is enabled via sites-enabled symlink."""
        target = self.enabled_path(domain)
        if not target.is_symlink():
            return False
        try:
            return target.resolve() == self.site_path(domain).resolve()
        except FileNotFoundError:
            return False

    def diagnostics(self, domain: str) -> dict[str, object]:
        """Return diagnostic metadata for *domain*."""
        site_path = self.site_path(domain)
        enabled_path = self.enabled_path(domain)
        upstream = self.read_upstream(site_path) if site_path.exists() else None
        return {
            "site_path": site_path,
            "site_exists": site_path.exists(),
            "enabled_path": enabled_path,
            "enabled": self.is_enabled(domain),
            "upstream_port": upstream.upstream_port if upstream else None,
        }

    def read_upstream(self, path: Path) -> NginxUpstream:
        """Scrape ``server_name`` and ``proxy_pass`` from the site file at *path*."""
        text = path.read_text(encoding="utf-8", errors="replace")
        names: list[str] = []
        for match in _SERVER_NAME_RE.finditer(text):
            for name in match.group(1).split():
                if name not in names:
                    names.append(name)
        upstream = NginxUpstream(
            path=path,
            server_names=names,
            enabled=(self.sites_enabled / path.name).is_symlink(),
        )
        proxy = _PROXY_PASS_RE.search(text)
        if proxy is not None:
            upstream.upstream_host = proxy.group(1)
            upstream.upstream_port = int(proxy.group(2))
        return upstream

    def list_upstreams(self) -> list[NginxUpstream]:
        """Return routing facts for every ``*.conf`` file in sites-available."""
        if not self.sites_available.is_dir():
            return []
        upstreams: list[NginxUpstream] = []
        for path in sorted(self.sites_available.glob("*.conf")):
            if not path.is_file():
                continue
            try:
                upstreams.append(self.read_upstream(path))
            except OSError as exc:
                LOGGER.warning("Skipping unreadable nginx site %s: %s", path, exc)
        return upstreams

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        try:
            return self._run_nginx(["-t"])
        except FileNotFoundError:
            return subprocess.CompletedProcess([self.nginx_bin, "-t"], returncode=0)

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx to apply configuration changes."""
        try:
            return self._run_nginx(["-s", "reload"])
        except FileNotFoundError:
            return subprocess.CompletedProcess([self.nginx_bin, "-s", "reload"], returncode=0)

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.nginx_bin, *args]
        result = subprocess.run(  # noqa: S603, S607
            command,
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{self.nginx_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["NginxError", "NginxProvider", "NginxRenderResult", "NginxUpstream"]
