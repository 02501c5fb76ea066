"""Systemd provider for the Kestrel service unit behind each site."""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and drive ``<unit_prefix><domain>.service`` units."""

    templates: TemplateEngine
    unit_dir: Path = Path("/etc/systemd/system")
    unit_prefix: str = "kestrel-"
    systemctl_bin: str = "systemctl"

    def unit_name(self, domain: str) -> str:
        """Return the systemd unit name for *domain*."""
        safe = domain.replace("/", "-")
        return f"{self.unit_prefix}{safe}.service"

    def unit_path(self, domain: str) -> Path:
        """Return the full path for the unit file of *domain*."""
        return self.unit_dir / self.unit_name(domain)

    def build_context(
        self,
        domain: str,
        *,
        exec_start: str,
        working_directory: Path,
        user: str,
        group: str,
        environment: Sequence[str] = (),
    ) -> dict[str, object]:
        """Return the template context for the unit of *domain*."""
        return {
            "description": f"ASP.NET Core site {domain}",
            "working_directory": str(working_directory),
            "exec_start": exec_start,
            "syslog_identifier": f"dotnet-{domain}",
            "service_user": user,
            "service_group": group,
            "environment": list(environment),
        }

    def render_unit(self, domain: str, context: Mapping[str, object]) -> bool:
        """Render the unit file for *domain*; reload the daemon when it changed."""
        path = self.unit_path(domain)
        changed = self.templates.render_to_path("systemd/service.j2", path, context, mode=0o644)
        if changed:
            self.daemon_reload()
        return changed

    def unit_exists(self, domain: str) -> bool:
        """Return True when a unit file is present for *domain*."""
        return self.unit_path(domain).exists()

    def list_units(self) -> list[str]:
        """Return the domains that have a managed unit file on disk."""
        if not self.unit_dir.is_dir():
            return []
        domains: list[str] = []
        for path in sorted(self.unit_dir.glob(f"{self.unit_prefix}*.service")):
            domains.append(path.name[len(self.unit_prefix) : -len(".service")])
        return domains

    def enable(self, domain: str) -> subprocess.CompletedProcess[str]:
        """Enable the unit so it starts at boot."""
        return self._systemctl("enable", self.unit_name(domain))

    def restart(self, domain: str) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", self.unit_name(domain))

    def is_active(self, domain: str) -> bool | None:
        """Return True/False for the unit state, ``None`` when systemd is unavailable."""
        if not self.available():
            return None
        result = self._systemctl("is-active", self.unit_name(domain), check=False)
        return result.returncode == 0

    def remove(self, domain: str) -> bool:
        """Stop, disable and delete the unit for *domain*.

        Returns True when a unit file existed.
        """
        path = self.unit_path(domain)
        if not path.exists():
            return False
        # A unit that is already stopped or disabled is fine here.
        self._systemctl("disable", "--now", self.unit_name(domain), check=False)
        path.unlink(missing_ok=True)
        self.daemon_reload()
        return True

    def daemon_reload(self) -> None:
        """Run ``systemctl daemon-reload``."""
        self._systemctl("daemon-reload")

    def available(self) -> bool:
        """Return True when the systemctl binary can be found."""
        return shutil.which(self.systemctl_bin) is not None

    # ------------------------------------------------------------------
    def _systemctl(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [self.systemctl_bin, *args]
        if not self.available():
            # Non-systemd hosts (containers, tests) behave as a dry run.
            LOGGER.debug("systemctl not found; skipping %s", " ".join(command))
            return subprocess.CompletedProcess(command, returncode=0, stdout="", stderr="")
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.systemctl_bin} {' '.join(args)}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
