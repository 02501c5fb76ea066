"""Certificate issuance and inspection for sitectl sites.

Two issuing modes are supported. ``lets-encrypt`` asks certbot for a
certificate through its nginx authenticator (``certbot certonly --nginx``) and
leaves the site file untouched, so sitectl stays the only writer of nginx
configuration. ``self-signed`` generates an RSA key and certificate locally
with :mod:`cryptography`. Mode ``none`` disables TLS altogether.
"""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .config import TLSConfig

LOGGER = logging.getLogger(__name__)

TLS_MODES = ("lets-encrypt", "self-signed", "none")
ISSUING_MODES = ("lets-encrypt", "self-signed")


class CertificateError(RuntimeError):
    """Raised when certificates cannot be issued, removed or read."""


@dataclass(frozen=True)
class TLSMaterial:
    """Certificate and private key paths for a site."""

    certificate: Path
    key: Path


@dataclass(frozen=True)
class CertificateStatus:
    """Inspection result for a site's certificate."""

    domain: str
    mode: str
    material: TLSMaterial | None
    status: str
    message: str
    not_valid_before: datetime | None = None
    not_valid_after: datetime | None = None
    days_remaining: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the status."""
        return {
            "domain": self.domain,
            "mode": self.mode,
            "status": self.status,
            "message": self.message,
            "certificate": str(self.material.certificate) if self.material else None,
            "key": str(self.material.key) if self.material else None,
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "days_remaining": self.days_remaining,
        }


class CertificateManager:
    """Issue, locate, inspect and delete site certificates."""

    def __init__(self, config: TLSConfig) -> None:
        """Bind the manager to the ``tls`` configuration section."""
        self._config = config

    @property
    def mode(self) -> str:
        """Return the configured default mode."""
        return self._config.mode

    def material(self, domain: str, *, mode: str | None = None) -> TLSMaterial | None:
        """Return the expected certificate paths for *domain* (``None`` for mode ``none``)."""
        resolved = self._resolve_mode(mode)
        if resolved == "lets-encrypt":
            live = self._config.live_dir / domain
            return TLSMaterial(certificate=live / "fullchain.pem", key=live / "privkey.pem")
        if resolved == "self-signed":
            directory = self._config.self_signed_dir / domain
            return TLSMaterial(
                certificate=directory / f"{domain}.crt",
                key=directory / f"{domain}.key",
            )
        return None

    def issue(
        self,
        domain: str,
        *,
        email: str,
        mode: str | None = None,
        now: datetime | None = None,
    ) -> TLSMaterial | None:
        """Obtain a certificate for *domain* and return its material."""
        resolved = self._resolve_mode(mode)
        material = self.material(domain, mode=resolved)
        if resolved == "lets-encrypt":
            self._certbot(
                [
                    "certonly",
                    "--nginx",
                    "-d",
                    domain,
                    "--non-interactive",
                    "--agree-tos",
                    "-m",
                    email,
                    "--keep-until-expiring",
                ]
            )
        elif resolved == "self-signed" and material is not None:
            generate_self_signed(
                domain,
                material,
                days=self._config.self_signed_days,
                now=now,
            )
        return material

    def delete(self, domain: str, *, mode: str | None = None) -> bool:
        """Remove the certificate for *domain*; return True when something was removed."""
        resolved = self._resolve_mode(mode)
        material = self.material(domain, mode=resolved)
        if resolved == "lets-encrypt":
            if material is None or not material.certificate.parent.exists():
                return False
            self._certbot(["delete", "--cert-name", domain, "--non-interactive"])
            return True
        if resolved == "self-signed" and material is not None:
            removed = False
            for path in (material.certificate, material.key):
                if path.exists():
                    path.unlink()
                    removed = True
            try:
                material.certificate.parent.rmdir()
            except OSError:
                pass
            return removed
        return False

    def delete_all(self, domain: str) -> bool:
        """Remove the material of every issuing mode present for *domain*.

        Every mode is attempted even when an earlier one fails; the failures are
        then raised together as one :class:`CertificateError`.
        """
        removed = False
        failures: list[str] = []
        for mode in ISSUING_MODES:
            try:
                removed = self.delete(domain, mode=mode) or removed
            except (CertificateError, OSError) as exc:
                failures.append(f"{mode}: {exc}")
        if failures:
            raise CertificateError("; ".join(failures))
        return removed

    def status(
        self,
        domain: str,
        *,
        mode: str | None = None,
        now: datetime | None = None,
    ) -> CertificateStatus:
        """Inspect the certificate for *domain* and classify its expiry."""
        resolved = self._resolve_mode(mode)
        material = self.material(domain, mode=resolved)
        if material is None:
            return CertificateStatus(
                domain=domain,
                mode=resolved,
                material=None,
                status="disabled",
                message="TLS is disabled.",
            )
        if not material.certificate.exists():
            return CertificateStatus(
                domain=domain,
                mode=resolved,
                material=material,
                status="missing",
                message=f"Certificate not found at {material.certificate}.",
            )

        certificate = load_certificate(material.certificate)
        not_before = certificate.not_valid_before_utc
        not_after = certificate.not_valid_after_utc
        current = now or datetime.now(UTC)
        days_remaining = (not_after - current).days
        if current >= not_after:
            status, message = "error", f"Certificate expired on {not_after:%Y-%m-%d}."
        elif current < not_before:
            status, message = "error", f"Certificate not valid before {not_before:%Y-%m-%d}."
        elif days_remaining < self._config.warn_expiry_days:
            status, message = "warning", f"Certificate expires in {days_remaining} days."
        else:
            status, message = "ok", f"Certificate valid until {not_after:%Y-%m-%d}."
        return CertificateStatus(
            domain=domain,
            mode=resolved,
            material=material,
            status=status,
            message=message,
            not_valid_before=not_before,
            not_valid_after=not_after,
            days_remaining=days_remaining,
        )

    # ------------------------------------------------------------------
    def _resolve_mode(self, mode: str | None) -> str:
        resolved = (mode or self._config.mode).strip().lower()
        if resolved not in TLS_MODES:
            allowed = ", ".join(TLS_MODES)
            raise CertificateError(f"Unsupported TLS mode '{resolved}'. Allowed: {allowed}.")
        return resolved

    def _certbot(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self._config.certbot_bin, *args]
        LOGGER.debug("Running %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CertificateError(f"{self._config.certbot_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise CertificateError(
                f"{self._config.certbot_bin} {args[0]} failed (exit {result.returncode}): "
                f"{message}"
            )
        return result


def generate_self_signed(
    domain: str,
    material: TLSMaterial,
    *,
    days: int = 365,
    key_size: int = 2048,
    now: datetime | None = None,
) -> None:
    """Write a self-signed certificate and key for *domain* to *material*."""
    issued = now or datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(issued - timedelta(minutes=1))
        .not_valid_after(issued + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )

    try:
        material.certificate.parent.mkdir(parents=True, exist_ok=True)
        material.key.parent.mkdir(parents=True, exist_ok=True)
        _write_secure(
            material.key,
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            ),
            mode=0o600,
        )
        _write_secure(
            material.certificate,
            certificate.public_bytes(serialization.Encoding.PEM),
            mode=0o644,
        )
    except OSError as exc:
        raise CertificateError(f"Failed to write certificate for {domain}: {exc}") from exc


def load_certificate(path: Path) -> x509.Certificate:
    """Load a PEM certificate, raising :class:`CertificateError` on failure."""
    try:
        return x509.load_pem_x509_certificate(path.read_bytes())
    except (OSError, ValueError) as exc:
        raise CertificateError(f"Failed to read certificate {path}: {exc}") from exc


def _write_secure(path: Path, data: bytes, *, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    os.chmod(path, mode)


__all__ = [
    "CertificateError",
    "CertificateManager",
    "CertificateStatus",
    "TLSMaterial",
    "ISSUING_MODES",
    "TLS_MODES",
    "generate_self_signed",
    "load_certificate",
]
