"""Layered settings for sitectl.

Later sources win: packaged defaults, then ``/etc/sitectl/config.yml`` (or
``--config-file`` / ``SITECTL_CONFIG_FILE``), then ``SITECTL_*`` environment
variables, then values passed by CLI flags. Nested keys in the environment
are joined with ``__``::

    export SITECTL_PORTS__FLOOR=6000
    export SITECTL_TLS__MODE=self-signed

Environment values go through ``yaml.safe_load`` so ``45`` is a number and
``false`` a boolean. ``SITECTL_GIT_TOKEN`` belongs to ``deploy`` and is
skipped here.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml


ENV_PREFIX = "SITECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
GIT_TOKEN_ENV_VAR = f"{ENV_PREFIX}GIT_TOKEN"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR, GIT_TOKEN_ENV_VAR}

MAX_PORT = 65535


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation bounds."""

    floor: int = 5000
    ceiling: int = MAX_PORT
    strategy: str = "sequential"
    reserved: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "floor": self.floor,
            "ceiling": self.ceiling,
            "strategy": self.strategy,
            "reserved": list(self.reserved),
        }


@dataclass(frozen=True)
class NginxConfig:
    """Reverse proxy integration values."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    upstream_host: str = "127.0.0.1"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "nginx_bin": self.nginx_bin,
            "upstream_host": self.upstream_host,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    unit_prefix: str = "kestrel-"
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "unit_prefix": self.unit_prefix,
            "systemctl_bin": self.systemctl_bin,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate issuance settings."""

    mode: str = "lets-encrypt"
    certbot_bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    self_signed_dir: Path = Path("/etc/ssl")
    self_signed_days: int = 365
    warn_expiry_days: int = 30

    @property
    def enabled(self) -> bool:
        """Return True unless TLS has been switched off."""
        return self.mode != "none"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mode": self.mode,
            "certbot_bin": self.certbot_bin,
            "lets_encrypt": {"live_dir": str(self.live_dir)},
            "self_signed": {
                "dir": str(self.self_signed_dir),
                "days": self.self_signed_days,
            },
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class GitConfig:
    """Source control client settings."""

    git_bin: str = "git"
    default_branch: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"git_bin": self.git_bin, "default_branch": self.default_branch}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sitectl."""

    config_file: Path
    web_root: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    service_user: str
    service_group: str
    runtime_bin: str
    admin_email: str | None
    ports: PortsConfig
    nginx: NginxConfig
    systemd: SystemdConfig
    tls: TLSConfig
    git: GitConfig

    def site_dir(self, domain: str) -> Path:
        """Return the web root directory for *domain*."""
        return self.web_root / domain

    def contact_email(self, domain: str) -> str:
        """Return the ACME contact address used for *domain*."""
        return self.admin_email or f"admin@{domain}"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "web_root": str(self.web_root),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "service_user": self.service_user,
            "service_group": self.service_group,
            "runtime_bin": self.runtime_bin,
            "admin_email": self.admin_email,
            "ports": self.ports.to_dict(),
            "nginx": self.nginx.to_dict(),
            "systemd": self.systemd.to_dict(),
            "tls": self.tls.to_dict(),
            "git": self.git.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sitectl/config.yml",
    "web_root": "/var/www",
    "state_dir": "/var/lib/sitectl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/sitectl",
    "runtime_dir": "/run/sitectl",
    "templates_dir": "/etc/sitectl/templates",
    "lock_timeout": 30.0,
    "service_user": "www-data",
    "service_group": "www-data",
    "runtime_bin": "/usr/bin/dotnet",
    "admin_email": None,
    "ports": {
        "floor": 5000,
        "ceiling": MAX_PORT,
        "strategy": "sequential",
        "reserved": [],
    },
    "nginx": {
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "nginx_bin": "nginx",
        "upstream_host": "127.0.0.1",
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "unit_prefix": "kestrel-",
        "systemctl_bin": "systemctl",
    },
    "tls": {
        "mode": "lets-encrypt",
        "certbot_bin": "certbot",
        "lets_encrypt": {"live_dir": "/etc/letsencrypt/live"},
        "self_signed": {"dir": "/etc/ssl", "days": 365},
        "warn_expiry_days": 30,
    },
    "git": {
        "git_bin": "git",
        "default_branch": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PORT_STRATEGIES = {"sequential"}
ALLOWED_TLS_MODES = {"lets-encrypt", "self-signed", "none"}

_SECTION_KEYS: dict[str, tuple[str, set[str]]] = {
    "ports": ("ports configuration", {"floor", "ceiling", "strategy", "reserved"}),
    "nginx": (
        "nginx configuration",
        {"sites_available", "sites_enabled", "nginx_bin", "upstream_host"},
    ),
    "systemd": (
        "systemd configuration",
        {"unit_dir", "unit_prefix", "systemctl_bin"},
    ),
    "tls": (
        "TLS configuration",
        {"mode", "certbot_bin", "lets_encrypt", "self_signed", "warn_expiry_days"},
    ),
    "git": ("git configuration", {"git_bin", "default_branch"}),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, (label, allowed) in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        section_map = _as_dict(value, section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {label} keys: {joined}.")

    ports_map = _as_dict(raw.get("ports"), "ports")
    strategy = ports_map.get("strategy")
    if strategy is not None and str(strategy) not in ALLOWED_PORT_STRATEGIES:
        allowed_strategies = ", ".join(sorted(ALLOWED_PORT_STRATEGIES))
        raise ConfigError(
            f"Unsupported port allocation strategy '{strategy}'. Allowed: {allowed_strategies}."
        )

    tls_map = _as_dict(raw.get("tls"), "tls")
    mode = tls_map.get("mode")
    if mode is not None and str(mode) not in ALLOWED_TLS_MODES:
        allowed_modes = ", ".join(sorted(ALLOWED_TLS_MODES))
        raise ConfigError(f"Unsupported TLS mode '{mode}'. Allowed: {allowed_modes}.")

    lets_map = _as_dict(tls_map.get("lets_encrypt"), "tls.lets_encrypt")
    unknown_lets = set(lets_map.keys()) - {"live_dir"}
    if unknown_lets:
        joined = ", ".join(sorted(unknown_lets))
        raise ConfigError(f"Unknown TLS lets_encrypt keys: {joined}.")

    self_signed_map = _as_dict(tls_map.get("self_signed"), "tls.self_signed")
    unknown_self_signed = set(self_signed_map.keys()) - {"dir", "days"}
    if unknown_self_signed:
        joined = ", ".join(sorted(unknown_self_signed))
        raise ConfigError(f"Unknown TLS self_signed keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    web_root = _to_path(raw.get("web_root"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    admin_email_value = raw.get("admin_email")
    admin_email = str(admin_email_value).strip() if admin_email_value else None

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    floor = _expect_int(ports_mapping.get("floor"), "ports.floor", default=5000)
    ceiling = _expect_int(ports_mapping.get("ceiling"), "ports.ceiling", default=MAX_PORT)
    if floor < 1:
        raise ConfigError("ports.floor must be a positive integer.")
    if ceiling > MAX_PORT:
        raise ConfigError(f"ports.ceiling must not exceed {MAX_PORT}.")
    if floor > ceiling:
        raise ConfigError(f"ports.floor ({floor}) must not exceed ports.ceiling ({ceiling}).")
    reserved_raw = ports_mapping.get("reserved") or []
    reserved = tuple(
        sorted(
            {
                _expect_int(item, f"ports.reserved[{index}]", default=0)
                for index, item in enumerate(_as_sequence(reserved_raw, "ports.reserved"))
            }
        )
    )
    ports = PortsConfig(
        floor=floor,
        ceiling=ceiling,
        strategy=str(ports_mapping.get("strategy", "sequential")),
        reserved=reserved,
    )

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        sites_available=_to_path(
            nginx_mapping.get("sites_available", "/etc/nginx/sites-available")
        ),
        sites_enabled=_to_path(nginx_mapping.get("sites_enabled", "/etc/nginx/sites-enabled")),
        nginx_bin=str(nginx_mapping.get("nginx_bin", "nginx")),
        upstream_host=str(nginx_mapping.get("upstream_host", "127.0.0.1")),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        unit_prefix=str(systemd_mapping.get("unit_prefix", "kestrel-")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    lets_mapping = _as_dict(tls_mapping.get("lets_encrypt"), "tls.lets_encrypt")
    self_signed_mapping = _as_dict(tls_mapping.get("self_signed"), "tls.self_signed")
    warn_expiry_days = _expect_int(
        tls_mapping.get("warn_expiry_days"), "tls.warn_expiry_days", default=30
    )
    if warn_expiry_days < 0:
        raise ConfigError("tls.warn_expiry_days must be non-negative.")
    self_signed_days = _expect_int(
        self_signed_mapping.get("days"), "tls.self_signed.days", default=365
    )
    if self_signed_days <= 0:
        raise ConfigError("tls.self_signed.days must be greater than zero.")
    tls = TLSConfig(
        mode=str(tls_mapping.get("mode", "lets-encrypt")),
        certbot_bin=str(tls_mapping.get("certbot_bin", "certbot")),
        live_dir=_to_path(lets_mapping.get("live_dir", "/etc/letsencrypt/live")),
        self_signed_dir=_to_path(self_signed_mapping.get("dir", "/etc/ssl")),
        self_signed_days=self_signed_days,
        warn_expiry_days=warn_expiry_days,
    )

    git_mapping = _as_dict(raw.get("git"), "git")
    default_branch = git_mapping.get("default_branch")
    git = GitConfig(
        git_bin=str(git_mapping.get("git_bin", "git")),
        default_branch=str(default_branch) if default_branch else None,
    )

    return AppConfig(
        config_file=config_file,
        web_root=web_root,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        service_user=str(raw.get("service_user", "www-data")),
        service_group=str(raw.get("service_group", "www-data")),
        runtime_bin=str(raw.get("runtime_bin", "/usr/bin/dotnet")),
        admin_email=admin_email,
        ports=ports,
        nginx=nginx,
        systemd=systemd,
        tls=tls,
        git=git,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "GitConfig",
    "NginxConfig",
    "PortsConfig",
    "SystemdConfig",
    "TLSConfig",
    "load_config",
]
