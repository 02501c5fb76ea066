"""Helpers for interacting with the sitectl state registry.

The registry directory (``/var/lib/sitectl/registry`` by default) stores YAML
artifacts such as ``sites.yml``. This module provides lightweight helpers to
read and write those files using atomic, fsync'd replacements: readers always
observe either the previous or the next complete document, never a torn
write, and a failed write leaves the previous document untouched.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage sitectl state. Install with `pip install sitectl`."
    ) from exc


SITES_FILE = "sites.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry files cannot be read or written."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateRegistryError(
                f"Failed to create registry directory {self.root}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return deepcopy(default)
        except OSError as exc:
            raise StateRegistryError(f"Failed to read registry file {path}: {exc}") from exc
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically and durably write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        except OSError as exc:
            raise StateRegistryError(f"Failed to stage registry file {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, path)
            _fsync_directory(self.root)
        except (OSError, yaml.YAMLError) as exc:
            raise StateRegistryError(f"Failed to write registry file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_sites(self) -> Mapping[str, object]:
        """Return the contents of ``sites.yml`` (empty document if missing)."""
        value = self.read(SITES_FILE, default={"sites": [], "ports": {}})
        if not isinstance(value, Mapping):
            raise StateRegistryError(
                f"Registry file {self.path_for(SITES_FILE)} must contain a mapping."
            )
        return value

    def write_sites(self, payload: Mapping[str, object]) -> None:
        """Persist the site records and port index to ``sites.yml``."""
        self.write(SITES_FILE, payload)


def _fsync_directory(path: Path) -> None:
    """Flush the directory entry so a rename survives power loss."""
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:  # pragma: no cover - platform dependent (e.g. Windows)
        return
    try:
        os.fsync(fd)
    except OSError:  # pragma: no cover - some filesystems reject directory fsync
        pass
    finally:
        os.close(fd)


__all__ = ["StateRegistry", "StateRegistryError", "SITES_FILE"]
