"""Site registry: the single owner of domain -> port assignments.

Sites move through ``pending -> active -> removed``. A live site (pending or
active) holds exactly one port and no other live site may hold the same port
or domain. Removed records are kept in ``sites.yml`` for audit and their ports
become eligible for reuse.

Every mutation runs as one read-compute-write cycle under the global registry
lock and ends with an atomic replacement of ``sites.yml``; readers never take
the lock and always observe a complete snapshot. The registry never talks to
nginx, certbot or systemd itself. Callers sequence those collaborators after
the registry call returns.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum

from .exit_codes import ExitCode
from .locking import LockManager
from .ports import PortAllocationError, PortAllocator, PortRangeExhaustedError, coerce_port
from .state import StateRegistry, StateRegistryError

_DOMAIN_LABEL = re.compile(r"(?!-)[a-z0-9-]{1,63}(?<!-)")


class SiteState(str, Enum):
    """Lifecycle states of a registered site."""

    PENDING = "pending"
    ACTIVE = "active"
    REMOVED = "removed"

    @property
    def live(self) -> bool:
        """Return True when the state holds a port."""
        return self is not SiteState.REMOVED


@dataclass(frozen=True, slots=True)
class Site:
    """A registered domain and its backend port."""

    domain: str
    port: int
    state: SiteState
    created_at: str
    activated_at: str | None = None
    removed_at: str | None = None

    @property
    def live(self) -> bool:
        """Return True while the site is pending or active."""
        return self.state.live

    def to_dict(self) -> dict[str, object]:
        """Return the registry representation of the site."""
        return {
            "domain": self.domain,
            "port": self.port,
            "state": self.state.value,
            "created_at": self.created_at,
            "activated_at": self.activated_at,
            "removed_at": self.removed_at,
        }

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> Site:
        """Parse a registry record, raising :class:`PersistenceError` when malformed."""
        domain = str(raw.get("domain") or "").strip()
        port = coerce_port(raw.get("port"))
        state_raw = str(raw.get("state") or "").strip().lower()
        if not domain or port is None:
            raise PersistenceError(f"Malformed site record in registry: {dict(raw)!r}")
        try:
            state = SiteState(state_raw)
        except ValueError as exc:
            raise PersistenceError(
                f"Unknown state '{state_raw}' for site '{domain}' in registry."
            ) from exc
        return cls(
            domain=domain,
            port=port,
            state=state,
            created_at=str(raw.get("created_at") or ""),
            activated_at=_optional_str(raw.get("activated_at")),
            removed_at=_optional_str(raw.get("removed_at")),
        )


class SiteRegistryError(RuntimeError):
    """Base class for site registry failures."""

    exit_code: ExitCode = ExitCode.INTERNAL


class InvalidDomainError(SiteRegistryError):
    """Raised when a domain name fails validation."""

    exit_code = ExitCode.VALIDATION


class SiteAlreadyRegisteredError(SiteRegistryError):
    """Raised when a domain already has a pending or active site."""

    exit_code = ExitCode.ALREADY_REGISTERED

    def __init__(self, site: Site) -> None:
        """Keep the conflicting site for callers that want to report it."""
        super().__init__(
            f"Site '{site.domain}' is already registered ({site.state.value}, port {site.port})."
        )
        self.site = site


class SiteNotFoundError(SiteRegistryError):
    """Raised when a domain has no matching site."""

    exit_code = ExitCode.NOT_FOUND


class InvalidSiteStateError(SiteRegistryError):
    """Raised when a transition is not allowed from the current state."""

    exit_code = ExitCode.INVALID_STATE


class PortExhaustedError(SiteRegistryError):
    """Raised when no port remains in the configured range."""

    exit_code = ExitCode.PORT_EXHAUSTED


class PortUnavailableError(SiteRegistryError):
    """Raised when an explicitly requested port cannot be assigned."""

    exit_code = ExitCode.VALIDATION


class PersistenceError(SiteRegistryError):
    """Raised when the registry cannot be read, parsed or written."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(slots=True)
class _Snapshot:
    records: list[Site]
    live: dict[str, Site]
    ports: dict[int, str]


def normalize_domain(domain: str) -> str:
    """Validate and normalise a domain/FQDN."""
    normalized = domain.strip().lower().rstrip(".")
    if not normalized:
        raise InvalidDomainError("Domain must be a non-empty string.")
    if len(normalized) > 253:
        raise InvalidDomainError("Domain must be 253 characters or fewer.")
    labels = normalized.split(".")
    if not all(_DOMAIN_LABEL.fullmatch(label) for label in labels):
        raise InvalidDomainError(
            f"Invalid domain '{domain.strip()}': labels may contain letters, numbers and "
            "hyphens, and cannot start or end with a hyphen."
        )
    return normalized


class SiteRegistry:
    """Register, activate, release and look up sites."""

    def __init__(
        self,
        state: StateRegistry,
        allocator: PortAllocator,
        locks: LockManager,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Bind the registry to its storage, allocator and lock manager."""
        self.state = state
        self.allocator = allocator
        self.locks = locks
        self._clock = clock or (lambda: datetime.now(UTC))
        self.last_lock_wait_ms = 0

    # Mutations ----------------------------------------------------------
    def register(
        self,
        domain: str,
        *,
        requested_port: int | None = None,
        exist_ok: bool = False,
    ) -> Site:
        """Create a pending site for *domain* on the lowest free port.

        With ``exist_ok`` an existing pending/active site is returned
        unchanged instead of raising :class:`SiteAlreadyRegisteredError`,
        unless *requested_port* names a different port than the one it holds.
        """
        normalized = normalize_domain(domain)
        with self._mutation() as snapshot:
            existing = snapshot.live.get(normalized)
            if existing is not None:
                if exist_ok:
                    if requested_port is not None and requested_port != existing.port:
                        raise PortUnavailableError(
                            f"Site '{normalized}' is already registered on port "
                            f"{existing.port}, not {requested_port}."
                        )
                    return existing
                raise SiteAlreadyRegisteredError(existing)

            try:
                if requested_port is not None:
                    port = self.allocator.claim(requested_port, snapshot.ports)
                else:
                    port = self.allocator.allocate(snapshot.ports)
            except PortRangeExhaustedError as exc:
                raise PortExhaustedError(str(exc)) from exc
            except PortAllocationError as exc:
                holder = snapshot.ports.get(requested_port) if requested_port else None
                detail = f" (held by '{holder}')" if holder else ""
                raise PortUnavailableError(f"{exc}{detail}") from exc

            site = Site(
                domain=normalized,
                port=port,
                state=SiteState.PENDING,
                created_at=self._now(),
            )
            self._save([*snapshot.records, site])
            return site

    def activate(self, domain: str) -> Site:
        """Move the pending site for *domain* to active."""
        normalized = normalize_domain(domain)
        with self._mutation() as snapshot:
            current = snapshot.live.get(normalized)
            if current is None:
                raise SiteNotFoundError(f"Site '{normalized}' is not registered.")
            if current.state is not SiteState.PENDING:
                raise InvalidSiteStateError(
                    f"Site '{normalized}' is {current.state.value}; only pending sites "
                    "can be activated."
                )
            updated = replace(current, state=SiteState.ACTIVE, activated_at=self._now())
            self._save(_replace_record(snapshot.records, current, updated))
            return updated

    def release(self, domain: str) -> int:
        """Mark the live site for *domain* removed and return its freed port."""
        normalized = normalize_domain(domain)
        with self._mutation() as snapshot:
            current = snapshot.live.get(normalized)
            if current is None:
                raise SiteNotFoundError(f"Site '{normalized}' is not registered.")
            updated = replace(current, state=SiteState.REMOVED, removed_at=self._now())
            self._save(_replace_record(snapshot.records, current, updated))
            return current.port

    # Queries ------------------------------------------------------------
    def lookup(self, domain: str) -> Site:
        """Return the live site for *domain*, else its most recent removed record."""
        normalized = normalize_domain(domain)
        snapshot = self._load()
        live = snapshot.live.get(normalized)
        if live is not None:
            return live
        history = [site for site in snapshot.records if site.domain == normalized]
        if not history:
            raise SiteNotFoundError(f"Site '{normalized}' is not registered.")
        return history[-1]

    def list_active(self) -> list[Site]:
        """Return active sites ordered by domain."""
        snapshot = self._load()
        return sorted(
            (site for site in snapshot.live.values() if site.state is SiteState.ACTIVE),
            key=lambda site: site.domain,
        )

    def list_sites(self, *, include_removed: bool = False) -> list[Site]:
        """Return live sites (and optionally removed history) ordered by domain."""
        snapshot = self._load()
        if include_removed:
            sites = list(snapshot.records)
        else:
            sites = list(snapshot.live.values())
        return sorted(sites, key=lambda site: (site.domain, site.created_at))

    def port_index(self) -> dict[int, str]:
        """Return the live ``port -> domain`` mapping."""
        return dict(self._load().ports)

    # Internal helpers -------------------------------------------------
    @contextmanager
    def _mutation(self) -> Iterator[_Snapshot]:
        with self.locks.global_lock() as handle:
            self.last_lock_wait_ms = handle.wait_ms
            yield self._load()

    def _load(self) -> _Snapshot:
        try:
            raw = self.state.read_sites()
        except StateRegistryError as exc:
            raise PersistenceError(str(exc)) from exc

        raw_sites = raw.get("sites") or []
        if not isinstance(raw_sites, Sequence) or isinstance(raw_sites, (str, bytes)):
            raise PersistenceError("Registry 'sites' entry must be a list.")

        records: list[Site] = []
        live: dict[str, Site] = {}
        ports: dict[int, str] = {}
        for item in raw_sites:
            if not isinstance(item, Mapping):
                raise PersistenceError(f"Malformed site record in registry: {item!r}")
            site = Site.from_mapping(item)
            records.append(site)
            if not site.live:
                continue
            if site.domain in live:
                raise PersistenceError(
                    f"Registry holds more than one live record for '{site.domain}'."
                )
            holder = ports.get(site.port)
            if holder is not None:
                raise PersistenceError(
                    f"Port {site.port} is assigned to both '{holder}' and '{site.domain}'."
                )
            live[site.domain] = site
            ports[site.port] = site.domain

        _verify_port_index(raw.get("ports"), ports)
        return _Snapshot(records=records, live=live, ports=ports)

    def _save(self, records: Sequence[Site]) -> None:
        index = {
            site.port: site.domain
            for site in sorted(records, key=lambda entry: entry.port)
            if site.live
        }
        payload = {
            "sites": [site.to_dict() for site in records],
            "ports": index,
        }
        try:
            self.state.write_sites(payload)
        except StateRegistryError as exc:
            raise PersistenceError(str(exc)) from exc

    def _now(self) -> str:
        return self._clock().isoformat(timespec="seconds")


def _verify_port_index(raw_index: object, expected: Mapping[int, str]) -> None:
    """Cross-check the persisted ``port -> domain`` index against the records."""
    if raw_index is None:
        if expected:
            raise PersistenceError("Registry port index is missing.")
        return
    if not isinstance(raw_index, Mapping):
        raise PersistenceError("Registry 'ports' entry must be a mapping.")
    parsed: dict[int, str] = {}
    for key, value in raw_index.items():
        port = coerce_port(key)
        if port is None:
            raise PersistenceError(f"Registry port index has a malformed key {key!r}.")
        parsed[port] = str(value)
    if parsed != dict(expected):
        raise PersistenceError("Registry port index does not match the site records.")


def _replace_record(records: Sequence[Site], old: Site, new: Site) -> list[Site]:
    return [new if record is old else record for record in records]


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


__all__ = [
    "InvalidDomainError",
    "InvalidSiteStateError",
    "PersistenceError",
    "PortExhaustedError",
    "PortUnavailableError",
    "Site",
    "SiteAlreadyRegisteredError",
    "SiteNotFoundError",
    "SiteRegistry",
    "SiteRegistryError",
    "SiteState",
    "normalize_domain",
]
