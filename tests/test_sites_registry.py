"""Tests for the site registry lifecycle and port invariants."""
from __future__ import annotations

import os
import threading
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from sitectl.exit_codes import ExitCode
from sitectl.sites import (
    InvalidDomainError,
    InvalidSiteStateError,
    PersistenceError,
    PortExhaustedError,
    PortUnavailableError,
    Site,
    SiteAlreadyRegisteredError,
    SiteNotFoundError,
    SiteRegistry,
    SiteState,
    normalize_domain,
)
from sitectl.state import SITES_FILE, StateRegistry


def test_register_assigns_floor_and_persists(registry: SiteRegistry, state: StateRegistry) -> None:
    """The first site receives the floor port and is written before returning."""
    site = registry.register("a.com")

    assert site.port == 5000
    assert site.state is SiteState.PENDING
    assert site.created_at.startswith("2025-01-01T00:00:00")

    document = yaml.safe_load(state.path_for(SITES_FILE).read_text(encoding="utf-8"))
    assert document["sites"][0]["domain"] == "a.com"
    assert document["sites"][0]["state"] == "pending"
    assert document["ports"] == {5000: "a.com"}


def test_released_port_is_reused_lowest_first(registry: SiteRegistry) -> None:
    """Releasing a.com frees 5000 and the next registration takes it."""
    assert registry.register("a.com").port == 5000
    assert registry.register("b.com").port == 5001

    assert registry.release("a.com") == 5000
    assert registry.register("c.com").port == 5000
    assert registry.port_index() == {5000: "c.com", 5001: "b.com"}


def test_distinct_domains_never_share_a_port(registry: SiteRegistry) -> None:
    """Sequential registrations hand out unique ports."""
    ports = [registry.register(f"site{index}.example").port for index in range(10)]

    assert ports == list(range(5000, 5010))


def test_register_twice_raises_already_registered(registry: SiteRegistry) -> None:
    """A live domain cannot be registered again."""
    first = registry.register("a.com")

    with pytest.raises(SiteAlreadyRegisteredError) as excinfo:
        registry.register("A.COM.")

    assert excinfo.value.site == first
    assert excinfo.value.exit_code is ExitCode.ALREADY_REGISTERED
    assert len(registry.list_sites()) == 1


def test_register_exist_ok_returns_existing_site(registry: SiteRegistry) -> None:
    """Idempotent registration hands back the live record unchanged."""
    first = registry.register("a.com")

    again = registry.register("a.com", exist_ok=True)

    assert again == first
    assert registry.port_index() == {5000: "a.com"}


def test_register_exist_ok_rejects_different_requested_port(registry: SiteRegistry) -> None:
    """Asking for another port on a live site fails instead of returning it."""
    first = registry.register("a.com")

    assert registry.register("a.com", requested_port=5000, exist_ok=True) == first
    with pytest.raises(PortUnavailableError, match="already registered on port 5000") as excinfo:
        registry.register("a.com", requested_port=6000, exist_ok=True)

    assert excinfo.value.exit_code == ExitCode.VALIDATION
    assert registry.port_index() == {5000: "a.com"}


def test_register_after_release_creates_new_record(registry: SiteRegistry) -> None:
    """A removed domain may be registered again and keeps its history."""
    registry.register("a.com")
    registry.release("a.com")

    again = registry.register("a.com")

    assert again.state is SiteState.PENDING
    history = registry.list_sites(include_removed=True)
    assert [site.state for site in history] == [SiteState.REMOVED, SiteState.PENDING]


def test_register_with_requested_port(registry: SiteRegistry) -> None:
    """An explicit free port in range is honoured."""
    site = registry.register("a.com", requested_port=5100)
    assert site.port == 5100

    # The scan still starts from the floor.
    assert registry.register("b.com").port == 5000


def test_register_requested_port_conflicts(registry: SiteRegistry) -> None:
    """Requested ports held by live sites or outside the range are rejected."""
    registry.register("a.com")

    with pytest.raises(PortUnavailableError, match="a.com"):
        registry.register("b.com", requested_port=5000)
    with pytest.raises(PortUnavailableError):
        registry.register("b.com", requested_port=80)

    assert registry.port_index() == {5000: "a.com"}


def test_port_exhaustion(make_registry: Callable[..., SiteRegistry]) -> None:
    """Registration fails once every port in range is live."""
    registry = make_registry(floor=5000, ceiling=5001)
    registry.register("a.com")
    registry.register("b.com")

    with pytest.raises(PortExhaustedError) as excinfo:
        registry.register("c.com")

    assert excinfo.value.exit_code is ExitCode.PORT_EXHAUSTED


def test_reserved_ports_are_skipped(make_registry: Callable[..., SiteRegistry]) -> None:
    """Reserved ports are never allocated."""
    registry = make_registry(reserved=[5000, 5002])

    assert registry.register("a.com").port == 5001
    assert registry.register("b.com").port == 5003


def test_release_unknown_or_removed_raises_not_found(registry: SiteRegistry) -> None:
    """Release requires a live site; a second release fails."""
    with pytest.raises(SiteNotFoundError):
        registry.release("missing.com")

    registry.register("a.com")
    registry.release("a.com")

    with pytest.raises(SiteNotFoundError) as excinfo:
        registry.release("a.com")
    assert excinfo.value.exit_code is ExitCode.NOT_FOUND


def test_released_port_not_reused_while_live_elsewhere(registry: SiteRegistry) -> None:
    """Only removed ports return to the pool."""
    registry.register("a.com")
    registry.register("b.com")
    registry.release("b.com")

    site = registry.register("c.com")

    assert site.port == 5001
    assert registry.lookup("a.com").port == 5000


def test_activate_pending_site(registry: SiteRegistry) -> None:
    """Activation moves pending to active and stamps activated_at."""
    registry.register("a.com")

    site = registry.activate("a.com")

    assert site.state is SiteState.ACTIVE
    assert site.activated_at is not None
    assert registry.lookup("a.com").state is SiteState.ACTIVE


def test_activate_rejects_non_pending_and_unknown(registry: SiteRegistry) -> None:
    """Activating twice is an invalid state; unknown or removed is not found."""
    registry.register("a.com")
    registry.activate("a.com")

    with pytest.raises(InvalidSiteStateError) as excinfo:
        registry.activate("a.com")
    assert excinfo.value.exit_code is ExitCode.INVALID_STATE

    with pytest.raises(SiteNotFoundError):
        registry.activate("missing.com")

    registry.register("b.com")
    registry.release("b.com")
    with pytest.raises(SiteNotFoundError):
        registry.activate("b.com")


def test_list_active_only_active_sorted(registry: SiteRegistry) -> None:
    """list_active returns active sites ordered by domain."""
    for domain in ("zeta.com", "alpha.com", "mid.com", "pending.com"):
        registry.register(domain)
    for domain in ("zeta.com", "alpha.com", "mid.com"):
        registry.activate(domain)
    registry.release("mid.com")

    active = registry.list_active()

    assert [site.domain for site in active] == ["alpha.com", "zeta.com"]
    assert all(site.state is SiteState.ACTIVE for site in active)


def test_lookup_returns_latest_removed_record(registry: SiteRegistry) -> None:
    """Lookup falls back to removal history and fails for unknown domains."""
    registry.register("a.com")
    registry.release("a.com")

    site = registry.lookup("a.com")

    assert site.state is SiteState.REMOVED
    assert site.removed_at is not None
    with pytest.raises(SiteNotFoundError):
        registry.lookup("never.com")


def test_normalize_domain_rules() -> None:
    """Domains are lowercased and validated label by label."""
    assert normalize_domain("  Example.COM. ") == "example.com"
    assert normalize_domain("api-1.example.org") == "api-1.example.org"

    for bad in ("", "   ", "-bad.com", "bad-.com", "a..com", "under_score.com", "a" * 64 + ".com"):
        with pytest.raises(InvalidDomainError):
            normalize_domain(bad)


def test_invalid_domain_is_rejected_before_touching_state(
    registry: SiteRegistry,
    state: StateRegistry,
) -> None:
    """Validation failures write nothing."""
    with pytest.raises(InvalidDomainError):
        registry.register("not a domain")

    assert not state.path_for(SITES_FILE).exists()


def test_concurrent_register_same_domain(registry: SiteRegistry) -> None:
    """Two racing registrations of one domain yield one site and one error."""
    barrier = threading.Barrier(2)
    results: list[Site] = []
    errors: list[Exception] = []

    def worker() -> None:
        barrier.wait()
        try:
            results.append(registry.register("x.com"))
        except SiteAlreadyRegisteredError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 1
    assert len(errors) == 1
    assert [site.domain for site in registry.list_sites()] == ["x.com"]


def test_concurrent_register_distinct_domains(registry: SiteRegistry) -> None:
    """Parallel registrations of different domains never share a port."""
    count = 8
    barrier = threading.Barrier(count)
    ports: list[int] = []
    lock = threading.Lock()

    def worker(index: int) -> None:
        barrier.wait()
        site = registry.register(f"site{index}.example")
        with lock:
            ports.append(site.port)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(ports) == list(range(5000, 5000 + count))
    assert len(registry.port_index()) == count


def test_write_failure_keeps_previous_document(
    registry: SiteRegistry,
    state: StateRegistry,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed atomic replace surfaces PersistenceError and leaves the file intact."""
    registry.register("a.com")
    path = state.path_for(SITES_FILE)
    before = path.read_text(encoding="utf-8")

    def fail_replace(src: object, dst: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", fail_replace)

    with pytest.raises(PersistenceError) as excinfo:
        registry.register("b.com")

    assert excinfo.value.exit_code is ExitCode.ENVIRONMENT
    assert path.read_text(encoding="utf-8") == before
    assert [entry.name for entry in Path(state.root).iterdir()] == [SITES_FILE]


def test_mismatched_port_index_is_corruption(registry: SiteRegistry, state: StateRegistry) -> None:
    """The persisted port index must agree with the site records."""
    registry.register("a.com")
    document = state.read_sites()
    state.write_sites({"sites": document["sites"], "ports": {5001: "a.com"}})

    with pytest.raises(PersistenceError, match="port index"):
        registry.list_sites()


def test_duplicate_live_port_is_corruption(registry: SiteRegistry, state: StateRegistry) -> None:
    """Two live records holding one port are rejected on load."""
    record = {
        "port": 5000,
        "state": "active",
        "created_at": "2025-01-01T00:00:00+00:00",
    }
    state.write_sites(
        {
            "sites": [{**record, "domain": "a.com"}, {**record, "domain": "b.com"}],
            "ports": {5000: "a.com"},
        }
    )

    with pytest.raises(PersistenceError, match="5000"):
        registry.register("c.com")


def test_malformed_yaml_is_persistence_error(registry: SiteRegistry, state: StateRegistry) -> None:
    """Unparseable registry files map to PersistenceError."""
    state.ensure_root()
    state.path_for(SITES_FILE).write_text("::: not yaml :::\n", encoding="utf-8")

    with pytest.raises(PersistenceError):
        registry.lookup("a.com")


def test_mutation_records_lock_wait(registry: SiteRegistry) -> None:
    """Mutations expose how long they waited for the registry lock."""
    registry.register("a.com")

    assert registry.last_lock_wait_ms >= 0
    assert registry.locks.global_lock_path.exists()
