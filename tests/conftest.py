"""Shared fixtures for the sitectl test suite."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from sitectl.locking import LockManager
from sitectl.ports import PortAllocator
from sitectl.sites import SiteRegistry
from sitectl.state import StateRegistry


class FakeClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self) -> None:
        """Start at a fixed instant."""
        self.current = datetime(2025, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        """Return the current instant and advance."""
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture
def state(tmp_path: Path) -> StateRegistry:
    """Return a state registry rooted in the temporary directory."""
    return StateRegistry(tmp_path / "registry")


@pytest.fixture
def locks(tmp_path: Path) -> LockManager:
    """Return a lock manager with a short default timeout."""
    return LockManager(tmp_path / "run", default_timeout=5.0)


@pytest.fixture
def make_registry(
    state: StateRegistry,
    locks: LockManager,
) -> Callable[..., SiteRegistry]:
    """Return a factory building site registries with custom port bounds."""

    def _factory(
        *,
        floor: int = 5000,
        ceiling: int = 65535,
        reserved: Iterable[int] = (),
    ) -> SiteRegistry:
        allocator = PortAllocator(floor=floor, ceiling=ceiling, reserved=frozenset(reserved))
        return SiteRegistry(state, allocator, locks, clock=FakeClock())

    return _factory


@pytest.fixture
def registry(make_registry: Callable[..., SiteRegistry]) -> SiteRegistry:
    """Return a site registry with the default port floor of 5000."""
    return make_registry()
