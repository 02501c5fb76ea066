"""Port allocation helpers for sitectl."""
from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass, field

from .config import MAX_PORT, PortsConfig


class PortAllocationError(RuntimeError):
    """Raised when a requested port cannot be honoured."""


class PortRangeExhaustedError(PortAllocationError):
    """Raised when every port between the floor and ceiling is taken."""


@dataclass(slots=True)
class PortAllocator:
    """Pick backend ports for new sites within ``[floor, ceiling]``."""

    floor: int = 5000
    ceiling: int = MAX_PORT
    strategy: str = "sequential"
    reserved: frozenset[int] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if self.floor < 1:
            raise PortAllocationError("Port floor must be a positive integer.")
        if self.ceiling > MAX_PORT:
            raise PortAllocationError(f"Port ceiling must not exceed {MAX_PORT}.")
        if self.floor > self.ceiling:
            raise PortAllocationError(
                f"Port floor {self.floor} is above the ceiling {self.ceiling}."
            )
        if self.strategy != "sequential":
            raise PortAllocationError(f"Unsupported port allocation strategy '{self.strategy}'.")
        self.reserved = frozenset(self.reserved)

    @classmethod
    def from_config(cls, config: PortsConfig) -> PortAllocator:
        """Build an allocator from the ``ports`` configuration section."""
        return cls(
            floor=config.floor,
            ceiling=config.ceiling,
            strategy=config.strategy,
            reserved=frozenset(config.reserved),
        )

    def allocate(self, used: Collection[int]) -> int:
        """Return the lowest port at or above the floor not present in *used*."""
        taken = set(used) | self.reserved
        candidate = self.floor
        while candidate <= self.ceiling:
            if candidate not in taken:
                return candidate
            candidate += 1
        raise PortRangeExhaustedError(
            f"No free port between {self.floor} and {self.ceiling}."
        )

    def claim(self, requested: int, used: Collection[int]) -> int:
        """Validate that *requested* may be assigned and return it."""
        if requested < self.floor or requested > self.ceiling:
            raise PortAllocationError(
                f"Requested port {requested} is outside the configured range "
                f"{self.floor}-{self.ceiling}."
            )
        if requested in self.reserved:
            raise PortAllocationError(f"Port {requested} is reserved.")
        if requested in used:
            raise PortAllocationError(f"Port {requested} is already in use.")
        return requested


def coerce_port(value: object) -> int | None:
    """Return an integer port from arbitrary registry values, or ``None``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        candidate = value.strip()
        if candidate:
            try:
                return int(candidate)
            except ValueError:
                return None
    return None


__all__ = [
    "PortAllocationError",
    "PortAllocator",
    "PortRangeExhaustedError",
    "coerce_port",
]
