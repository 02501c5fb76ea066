"""State management helpers for sitectl."""
from __future__ import annotations

from .registry import SITES_FILE, StateRegistry, StateRegistryError

__all__ = ["SITES_FILE", "StateRegistry", "StateRegistryError"]
