"""Collaborator providers driven by sitectl workflows."""
from __future__ import annotations

from .nginx import NginxError, NginxProvider, NginxRenderResult, NginxUpstream
from .source import FetchResult, PublishResult, SourceError, SourceProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "FetchResult",
    "NginxError",
    "NginxProvider",
    "NginxRenderResult",
    "NginxUpstream",
    "PublishResult",
    "SourceError",
    "SourceProvider",
    "SystemdError",
    "SystemdProvider",
]
