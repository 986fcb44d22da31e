"""Exception hierarchy for the cookbook proxy.

Refresh-cycle failures (``UpstreamError`` and subclasses) are contained by the
poller; per-request failures (``VersionNotFoundError``, ``FetchError``,
``ArchiveWriteError``) surface as the HTTP error body. Nothing here is retried.
"""

from __future__ import annotations

__all__ = [
    "BodegaError",
    "StartupConfigurationError",
    "UpstreamError",
    "UpstreamUnavailableError",
    "VersionNotFoundError",
    "FetchError",
    "ArchiveWriteError",
    "PollerStateError",
]


class BodegaError(RuntimeError):
    """Base exception for proxy failures."""


class StartupConfigurationError(BodegaError):
    """Raised when settings or credential material prevent startup."""


class UpstreamError(BodegaError):
    """Raised when a single Chef server API call fails."""


class UpstreamUnavailableError(UpstreamError):
    """Raised when the Chef server cannot be reached or listed at all."""


class VersionNotFoundError(BodegaError):
    """Raised when a cookbook version is not in the catalog (or upstream)."""

    def __init__(self, name: str, version: str, message: str = "Cookbook version not found") -> None:
        super().__init__(f"{message}: {name}/{version}")
        self.name = name
        self.version = version


class FetchError(BodegaError):
    """Raised when one file of a cookbook version cannot be downloaded."""

    def __init__(self, name: str, version: str, path: str, reason: str) -> None:
        super().__init__(f"Failed to fetch {path} for {name}/{version}: {reason}")
        self.name = name
        self.version = version
        self.path = path
        self.reason = reason


class ArchiveWriteError(BodegaError):
    """Raised when writing or compressing the tarball fails."""

    def __init__(self, name: str, version: str, reason: str) -> None:
        super().__init__(f"Failed to write archive for {name}/{version}: {reason}")
        self.name = name
        self.version = version
        self.reason = reason


class PollerStateError(BodegaError):
    """Raised when polling is started twice or stopped twice."""
