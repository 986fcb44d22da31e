"""In-memory catalog of cookbook versions.

The catalog is a single reference to an immutable ``CatalogSnapshot``. Readers
take the reference under a lock and then work on the snapshot without holding
anything; a refresh builds a complete new snapshot and swaps the reference
under the same lock. A reader therefore sees either the previous or the next
snapshot, never a partially built one.
"""

from __future__ import annotations

import threading
import time
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from .models import VersionRecord


class CatalogSnapshot:
    """One complete, read-only package -> version -> record mapping."""

    def __init__(
        self,
        packages: Optional[Mapping[str, Mapping[str, VersionRecord]]] = None,
        created_at: Optional[float] = None,
    ):
        self._packages: Mapping[str, Mapping[str, VersionRecord]] = MappingProxyType({
            name: MappingProxyType(dict(versions))
            for name, versions in (packages or {}).items()
            if versions
        })
        self._created_at = created_at if created_at is not None else time.time()

    @property
    def created_at(self) -> float:
        return self._created_at

    @property
    def package_count(self) -> int:
        return len(self._packages)

    @property
    def version_count(self) -> int:
        return sum(len(versions) for versions in self._packages.values())

    def get(self, name: str, version: str) -> Optional[VersionRecord]:
        """Return the record for ``name``/``version`` or None."""
        versions = self._packages.get(name)
        if versions is None:
            return None
        return versions.get(version)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        name, version = key
        return self.get(name, version) is not None

    def packages(self) -> Tuple[str, ...]:
        return tuple(self._packages)

    def versions(self, name: str) -> Mapping[str, VersionRecord]:
        return self._packages.get(name, MappingProxyType({}))

    def items(self) -> Iterator[Tuple[str, str, VersionRecord]]:
        for name, versions in self._packages.items():
            for version, record in versions.items():
                yield name, version, record

    def to_universe(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Serialize as ``{name: {version: {location_path, location_type, dependencies}}}``."""
        return {
            name: {version: record.to_universe() for version, record in versions.items()}
            for name, versions in self._packages.items()
        }

    def stats(self) -> Dict[str, Any]:
        return {
            "packages": self.package_count,
            "versions": self.version_count,
            "created_at": self._created_at,
        }


class Catalog:
    """Lock-guarded reference to the current snapshot."""

    def __init__(self, snapshot: Optional[CatalogSnapshot] = None):
        self._lock = threading.Lock()
        self._snapshot = snapshot if snapshot is not None else CatalogSnapshot()
        self._generation = 0

    def snapshot(self) -> CatalogSnapshot:
        """Return the currently installed snapshot."""
        with self._lock:
            return self._snapshot

    def replace(self, snapshot: CatalogSnapshot) -> CatalogSnapshot:
        """Install ``snapshot`` and return the one it replaced."""
        with self._lock:
            previous = self._snapshot
            self._snapshot = snapshot
            self._generation += 1
            return previous

    @property
    def generation(self) -> int:
        """Number of snapshots installed since startup."""
        with self._lock:
            return self._generation
