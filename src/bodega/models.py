"""Data models for cached cookbook versions and their file manifests."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple


class FileCategory(Enum):
    """Manifest segments of a cookbook version.

    Definition order is the archive order; iterate the enum to walk it.
    """

    FILES = "files"
    TEMPLATES = "templates"
    RECIPES = "recipes"
    ATTRIBUTES = "attributes"
    DEFINITIONS = "definitions"
    LIBRARIES = "libraries"
    PROVIDERS = "providers"
    RESOURCES = "resources"
    ROOT_FILES = "root_files"


class LocationKind(Enum):
    """How a universe consumer should locate the archive."""

    URI = "uri"
    OPSCODE = "opscode"


@dataclass(frozen=True)
class FileDescriptor:
    """One file of a cookbook version."""

    path: str
    category: FileCategory
    source_url: Optional[str] = None


@dataclass(frozen=True)
class Manifest:
    """Files of a cookbook version grouped by category."""

    segments: Mapping[FileCategory, Tuple[FileDescriptor, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ordered = {
            category: tuple(self.segments.get(category, ()))
            for category in FileCategory
        }
        object.__setattr__(self, "segments", MappingProxyType(ordered))

    def files(self) -> Iterator[FileDescriptor]:
        """Yield every file in category order, then upstream order."""
        for category in FileCategory:
            yield from self.segments[category]

    def paths(self) -> Tuple[str, ...]:
        return tuple(descriptor.path for descriptor in self.files())

    def __len__(self) -> int:
        return sum(len(items) for items in self.segments.values())

    def structural(self) -> "Manifest":
        """Copy without source URLs; signed download links expire."""
        return Manifest({
            category: tuple(replace(d, source_url=None) for d in items)
            for category, items in self.segments.items()
        })

    @classmethod
    def from_cookbook_version(cls, document: Mapping[str, Any]) -> "Manifest":
        """Build a manifest from a Chef cookbook version document.

        Accepts the segmented layout (one list per category) and the API v2
        ``all_files`` layout, where the category is the first segment of each
        entry's ``name``.
        """
        segments: Dict[FileCategory, list] = {category: [] for category in FileCategory}
        all_files = document.get("all_files")
        if isinstance(all_files, list) and all_files:
            for item in all_files:
                category = _category_of(item)
                segments[category].append(_descriptor(item, category))
        else:
            for category in FileCategory:
                for item in document.get(category.value) or ():
                    segments[category].append(_descriptor(item, category))
        return cls({category: tuple(items) for category, items in segments.items()})


def _category_of(item: Mapping[str, Any]) -> FileCategory:
    head = str(item.get("name") or "").split("/", 1)[0]
    try:
        return FileCategory(head)
    except ValueError:
        return FileCategory.ROOT_FILES


def _descriptor(item: Mapping[str, Any], category: FileCategory) -> FileDescriptor:
    path = item.get("path") or item.get("name")
    if not path:
        raise ValueError(f"manifest entry without a path in {category.value}")
    return FileDescriptor(path=str(path), category=category, source_url=item.get("url"))


@dataclass(frozen=True)
class VersionDetail:
    """What the Chef server reports for a single cookbook version."""

    manifest: Manifest
    dependencies: Mapping[str, str]

    @classmethod
    def from_cookbook_version(cls, document: Mapping[str, Any]) -> "VersionDetail":
        metadata = document.get("metadata") or {}
        dependencies = metadata.get("dependencies") or {}
        return cls(
            manifest=Manifest.from_cookbook_version(document),
            dependencies=MappingProxyType({str(k): str(v) for k, v in dependencies.items()}),
        )


@dataclass(frozen=True)
class VersionRecord:
    """A cached cookbook version as published in the universe."""

    download_location: str
    location_kind: LocationKind
    dependencies: Mapping[str, str]
    manifest: Manifest

    @classmethod
    def build(cls, base_url: str, name: str, version: str, detail: VersionDetail) -> "VersionRecord":
        """Create the record for ``name``/``version`` served from ``base_url``."""
        return cls(
            download_location=f"{base_url.rstrip('/')}/cookbooks/{name}/{version}/download",
            location_kind=LocationKind.URI,
            dependencies=detail.dependencies,
            manifest=detail.manifest.structural(),
        )

    def to_universe(self) -> Dict[str, Any]:
        return {
            "location_path": self.download_location,
            "location_type": self.location_kind.value,
            "dependencies": dict(self.dependencies),
        }
