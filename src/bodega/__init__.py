"""Chef Bodega caching proxy package.

This package keeps an in-memory catalog of the cookbook versions on a Chef
server, publishes it as a Berkshelf universe, and rebuilds cookbook tarballs on
demand from the files stored upstream.
"""

from .models import FileCategory, FileDescriptor, LocationKind, Manifest, VersionDetail, VersionRecord
from .catalog import Catalog, CatalogSnapshot
from .upstream import UpstreamClient
from .poller import CatalogPoller
from .assembler import ArtifactAssembler, AssemblyJob, JobState
from .server import BodegaServer, BodegaConfig

__all__ = [
    "FileCategory",
    "FileDescriptor",
    "LocationKind",
    "Manifest",
    "VersionDetail",
    "VersionRecord",
    "Catalog",
    "CatalogSnapshot",
    "UpstreamClient",
    "CatalogPoller",
    "ArtifactAssembler",
    "AssemblyJob",
    "JobState",
    "BodegaServer",
    "BodegaConfig",
]
