"""Post-build packaging: scanning, relinking, partitioning and archiving."""

from .partition import partition, path_matches
from .pipeline import OutputReport, PackagingReport, package
from .relink import relink

__all__ = [
    "OutputReport",
    "PackagingReport",
    "package",
    "partition",
    "path_matches",
    "relink",
]
