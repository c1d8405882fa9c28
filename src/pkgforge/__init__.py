# pkgforge/src/pkgforge/__init__.py
"""
Build-orchestration core that turns one declarative package specification into
a verified, reproducible Debian package.
"""

import importlib.metadata

try:
    __version__ = importlib.metadata.version("pkgforge")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0-dev"

from .models import BuildArtifactSet, PackageSpec, StageResult, StageStatus
from .packaging.orchestrator import BuildOrchestrator, BuildReport

__all__ = [
    "BuildArtifactSet",
    "BuildOrchestrator",
    "BuildReport",
    "PackageSpec",
    "StageResult",
    "StageStatus",
    "__version__",
]
