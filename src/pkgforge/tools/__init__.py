"""Adapters for the external Debian tooling pkgforge delegates to."""

from .debcrafter import DebcrafterTool
from .gates import AutopkgtestGate, GateResult, GateStatus, LintianGate, PiupartsGate, QualityGate
from .sbuild import SbuildTool

__all__ = [
    "AutopkgtestGate",
    "DebcrafterTool",
    "GateResult",
    "GateStatus",
    "LintianGate",
    "PiupartsGate",
    "QualityGate",
    "SbuildTool",
]
