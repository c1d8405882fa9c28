"""Build orchestration and post-build verification."""

from .orchestrator import BuildOrchestrator, BuildReport
from .verifier import VerificationOutcome, VerificationStatus, run_quality_gates, verify_artifacts

__all__ = [
    "BuildOrchestrator",
    "BuildReport",
    "VerificationOutcome",
    "VerificationStatus",
    "run_quality_gates",
    "verify_artifacts",
]
