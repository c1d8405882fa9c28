"""
Post-build verification: per-file artifact hashes and independent quality gates.
"""

from collections.abc import Iterable, Mapping
from enum import Enum
from pathlib import Path

from attrs import define
from pyvider.telemetry import logger

from ..crypto import ChecksumStatus, verify_checksum
from ..layout import PackageLayout
from ..models import BuildArtifactSet, PackageSpec
from ..tools.gates import GateResult, QualityGate
from ..tools.sbuild import collect_artifacts

NOT_PRODUCED = "<not produced>"


class VerificationStatus(Enum):
    MATCH = "MATCH"
    MISMATCH = "MISMATCH"
    # Produced by the build but absent from the expected manifest.
    MISSING = "MISSING"


@define(frozen=True, slots=True)
class VerificationOutcome:
    name: str
    status: VerificationStatus
    expected: str | None = None
    actual: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is VerificationStatus.MATCH

    @property
    def failed(self) -> bool:
        return self.status is VerificationStatus.MISMATCH

    def __str__(self) -> str:
        if self.status is VerificationStatus.MISMATCH:
            return f"{self.name}: MISMATCH (expected {self.expected}, got {self.actual})"
        if self.status is VerificationStatus.MISSING:
            return f"{self.name}: MISSING (no expected hash recorded)"
        return f"{self.name}: MATCH"


def verify_artifacts(
    artifacts: BuildArtifactSet | Path, expected: Mapping[str, str]
) -> list[VerificationOutcome]:
    """
    Recomputes the hash of every produced file and compares it to `expected`.

    One outcome per produced file, in name order, followed by a MISMATCH for
    each expected name the build did not produce.
    """
    if isinstance(artifacts, Path):
        artifacts = collect_artifacts(artifacts)

    outcomes = []
    produced = set()
    for artifact in sorted(artifacts.files, key=lambda a: a.name):
        produced.add(artifact.name)
        digest = expected.get(artifact.name)
        if digest is None:
            outcomes.append(VerificationOutcome(artifact.name, VerificationStatus.MISSING))
            continue
        result = verify_checksum(artifact.path, digest)
        status = (
            VerificationStatus.MATCH
            if result.status is ChecksumStatus.MATCH
            else VerificationStatus.MISMATCH
        )
        outcomes.append(VerificationOutcome(artifact.name, status, result.expected, result.actual))

    for name in sorted(set(expected) - produced):
        outcomes.append(
            VerificationOutcome(name, VerificationStatus.MISMATCH, expected[name], NOT_PRODUCED)
        )

    counts = {status.value: sum(o.status is status for o in outcomes) for status in VerificationStatus}
    logger.info("Artifact verification finished", directory=str(artifacts.directory), **counts)
    return outcomes


def run_quality_gates(
    gates: Iterable[QualityGate], spec: PackageSpec, layout: PackageLayout
) -> list[GateResult]:
    """Runs every enabled gate; a failing gate does not stop the others."""
    results = []
    for gate in gates:
        if not gate.enabled(spec):
            logger.info("Quality gate disabled", gate=gate.name)
            continue
        results.append(gate.run(spec, layout))
    return results
