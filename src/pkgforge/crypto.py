"""
Shared checksum verification for downloaded sources and toolchain packages.
"""

from enum import Enum
from pathlib import Path
from typing import BinaryIO

from attrs import define
from cryptography.hazmat.primitives import hashes
from pyvider.telemetry import logger

from .exceptions import IntegrityError

CHUNK_SIZE = 1024 * 1024

# The declared digest length selects the algorithm.
ALGORITHMS_BY_LENGTH: dict[int, type[hashes.HashAlgorithm]] = {
    40: hashes.SHA1,
    64: hashes.SHA256,
    128: hashes.SHA512,
}


class ChecksumStatus(Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    SKIPPED = "skipped"


@define(frozen=True, slots=True)
class ChecksumResult:
    status: ChecksumStatus
    algorithm: str | None = None
    expected: str | None = None
    actual: str | None = None

    @property
    def matched(self) -> bool:
        return self.status is ChecksumStatus.MATCH


def algorithm_for(digest: str) -> hashes.HashAlgorithm | None:
    algorithm = ALGORITHMS_BY_LENGTH.get(len(digest))
    return algorithm() if algorithm else None


def compute_digest(source: bytes | Path | BinaryIO, algorithm: hashes.HashAlgorithm) -> str:
    """Hashes bytes, a file path or an open binary stream; returns lowercase hex."""
    digest = hashes.Hash(algorithm)
    if isinstance(source, bytes):
        digest.update(source)
    elif isinstance(source, Path):
        with source.open("rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                digest.update(chunk)
    else:
        for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.finalize().hex()


def sha256_of(source: bytes | Path | BinaryIO) -> str:
    return compute_digest(source, hashes.SHA256())


def verify_checksum(source: bytes | Path | BinaryIO, expected: str | None) -> ChecksumResult:
    """
    Compares the content hash of `source` with `expected`.

    SKIPPED is returned only when no digest was declared. A declared digest of
    an unrecognised length can never match and is reported as MISMATCH.
    """
    if expected is None or not expected.strip():
        return ChecksumResult(ChecksumStatus.SKIPPED)

    expected = expected.strip().lower()
    algorithm = algorithm_for(expected)
    if algorithm is None:
        return ChecksumResult(
            ChecksumStatus.MISMATCH,
            expected=expected,
            actual=f"<no algorithm for a {len(expected)}-character digest>",
        )

    actual = compute_digest(source, algorithm)
    status = ChecksumStatus.MATCH if actual == expected else ChecksumStatus.MISMATCH
    return ChecksumResult(status, algorithm=algorithm.name, expected=expected, actual=actual)


def ensure_verified(result: ChecksumResult, subject: str) -> ChecksumResult:
    """Raises on MISMATCH and logs a warning on SKIPPED."""
    if result.status is ChecksumStatus.MISMATCH:
        raise IntegrityError(
            f"Checksum mismatch for {subject}.",
            subject=subject,
            expected=result.expected,
            actual=result.actual,
        )
    if result.status is ChecksumStatus.SKIPPED:
        logger.warning("No checksum declared; content was not verified", subject=subject)
    else:
        logger.debug("Checksum verified", subject=subject, algorithm=result.algorithm)
    return result


def verify_file(path: Path, expected: str | None, subject: str | None = None) -> ChecksumResult:
    return ensure_verified(verify_checksum(path, expected), subject or path.name)
