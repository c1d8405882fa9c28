"""Error taxonomy shared by every pipeline stage."""

from collections.abc import Sequence
from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    VALIDATION = "VALIDATION"
    INTEGRITY = "INTEGRITY"
    DELEGATED_TOOL_FAILURE = "DELEGATED_TOOL_FAILURE"
    PARTIAL_INSTALL = "PARTIAL_INSTALL"
    PATCH_CONFLICT = "PATCH_CONFLICT"
    ENVIRONMENT_MISSING = "ENVIRONMENT_MISSING"
    QUALITY_GATE = "QUALITY_GATE"


EXIT_CODES: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: 2,
    ErrorCategory.INTEGRITY: 3,
    ErrorCategory.DELEGATED_TOOL_FAILURE: 4,
    ErrorCategory.PARTIAL_INSTALL: 5,
    ErrorCategory.PATCH_CONFLICT: 6,
    ErrorCategory.ENVIRONMENT_MISSING: 7,
    ErrorCategory.QUALITY_GATE: 8,
}


class PkgForgeError(Exception):
    category: ErrorCategory = ErrorCategory.DELEGATED_TOOL_FAILURE

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.category]


class SpecValidationError(PkgForgeError):
    """Raised with every violated rule of a specification document."""

    category = ErrorCategory.VALIDATION

    def __init__(self, violations: Sequence[Any]) -> None:
        self.violations = tuple(violations)
        lines = "\n".join(f"  - {v}" for v in self.violations)
        super().__init__(
            f"Specification is invalid ({len(self.violations)} violation(s)):\n{lines}"
        )


class IntegrityError(PkgForgeError):
    category = ErrorCategory.INTEGRITY

    def __init__(
        self,
        message: str,
        *,
        subject: str | None = None,
        expected: str | None = None,
        actual: str | None = None,
    ) -> None:
        self.subject = subject
        self.expected = expected
        self.actual = actual
        details = []
        if subject:
            details.append(f"  Subject: {subject}")
        if expected is not None:
            details.append(f"  Expected: {expected}")
        if actual is not None:
            details.append(f"  Actual: {actual}")
        super().__init__("\n".join([message, *details]))


class DelegatedToolError(PkgForgeError):
    """An external process exited non-zero; its output is kept verbatim."""

    category = ErrorCategory.DELEGATED_TOOL_FAILURE

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)

    @property
    def diagnostic(self) -> str:
        return f"{self.stdout}{self.stderr}"


class FetchError(DelegatedToolError):
    pass


class PartialInstallError(PkgForgeError):
    category = ErrorCategory.PARTIAL_INSTALL

    def __init__(
        self, toolchain: str, failed_entry: str, installed: Sequence[str], reason: str
    ) -> None:
        self.toolchain = toolchain
        self.failed_entry = failed_entry
        self.installed = tuple(installed)
        self.reason = reason
        done = ", ".join(self.installed) or "none"
        super().__init__(
            f"Toolchain '{toolchain}' partially installed: entry '{failed_entry}' failed.\n"
            f"  Installed before failure: {done}\n"
            f"  Reason: {reason}"
        )


class PatchConflictError(PkgForgeError):
    category = ErrorCategory.PATCH_CONFLICT

    def __init__(self, patch: str, position: int, diagnostic: str) -> None:
        self.patch = patch
        self.position = position
        self.diagnostic = diagnostic
        super().__init__(
            f"Patch #{position} '{patch}' does not apply cleanly.\n{diagnostic}"
        )


class EnvironmentMissingError(PkgForgeError):
    category = ErrorCategory.ENVIRONMENT_MISSING

    def __init__(self, message: str, *, descriptor: Any = None, path: Any = None) -> None:
        self.descriptor = descriptor
        self.path = path
        super().__init__(message)


class QualityGateError(PkgForgeError):
    category = ErrorCategory.QUALITY_GATE


class ArtifactVerificationError(PkgForgeError):
    category = ErrorCategory.INTEGRITY

    def __init__(self, outcomes: Sequence[Any]) -> None:
        self.outcomes = tuple(outcomes)
        failing = [o for o in self.outcomes if o.failed]
        lines = "\n".join(f"  - {o}" for o in failing)
        super().__init__(f"Artifact verification failed:\n{lines}")
