"""Delegation of work to external processes."""

from collections.abc import Mapping, Sequence
import os
from pathlib import Path
import shutil
import subprocess

from attrs import define
from pyvider.telemetry import logger

from .exceptions import DelegatedToolError


@define(frozen=True, slots=True)
class CommandResult:
    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}{self.stderr}"


class CommandRunner:
    """Runs commands synchronously, keeping their output verbatim."""

    def run(
        self,
        command: Sequence[str | Path],
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> CommandResult:
        args = [str(part) for part in command]
        logger.info(f"Running command: {' '.join(args)}", cwd=str(cwd) if cwd else None)
        merged_env = {**os.environ, **env} if env else None
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
                env=merged_env,
                check=False,
            )
        except FileNotFoundError as e:
            raise DelegatedToolError(
                f"Required program '{args[0]}' is not installed or not on PATH.",
                command=args,
                returncode=127,
                stderr=str(e),
            ) from e

        result = CommandResult(tuple(args), completed.returncode, completed.stdout, completed.stderr)
        if check and not result.ok:
            raise DelegatedToolError(
                f"Command failed with exit code {result.returncode}.\n"
                f"  Command: {' '.join(args)}\n"
                f"  Stdout:\n{result.stdout.strip()}\n"
                f"  Stderr:\n{result.stderr.strip()}",
                command=args,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        if result.stderr:
            logger.debug("Command stderr", output=result.stderr.strip())
        return result

    def which(self, program: str) -> str | None:
        return shutil.which(program)

    def require(self, program: str) -> str:
        location = self.which(program)
        if location is None:
            raise DelegatedToolError(
                f"Required program '{program}' is not installed or not on PATH.",
                command=[program],
                returncode=127,
            )
        return location
