"""
Ordered application of a patch series, plus the interactive workbench used
to author new patches against a pushed series.
"""

import json
from pathlib import Path
import shutil

import attrs
from pyvider.telemetry import logger

from .exceptions import PatchConflictError, PkgForgeError
from .models import PatchSeries
from .runner import CommandRunner

# No fuzz, no reversed hunks, no .orig/.rej droppings.
PATCH_ARGS = ("-p1", "--forward", "--batch", "--fuzz=0", "--no-backup-if-mismatch")


class PatchApplier:
    def __init__(self, runner: CommandRunner | None = None):
        self.runner = runner or CommandRunner()

    def apply(self, series: PatchSeries, root: Path) -> list[str]:
        """
        Applies every patch of `series` onto `root` in declared order.

        Each patch is dry-run first; a patch that does not apply exactly raises
        `PatchConflictError` before it touches the tree.
        """
        applied: list[str] = []
        if not len(series):
            logger.info("No patches to apply", directory=str(series.directory))
            return applied
        self.runner.require("patch")
        for position, name in enumerate(series, start=1):
            patch_file = series.path_of(name)
            if not patch_file.is_file():
                raise PatchConflictError(name, position, f"Patch file not found: {patch_file}")
            check = self.runner.run(
                ["patch", *PATCH_ARGS, "--dry-run", "-i", patch_file], cwd=root, check=False
            )
            if not check.ok:
                raise PatchConflictError(name, position, check.output)
            result = self.runner.run(["patch", *PATCH_ARGS, "-i", patch_file], cwd=root, check=False)
            if not result.ok:
                raise PatchConflictError(name, position, result.output)
            logger.info("Patch applied", patch=name, position=position)
            applied.append(name)
        return applied


class PatchWorkbench:
    """
    Development mode around a source tree.

    `push` applies the stored series and snapshots the result, `new` starts a
    patch on top of the series and `refresh` writes the difference between the
    snapshot and the working tree back into the patches directory.
    """

    SESSION_FILE = ".patch-session.json"
    BASELINE_DIR = ".patch-baseline"

    def __init__(self, root: Path, state_dir: Path, runner: CommandRunner | None = None):
        self.root = root
        self.state_dir = state_dir
        self.runner = runner or CommandRunner()

    @property
    def session_file(self) -> Path:
        return self.state_dir / self.SESSION_FILE

    @property
    def baseline(self) -> Path:
        return self.state_dir / self.BASELINE_DIR

    def _load_session(self) -> dict:
        if not self.session_file.is_file():
            raise PkgForgeError("No patch session; run `pkgforge patch push` first.")
        return json.loads(self.session_file.read_text())

    def _save_session(self, session: dict) -> None:
        self.session_file.write_text(json.dumps(session, indent=2))

    def _snapshot(self) -> None:
        if self.baseline.exists():
            shutil.rmtree(self.baseline)
        shutil.copytree(self.root, self.baseline, symlinks=True, ignore=shutil.ignore_patterns(".git"))

    def push(self, series: PatchSeries) -> list[str]:
        applied = PatchApplier(self.runner).apply(series, self.root)
        self._snapshot()
        self._save_session({"directory": str(series.directory), "applied": applied, "current": None})
        return applied

    def new(self, name: str) -> PatchSeries:
        session = self._load_session()
        series = PatchSeries.load(Path(session["directory"]))
        if name in series.names:
            raise PkgForgeError(f"Patch '{name}' is already part of the series.")
        if session["current"] is not None:
            self._snapshot()
        session["current"] = name
        self._save_session(session)
        logger.info("Started new patch", patch=name)
        return series

    def refresh(self) -> Path:
        session = self._load_session()
        name = session.get("current")
        if not name:
            raise PkgForgeError("No patch in progress; run `pkgforge patch new NAME` first.")
        series = PatchSeries.load(Path(session["directory"]))

        self.runner.require("diff")
        result = self.runner.run(
            ["diff", "-ruN", "--exclude=.git", self.baseline, self.root], check=False
        )
        # diff exits 1 when files differ; anything above that is an error.
        if result.returncode > 1:
            raise PkgForgeError(f"diff failed while refreshing '{name}':\n{result.output}")
        content = (
            result.stdout.replace(f"{self.baseline}/", "a/").replace(f"{self.root}/", "b/")
        )
        patch_file = series.path_of(name)
        patch_file.parent.mkdir(parents=True, exist_ok=True)
        patch_file.write_text(content)
        if name not in series.names:
            series = attrs.evolve(series, names=(*series.names, name))
            series.save()
            session["applied"].append(name)
            self._save_session(session)
        logger.info("Patch refreshed", patch=name, path=str(patch_file), empty=not content)
        return patch_file
