"""Test for running pkgforge as a module."""

import runpy
from unittest.mock import patch


def test_main_module_entrypoint() -> None:
    """Tests that `python -m pkgforge` calls the CLI."""
    with patch("pkgforge.cli.cli") as mock_cli:
        runpy.run_module("pkgforge", run_name="__main__")
    mock_cli.assert_called_once()
