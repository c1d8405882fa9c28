"""Toolchain descriptors, host installation and in-root setup recipes."""

from .descriptors import InstallEntry, ToolchainDescriptor, descriptor_for
from .installer import InstallReport, ToolchainInstaller
from .recipes import render_setup_recipe, setup_commands

__all__ = [
    "InstallEntry",
    "InstallReport",
    "ToolchainDescriptor",
    "ToolchainInstaller",
    "descriptor_for",
    "render_setup_recipe",
    "setup_commands",
]
