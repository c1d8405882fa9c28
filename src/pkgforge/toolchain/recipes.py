"""Rendering of the in-build-root toolchain setup recipe."""

from pathlib import Path
import shlex

import jinja2

from ..models import BOOKWORM, JAMMY, NOBLE, Distribution
from .descriptors import InstallEntry, ToolchainDescriptor

_TEMPLATE_DIR = Path(__file__).parent / "templates"
ROOT_PREFIX = "/opt/lib"

MICROSOFT_REPO_SETUP = (
    "cd /tmp && wget -q https://packages.microsoft.com/config/debian/12/packages-microsoft-prod.deb "
    "-O packages-microsoft-prod.deb",
    "cd /tmp && dpkg -i packages-microsoft-prod.deb",
    "apt-get update -y",
)
DOTNET_BACKPORTS_SETUP = (
    "apt-get install -y software-properties-common",
    "add-apt-repository -y ppa:dotnet/backports",
    "apt-get update -y",
)


def _get_template_env() -> jinja2.Environment:
    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(_TEMPLATE_DIR),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["quote"] = shlex.quote
    return env


def _pre_commands(
    descriptor: ToolchainDescriptor, distribution: Distribution, use_backup_version: bool
) -> tuple[str, ...]:
    if descriptor.language != "dotnet" or use_backup_version:
        return ()
    if distribution in (BOOKWORM, JAMMY):
        return MICROSOFT_REPO_SETUP
    if distribution == NOBLE:
        return DOTNET_BACKPORTS_SETUP
    return ()


def render_setup_recipe(
    descriptor: ToolchainDescriptor,
    distribution: Distribution,
    use_backup_version: bool = False,
) -> str:
    root = f"{ROOT_PREFIX}/{descriptor.language}/{descriptor.install_name}"
    # Debian packages install into the root filesystem, not the versioned directory.
    packaged = all(entry.kind == "deb" for entry in descriptor.entries)
    link_base = "" if packaged else root

    def entry_root(entry: InstallEntry) -> str:
        return f"{root}/{entry.subdir}" if entry.subdir else root

    post_install = [
        shlex.join(part.format(install_dir=root, bin_dir="/usr/bin") for part in command)
        for command in descriptor.post_install
    ]
    template = _get_template_env().get_template("toolchain_setup.sh.j2")
    return template.render(
        root=root,
        packaged=packaged,
        entries=descriptor.entries,
        entry_root=entry_root,
        links=[(name, f"{link_base}/{target}") for name, target in descriptor.links],
        post_install=post_install,
        probe=shlex.join(descriptor.probe),
        fetch_packages=descriptor.fetch_packages,
        system_packages=descriptor.system_packages,
        pre_commands=_pre_commands(descriptor, distribution, use_backup_version),
    )


def setup_commands(
    descriptor: ToolchainDescriptor | None,
    distribution: Distribution,
    use_backup_version: bool = False,
) -> list[str]:
    """Returns the recipe as individual shell commands, one per setup step."""
    if descriptor is None:
        return []
    recipe = render_setup_recipe(descriptor, distribution, use_backup_version)
    return [line for line in recipe.splitlines() if line.strip()]
