"""Directory mounts that make shared state visible inside a task worktree.

POSIX uses directory symlinks; Windows uses NTFS junctions (``mklink /J``), which
need no elevated privileges. Removing a mount only drops the link itself.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class JunctionError(OSError):
    """Raised when a mount cannot be created."""


def is_junction(path: Path) -> bool:
    if path.is_symlink():
        return True
    checker = getattr(path, "is_junction", None)
    return bool(checker()) if checker is not None else False


def create_junction(link: Path, target: Path) -> None:
    """Mount ``target`` at ``link``, replacing any placeholder content at ``link``."""

    target.mkdir(parents=True, exist_ok=True)
    if is_junction(link):
        if _same_path(link, target):
            return
        remove_junction(link)
    elif link.is_dir():
        # Tracked placeholder files (e.g. .gitkeep) would shadow the shared directory.
        shutil.rmtree(link)
    elif link.exists():
        link.unlink()

    link.parent.mkdir(parents=True, exist_ok=True)
    if os.name == "nt":
        completed = subprocess.run(
            ["cmd", "/c", "mklink", "/J", str(link), str(target)],
            capture_output=True,
            text=True,
            check=False,
        )
        if completed.returncode != 0:
            raise JunctionError(
                f"mklink /J {link} {target} failed: "
                f"{(completed.stderr or completed.stdout).strip()}",
            )
    else:
        os.symlink(target, link, target_is_directory=True)
    logger.debug("Mounted %s -> %s", link, target)


def remove_junction(link: Path) -> bool:
    """Remove a mount without recursing into its target."""

    if link.is_symlink():
        link.unlink()
        return True
    if is_junction(link):
        os.rmdir(link)
        return True
    return False


def _same_path(link: Path, target: Path) -> bool:
    try:
        return link.resolve() == target.resolve()
    except OSError:
        return False
