# Copyright (c) Syntropy Systems
"""Git worktree management for swarm instances."""
from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from quorum.db import init_db
from quorum.errors import GitError
from quorum.swarm.types import WorktreeInfo

if TYPE_CHECKING:
    from quorum.report import Reporter

logger = logging.getLogger(__name__)

SWARM_MARKER = "-swarm-"


def git(args: list[str], cwd: Path) -> str:
    """Run a git command and return its stdout.

    Raises:
        GitError: git is missing or exited non-zero.

    """
    try:
        proc = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        msg = f"Could not run git: {e}"
        raise GitError(msg) from e
    if proc.returncode != 0:
        msg = f"git {' '.join(args)} failed: {proc.stderr.strip()}"
        raise GitError(msg)
    return proc.stdout


def slugify(text: str, max_length: int = 40) -> str:
    """Turn a hypothesis into a short lowercase slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or "experiment"


def is_clean(root: Path) -> bool:
    """Whether the working tree has no uncommitted changes."""
    return git(["status", "--porcelain"], root).strip() == ""


def create_worktree(main_root: Path, slug: str, padded_num: str, hypothesis: str = "") -> WorktreeInfo:
    """Create a sibling worktree on a fresh ``swarm/<num>-<slug>`` branch."""
    worktree_path = main_root.parent / f"{main_root.name}{SWARM_MARKER}{padded_num}-{slug}"
    branch = f"swarm/{padded_num}-{slug}"
    _ = git(["worktree", "add", str(worktree_path), "-b", branch], main_root)
    return WorktreeInfo(
        path=worktree_path,
        padded_num=padded_num,
        branch=branch,
        slug=slug,
        hypothesis=hypothesis,
    )


def initialize_worktree(main_root: Path, worktree_path: Path) -> None:
    """Copy config, synthesis docs and the experiment template; create an empty store."""
    quorum_dir = worktree_path / ".quorum"
    quorum_dir.mkdir(parents=True, exist_ok=True)

    config_src = main_root / ".quorum" / "config.yaml"
    if config_src.exists():
        _ = shutil.copyfile(config_src, quorum_dir / "config.yaml")

    synthesis_src = main_root / "docs" / "synthesis"
    if synthesis_src.is_dir():
        synthesis_dst = worktree_path / "docs" / "synthesis"
        synthesis_dst.mkdir(parents=True, exist_ok=True)
        for f in synthesis_src.iterdir():
            if f.is_file():
                _ = shutil.copyfile(f, synthesis_dst / f.name)

    template_src = main_root / "docs" / "experiments" / "_TEMPLATE.md"
    if template_src.exists():
        experiments_dst = worktree_path / "docs" / "experiments"
        experiments_dst.mkdir(parents=True, exist_ok=True)
        _ = shutil.copyfile(template_src, experiments_dst / "_TEMPLATE.md")

    init_db(quorum_dir / "quorum.db")


def cleanup_worktree(main_root: Path, wt: WorktreeInfo, reporter: Optional[Reporter] = None) -> None:
    """Remove a worktree and its branch. Failures are reported, not raised."""
    try:
        _ = git(["worktree", "remove", str(wt.path), "--force"], main_root)
    except GitError as e:
        logger.warning("Could not remove worktree %s: %s", wt.path, e)
        if reporter is not None:
            reporter.warn(f"Could not remove worktree {wt.path}; remove it manually.")

    try:
        _ = git(["branch", "-D", wt.branch], main_root)
    except GitError as e:
        logger.debug("Branch %s not deleted: %s", wt.branch, e)

    try:
        _ = git(["worktree", "prune"], main_root)
    except GitError as e:
        logger.debug("git worktree prune failed: %s", e)


def cleanup_orphaned_worktrees(main_root: Path) -> list[Path]:
    """Remove swarm worktrees left behind by crashed runs."""
    try:
        listing = git(["worktree", "list", "--porcelain"], main_root)
    except GitError as e:
        logger.warning("Could not list worktrees: %s", e)
        return []

    orphaned = [
        Path(line[len("worktree "):])
        for line in listing.splitlines()
        if line.startswith("worktree ") and SWARM_MARKER in line
    ]
    removed: list[Path] = []
    for path in orphaned:
        try:
            _ = git(["worktree", "remove", str(path), "--force"], main_root)
            removed.append(path)
        except GitError as e:
            logger.warning("Could not remove orphaned worktree %s: %s", path, e)
    if orphaned:
        try:
            _ = git(["worktree", "prune"], main_root)
        except GitError as e:
            logger.debug("git worktree prune failed: %s", e)
    return removed


def merge_branch(main_root: Path, branch: str, message: str) -> None:
    """Merge a swarm branch into the current branch with a merge commit."""
    _ = git(["merge", branch, "--no-ff", "-m", message], main_root)
