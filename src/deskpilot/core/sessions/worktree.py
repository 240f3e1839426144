from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

GIT_TIMEOUT_SEC = 5.0


@dataclass(slots=True)
class WorktreeInfo:
    branch: str | None
    is_worktree: bool


def _git(path: Path, *args: str) -> str | None:
    try:
        proc = subprocess.run(
            ["git", "-C", str(path), *args],
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SEC,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip()


def detect_worktree_info(path: str | Path) -> WorktreeInfo | None:
    """Branch name and linked-worktree flag for ``path``.

    ``None`` outside a git repository or when git cannot be run. A detached
    HEAD reports no branch.
    """
    directory = Path(path).expanduser()
    if not directory.is_dir():
        return None
    git_dir = _git(directory, "rev-parse", "--absolute-git-dir")
    if git_dir is None:
        return None
    common_dir = _git(directory, "rev-parse", "--path-format=absolute", "--git-common-dir")
    branch = _git(directory, "rev-parse", "--abbrev-ref", "HEAD")
    if branch == "HEAD":
        branch = None
    is_worktree = common_dir is not None and Path(git_dir).resolve() != Path(common_dir).resolve()
    return WorktreeInfo(branch=branch or None, is_worktree=is_worktree)
