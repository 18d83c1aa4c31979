"""Git queries used for per-task change statistics."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable


def _git(
    *args: str,
    cwd: Path | None = None,
    check: bool = False,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a git command, suppressing stderr noise."""
    try:
        return subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            cwd=cwd,
            check=check,
            env=env,
        )
    except FileNotFoundError:
        return subprocess.CompletedProcess(["git", *args], 127, "", "git not found")


@dataclass
class DiffStats:
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0


_SHORTSTAT_RE = {
    "files_changed": re.compile(r"(\d+) files? changed"),
    "lines_added": re.compile(r"(\d+) insertions?\(\+\)"),
    "lines_removed": re.compile(r"(\d+) deletions?\(-\)"),
}


def parse_shortstat(text: str) -> DiffStats:
    """Parse ``git diff --shortstat`` output (any part may be absent)."""
    stats = DiffStats()
    for attr, pattern in _SHORTSTAT_RE.items():
        m = pattern.search(text)
        if m:
            setattr(stats, attr, int(m.group(1)))
    return stats


def snapshot_tree(cwd: Path | None = None) -> str:
    """Tree id of the working tree as it is now, untracked files included.

    The tree is built in a scratch copy of the index, so the user's staging
    area is left alone. Ignored files stay out. ``""`` outside a repo.
    """
    r = _git("rev-parse", "--git-path", "index", cwd=cwd)
    if r.returncode != 0:
        return ""
    real_index = (cwd or Path.cwd()) / r.stdout.strip()

    with tempfile.TemporaryDirectory(prefix="taskloop-index-") as tmp:
        index = Path(tmp) / "index"
        if real_index.is_file():
            shutil.copyfile(real_index, index)
        env = {**os.environ, "GIT_INDEX_FILE": str(index)}
        if _git("add", "-A", cwd=cwd, env=env).returncode != 0:
            return ""
        r = _git("write-tree", cwd=cwd, env=env)
    return r.stdout.strip() if r.returncode == 0 else ""


def diff_stats(
    before: str,
    after: str,
    cwd: Path | None = None,
    exclude: Iterable[str] = (),
) -> DiffStats:
    """Changes between two snapshots (trees or commits), skipping *exclude* paths."""
    if not before or not after:
        return DiffStats()
    args = ["diff", "--shortstat", before, after]
    pathspec = [f":(exclude){p}" for p in exclude]
    if pathspec:
        args += ["--", ":/", *pathspec]
    r = _git(*args, cwd=cwd)
    if r.returncode != 0:
        return DiffStats()
    return parse_shortstat(r.stdout)
