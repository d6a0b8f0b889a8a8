from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from .model import GitDiffResult, GitLogCommit, GitLogResult

GIT_TIMEOUT_SECONDS = 30

# Separators that cannot appear in commit metadata.
_RECORD_SEP = "\x1e"
_FIELD_SEP = "\x1f"


def git_available() -> bool:
    return shutil.which("git") is not None


def _run_git(root: Path, args: list[str]) -> str | None:
    """Run git in ``root``; ``None`` when git is missing or the command fails."""
    if not git_available():
        return None
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=root,
            check=False,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def is_git_repository(root: Path) -> bool:
    out = _run_git(root, ["rev-parse", "--is-inside-work-tree"])
    return out is not None and out.strip() == "true"


def get_git_diffs(root: Path) -> GitDiffResult | None:
    if not is_git_repository(root):
        return None
    work_tree = _run_git(root, ["diff", "--no-color"])
    staged = _run_git(root, ["diff", "--no-color", "--cached"])
    if work_tree is None and staged is None:
        return None
    return GitDiffResult(work_tree_diff=work_tree or "", staged_diff=staged or "")


def parse_git_log(raw: str) -> GitLogResult:
    commits: list[GitLogCommit] = []
    for record in raw.split(_RECORD_SEP):
        record = record.strip("\n")
        if not record.strip():
            continue
        header, _, files_block = record.partition("\n")
        date, _, message = header.partition(_FIELD_SEP)
        files = tuple(ln.strip() for ln in files_block.splitlines() if ln.strip())
        commits.append(
            GitLogCommit(date=date.strip(), message=message.strip(), files=files)
        )
    return GitLogResult(commits=tuple(commits))


def get_git_logs(root: Path, max_commits: int = 50) -> GitLogResult | None:
    if max_commits <= 0 or not is_git_repository(root):
        return None
    raw = _run_git(
        root,
        [
            "log",
            f"--max-count={max_commits}",
            f"--pretty=format:{_RECORD_SEP}%ad{_FIELD_SEP}%s",
            "--date=iso",
            "--name-only",
        ],
    )
    if raw is None:
        return None
    return parse_git_log(raw)
