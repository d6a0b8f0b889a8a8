from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ProcessedFile:
    """A file selected for output, with its resolved text."""

    path: str  # relative, POSIX separators
    content: str


@dataclass(frozen=True)
class GitDiffResult:
    work_tree_diff: str = ""
    staged_diff: str = ""


@dataclass(frozen=True)
class GitLogCommit:
    date: str
    message: str
    files: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class GitLogResult:
    commits: tuple[GitLogCommit, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SplitInfo:
    """Position of a rendered document within a split output."""

    part_number: int  # 1-based
    total_parts: int
    total_files: int  # all known files, not only the ones in this part
