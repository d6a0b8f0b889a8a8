from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pathspec

IGNORE_FILENAME = ".splitcrateignore"

DEFAULT_EXCLUDES = [
    "**/.git/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/node_modules/**",
    "**/.venv/**",
    "**/venv/**",
    "**/.tox/**",
    "**/.pytest_cache/**",
    "**/.mypy_cache/**",
    "**/dist/**",
    "**/build/**",
]


@dataclass(frozen=True)
class Discovery:
    files: list[Path]
    root: Path

    def relative_paths(self) -> list[str]:
        return [p.relative_to(self.root).as_posix() for p in self.files]


def _load_ignore_lines(root: Path, filename: str) -> list[str]:
    p = root / filename
    if not p.exists():
        return []
    return p.read_text(encoding="utf-8", errors="replace").splitlines()


def _load_combined_ignore(root: Path, *, respect_gitignore: bool) -> pathspec.PathSpec:
    # Later lines win, so the tool-specific ignore file can re-include paths.
    lines: list[str] = []
    if respect_gitignore:
        lines.extend(_load_ignore_lines(root, ".gitignore"))
    lines.extend(_load_ignore_lines(root, IGNORE_FILENAME))
    return pathspec.PathSpec.from_lines("gitwildmatch", lines)


def _is_confined_to_root(path: Path, root: Path) -> bool:
    try:
        resolved = path.resolve()
    except OSError:
        return False
    try:
        resolved.relative_to(root)
    except ValueError:
        return False
    return True


def discover_files(
    root: Path,
    include: list[str] | None,
    exclude: list[str] | None,
    respect_gitignore: bool = True,
) -> Discovery:
    """Discover files under ``root`` matching include/exclude patterns.

    ``.splitcrateignore`` in ``root`` is always honoured; ``.gitignore`` only when
    ``respect_gitignore`` is set. Symlinks resolving outside the root are dropped.
    """
    root = root.resolve()

    ignore = _load_combined_ignore(root, respect_gitignore=respect_gitignore)
    inc = pathspec.PathSpec.from_lines("gitwildmatch", include or ["**/*"])
    exc = pathspec.PathSpec.from_lines(
        "gitwildmatch", DEFAULT_EXCLUDES + (exclude or [])
    )

    out: list[Path] = []
    for p in root.rglob("*"):
        if not p.is_file():
            continue
        if not _is_confined_to_root(p, root):
            continue
        rel_s = p.relative_to(root).as_posix()

        if ignore.match_file(rel_s):
            continue
        if not inc.match_file(rel_s):
            continue
        if exc.match_file(rel_s):
            continue

        out.append(p)

    out.sort(key=lambda p: p.relative_to(root).as_posix())
    return Discovery(files=out, root=root)
