from __future__ import annotations

import re
from collections.abc import Sequence
from pathlib import Path, PurePosixPath
from xml.sax.saxutils import escape, quoteattr

from .config import Config
from .model import GitDiffResult, GitLogResult, ProcessedFile, SplitInfo

_BACKTICK_RUN_RE = re.compile(r"`+")

_LANGUAGE_BY_SUFFIX: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".jsx": "jsx",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".kt": "kotlin",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".sh": "bash",
    ".md": "markdown",
    ".rst": "rst",
    ".toml": "toml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".html": "html",
    ".css": "css",
    ".sql": "sql",
    ".xml": "xml",
}

_PLAIN_RULE = "=" * 64
_PLAIN_SUBRULE = "-" * 64


def _ensure_nl(s: str) -> str:
    return s if (not s or s.endswith("\n")) else (s + "\n")


def choose_backtick_fence(text: str, *, min_len: int = 3) -> str:
    longest = max(
        (len(m.group(0)) for m in _BACKTICK_RUN_RE.finditer(text)), default=0
    )
    return "`" * max(min_len, longest + 1)


def language_for(path: str) -> str:
    return _LANGUAGE_BY_SUFFIX.get(PurePosixPath(path).suffix.lower(), "")


def render_tree(paths: Sequence[str]) -> str:
    root: dict[str, object] = {}
    for p in paths:
        cur = root
        parts = [x for x in p.replace("\\", "/").split("/") if x]
        if not parts:
            continue
        for part in parts[:-1]:
            nxt = cur.setdefault(part, {})
            if not isinstance(nxt, dict):
                # A file and a directory share a name; keep the directory.
                nxt = {}
                cur[part] = nxt
            cur = nxt
        cur.setdefault(parts[-1], None)

    def walk(node: dict[str, object], prefix: str = "") -> list[str]:
        items = sorted(node.items(), key=lambda kv: (kv[1] is None, kv[0].lower()))
        out: list[str] = []
        for i, (name, child) in enumerate(items):
            last = i == len(items) - 1
            branch = "└─ " if last else "├─ "
            suffix = "/" if isinstance(child, dict) else ""
            out.append(prefix + branch + name + suffix)
            if isinstance(child, dict):
                ext = "   " if last else "│  "
                out.extend(walk(child, prefix + ext))
        return out

    return "\n".join(walk(root))


def generate_header(
    split_info: SplitInfo | None = None, part_file_count: int | None = None
) -> str:
    if split_info is None:
        return (
            "This file is a merged representation of the entire codebase, "
            "combined into a single document by splitcrate."
        )
    count = 0 if part_file_count is None else part_file_count
    return (
        f"This file is part {split_info.part_number} of "
        f"{split_info.total_parts} of a split representation of the entire "
        "codebase."
        f"\nThis file contains {count} out of a total of {split_info.total_files} "
        "files."
    )


def generate_summary_purpose(
    split_info: SplitInfo | None = None, part_file_count: int | None = None
) -> str:
    if split_info is None:
        return (
            "This file contains a packed representation of the entire "
            "repository's contents. It is designed to be easily consumable by AI "
            "systems for analysis, code review, or other automated processes."
        )
    count = 0 if part_file_count is None else part_file_count
    return (
        "This file contains a packed representation of part "
        f"{split_info.part_number} of {split_info.total_parts} of the entire "
        f"repository's contents ({count}/{split_info.total_files} files). "
        "The directory structure lists every file, including the ones "
        "stored in other parts."
    )


def _summary_notes(config: Config) -> list[str]:
    notes = [
        "Files matching patterns in .gitignore are excluded"
        if config.respect_gitignore
        else "Files in .gitignore are not excluded",
        "Files matching .splitcrateignore patterns are excluded",
        "Binary files are not included in this packed representation",
    ]
    if config.include_diffs:
        notes.append("Git diffs are included in the first part only")
    if config.include_logs:
        notes.append("Git logs are included in the first part only")
    return notes


def _shown_diffs(config: Config, diffs: GitDiffResult | None) -> GitDiffResult | None:
    if not config.include_diffs or diffs is None:
        return None
    if not (diffs.work_tree_diff.strip() or diffs.staged_diff.strip()):
        return None
    return diffs


def _shown_logs(config: Config, logs: GitLogResult | None) -> GitLogResult | None:
    if not config.include_logs or logs is None or not logs.commits:
        return None
    return logs


def _render_markdown(
    root_dirs: Sequence[Path],
    config: Config,
    files: Sequence[ProcessedFile],
    all_file_paths: Sequence[str],
    diffs: GitDiffResult | None,
    logs: GitLogResult | None,
    split_info: SplitInfo | None,
) -> str:
    lines: list[str] = []
    lines.append("# splitcrate pack\n\n")
    lines.append(generate_header(split_info, len(files)) + "\n\n")
    for root in root_dirs:
        lines.append(f"Root: `{Path(root).as_posix()}`\n")
    if root_dirs:
        lines.append("\n")

    if config.file_summary:
        lines.append("## File Summary\n\n")
        lines.append("### Purpose\n\n")
        lines.append(generate_summary_purpose(split_info, len(files)) + "\n\n")
        lines.append("### Notes\n\n")
        for note in _summary_notes(config):
            lines.append(f"- {note}\n")
        lines.append("\n")

    if config.header_text.strip():
        lines.append("## User Provided Header\n\n")
        lines.append(_ensure_nl(config.header_text.strip()) + "\n")

    if config.directory_structure:
        lines.append("## Directory Structure\n\n")
        lines.append("```text\n")
        lines.append(_ensure_nl(render_tree(all_file_paths)))
        lines.append("```\n\n")

    lines.append("## Files\n\n")
    for f in files:
        fence = choose_backtick_fence(f.content)
        lines.append(f"### File: `{f.path}`\n\n")
        lines.append(f"{fence}{language_for(f.path)}\n")
        lines.append(_ensure_nl(f.content))
        lines.append(f"{fence}\n\n")

    diffs = _shown_diffs(config, diffs)
    if diffs is not None:
        lines.append("## Git Diffs\n\n")
        for title, body in (
            ("Work tree", diffs.work_tree_diff),
            ("Staged", diffs.staged_diff),
        ):
            if not body.strip():
                continue
            fence = choose_backtick_fence(body)
            lines.append(f"### {title}\n\n")
            lines.append(f"{fence}diff\n")
            lines.append(_ensure_nl(body))
            lines.append(f"{fence}\n\n")

    logs = _shown_logs(config, logs)
    if logs is not None:
        lines.append("## Git Logs\n\n")
        for commit in logs.commits:
            lines.append(f"### {commit.date}: {commit.message}\n\n")
            for path in commit.files:
                lines.append(f"- `{path}`\n")
            lines.append("\n")

    return "".join(lines).rstrip() + "\n"


def _render_xml(
    root_dirs: Sequence[Path],
    config: Config,
    files: Sequence[ProcessedFile],
    all_file_paths: Sequence[str],
    diffs: GitDiffResult | None,
    logs: GitLogResult | None,
    split_info: SplitInfo | None,
) -> str:
    lines: list[str] = []
    lines.append(generate_header(split_info, len(files)) + "\n\n")

    if config.file_summary:
        lines.append("<file_summary>\n")
        lines.append("<purpose>\n")
        lines.append(generate_summary_purpose(split_info, len(files)) + "\n")
        lines.append("</purpose>\n")
        lines.append("<notes>\n")
        for note in _summary_notes(config):
            lines.append(f"- {note}\n")
        lines.append("</notes>\n")
        lines.append("</file_summary>\n\n")

    if config.header_text.strip():
        lines.append("<user_provided_header>\n")
        lines.append(_ensure_nl(config.header_text.strip()))
        lines.append("</user_provided_header>\n\n")

    if config.directory_structure:
        lines.append("<directory_structure>\n")
        lines.append(_ensure_nl(render_tree(all_file_paths)))
        lines.append("</directory_structure>\n\n")

    lines.append("<files>\n")
    for f in files:
        lines.append(f"<file path={quoteattr(f.path)}>\n")
        lines.append(_ensure_nl(f.content))
        lines.append("</file>\n\n")
    lines.append("</files>\n")

    diffs = _shown_diffs(config, diffs)
    if diffs is not None:
        lines.append("\n<git_diffs>\n")
        lines.append("<git_diff_work_tree>\n")
        lines.append(_ensure_nl(diffs.work_tree_diff))
        lines.append("</git_diff_work_tree>\n")
        lines.append("<git_diff_staged>\n")
        lines.append(_ensure_nl(diffs.staged_diff))
        lines.append("</git_diff_staged>\n")
        lines.append("</git_diffs>\n")

    logs = _shown_logs(config, logs)
    if logs is not None:
        lines.append("\n<git_logs>\n")
        for commit in logs.commits:
            lines.append("<git_log_commit>\n")
            lines.append(f"<date>{escape(commit.date)}</date>\n")
            lines.append(f"<message>{escape(commit.message)}</message>\n")
            lines.append("<files>\n")
            for path in commit.files:
                lines.append(f"{escape(path)}\n")
            lines.append("</files>\n")
            lines.append("</git_log_commit>\n")
        lines.append("</git_logs>\n")

    return "".join(lines).rstrip() + "\n"


def _render_plain(
    root_dirs: Sequence[Path],
    config: Config,
    files: Sequence[ProcessedFile],
    all_file_paths: Sequence[str],
    diffs: GitDiffResult | None,
    logs: GitLogResult | None,
    split_info: SplitInfo | None,
) -> str:
    lines: list[str] = []
    lines.append(generate_header(split_info, len(files)) + "\n\n")

    def section(title: str) -> None:
        lines.append(f"{_PLAIN_RULE}\n{title}\n{_PLAIN_RULE}\n")

    if config.file_summary:
        section("File Summary")
        lines.append(generate_summary_purpose(split_info, len(files)) + "\n\n")
        for note in _summary_notes(config):
            lines.append(f"- {note}\n")
        lines.append("\n")

    if config.header_text.strip():
        section("User Provided Header")
        lines.append(_ensure_nl(config.header_text.strip()) + "\n")

    if config.directory_structure:
        section("Directory Structure")
        lines.append(_ensure_nl(render_tree(all_file_paths)) + "\n")

    section("Files")
    for f in files:
        lines.append(f"{_PLAIN_SUBRULE}\nFile: {f.path}\n{_PLAIN_SUBRULE}\n")
        lines.append(_ensure_nl(f.content) + "\n")

    diffs = _shown_diffs(config, diffs)
    if diffs is not None:
        section("Git Diffs")
        lines.append(_ensure_nl(diffs.work_tree_diff))
        lines.append(_ensure_nl(diffs.staged_diff) + "\n")

    logs = _shown_logs(config, logs)
    if logs is not None:
        section("Git Logs")
        for commit in logs.commits:
            lines.append(f"{commit.date}: {commit.message}\n")
            for path in commit.files:
                lines.append(f"  {path}\n")
        lines.append("\n")

    return "".join(lines).rstrip() + "\n"


_RENDERERS = {
    "markdown": _render_markdown,
    "xml": _render_xml,
    "plain": _render_plain,
}


def generate_output(
    root_dirs: Sequence[Path],
    config: Config,
    processed_files: Sequence[ProcessedFile],
    all_file_paths: Sequence[str],
    git_diff_result: GitDiffResult | None = None,
    git_log_result: GitLogResult | None = None,
    split_info: SplitInfo | None = None,
) -> str:
    """Render ``processed_files`` into one document in ``config.style``.

    The directory structure always lists ``all_file_paths``, so every part of a
    split output shows the whole tree. Git sections are rendered only when the
    matching ``include_*`` flag is set and data was supplied.
    """
    renderer = _RENDERERS.get(config.style)
    if renderer is None:
        raise ValueError(f"Unknown output style: {config.style!r}")
    return renderer(
        root_dirs,
        config,
        processed_files,
        all_file_paths,
        git_diff_result,
        git_log_result,
        split_info,
    )
