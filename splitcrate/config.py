from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

try:
    import tomllib  # py311+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # pyright: ignore[reportMissingImports]

CONFIG_FILENAMES: tuple[str, ...] = (".splitcrate.toml", "splitcrate.toml")
PYPROJECT_FILENAME = "pyproject.toml"

DEFAULT_INCLUDES: list[str] = ["**/*"]
DEFAULT_OUTPUT = "splitcrate-output.md"

OUTPUT_STYLES: tuple[str, ...] = ("markdown", "xml", "plain")
STYLE_EXTENSIONS: dict[str, str] = {
    "markdown": ".md",
    "xml": ".xml",
    "plain": ".txt",
}


@dataclass
class Config:
    # Base output path; split parts are derived from it (out.md -> out.1.md).
    output: str = DEFAULT_OUTPUT
    style: Literal["markdown", "xml", "plain"] = "markdown"
    include: list[str] = field(default_factory=lambda: DEFAULT_INCLUDES.copy())
    exclude: list[str] = field(default_factory=list)
    respect_gitignore: bool = True
    directory_structure: bool = True
    file_summary: bool = True
    # Free text placed after the summary of every rendered document.
    header_text: str = ""
    # Per-part budgets for split output; <=0 disables each limit.
    split_output_bytes: int = 0
    split_output_tokens: int = 0
    token_count_encoding: str = "o200k_base"
    # Worker pool size for file IO and token counting. <=0 means auto.
    max_workers: int = 0
    # Git context is only ever rendered into the first part of a split output.
    include_diffs: bool = False
    include_logs: bool = False
    logs_count: int = 50
    # - "replace": replace invalid UTF-8 bytes (default)
    # - "strict": fail on invalid UTF-8 bytes
    encoding_errors: Literal["replace", "strict"] = "replace"


def _find_config_path(root: Path) -> Path | None:
    root = root.resolve()
    for name in CONFIG_FILENAMES:
        p = root / name
        if p.exists():
            return p
    pyproject = root / PYPROJECT_FILENAME
    if pyproject.exists():
        return pyproject
    return None


def _extract_section(data: Any, *, from_pyproject: bool) -> dict[str, Any]:
    section: dict[str, Any] = {}
    if not isinstance(data, dict):
        return section

    if not from_pyproject:
        sc = data.get("splitcrate")
        if isinstance(sc, dict):
            return sc

    tool = data.get("tool")
    if isinstance(tool, dict):
        sc2 = tool.get("splitcrate")
        if isinstance(sc2, dict):
            return sc2

    return section


def _int_or(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def load_config(root: Path) -> Config:
    cfg_path = _find_config_path(root)
    if cfg_path is None:
        return Config()

    data = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    section = _extract_section(data, from_pyproject=cfg_path.name == PYPROJECT_FILENAME)
    cfg = Config()

    out = section.get("output", cfg.output)
    if isinstance(out, str) and out.strip():
        cfg.output = out.strip()

    style = section.get("style", cfg.style)
    if isinstance(style, str):
        style = style.strip().lower()
        if style in OUTPUT_STYLES:
            cfg.style = style  # type: ignore[assignment]

    inc = section.get("include")
    if isinstance(inc, list):
        cfg.include = [str(x) for x in inc]
    exc = section.get("exclude")
    if isinstance(exc, list):
        cfg.exclude = [str(x) for x in exc]

    cfg.respect_gitignore = bool(
        section.get("respect_gitignore", cfg.respect_gitignore)
    )
    cfg.directory_structure = bool(
        section.get("directory_structure", cfg.directory_structure)
    )
    cfg.file_summary = bool(section.get("file_summary", cfg.file_summary))

    header = section.get("header_text", cfg.header_text)
    if isinstance(header, str):
        cfg.header_text = header

    cfg.split_output_bytes = _int_or(
        section.get("split_output_bytes"), cfg.split_output_bytes
    )
    cfg.split_output_tokens = _int_or(
        section.get("split_output_tokens"), cfg.split_output_tokens
    )

    enc = section.get("token_count_encoding", cfg.token_count_encoding)
    if isinstance(enc, str) and enc.strip():
        cfg.token_count_encoding = enc.strip()

    cfg.max_workers = _int_or(section.get("max_workers"), cfg.max_workers)

    cfg.include_diffs = bool(section.get("include_diffs", cfg.include_diffs))
    cfg.include_logs = bool(section.get("include_logs", cfg.include_logs))
    cfg.logs_count = _int_or(section.get("logs_count"), cfg.logs_count)

    encoding_errors = section.get("encoding_errors", cfg.encoding_errors)
    if isinstance(encoding_errors, str):
        encoding_errors = encoding_errors.strip().lower()
        if encoding_errors in {"replace", "strict"}:
            cfg.encoding_errors = encoding_errors  # type: ignore[assignment]

    return cfg
