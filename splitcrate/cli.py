from __future__ import annotations

import argparse
import importlib.metadata as importlib_metadata
import re
import sys
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TypeVar

try:
    import tomllib  # py311+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # pyright: ignore[reportMissingImports]

from .config import (
    CONFIG_FILENAMES,
    OUTPUT_STYLES,
    PYPROJECT_FILENAME,
    STYLE_EXTENSIONS,
    Config,
    load_config,
)
from .discover import IGNORE_FILENAME, discover_files
from .gitinfo import get_git_diffs, get_git_logs, git_available, is_git_repository
from .model import ProcessedFile
from .output_split import OutputSplitPart, generate_split_output_parts
from .render import generate_output
from .tokens import TokenCounter, resolve_worker_count

_SIZE_RE = re.compile(r"^\s*(\d+)\s*(b|kb|mb|gb)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"b": 1, "kb": 1024, "mb": 1024**2, "gb": 1024**3}

T = TypeVar("T")


def _splitcrate_version() -> str:
    try:
        return importlib_metadata.version("splitcrate")
    except importlib_metadata.PackageNotFoundError:
        return "0+unknown"


def parse_size(value: str) -> int:
    """Parse ``500``, ``500kb`` or ``2MB`` into a byte count (1 KB = 1024 B)."""
    m = _SIZE_RE.match(value)
    if not m:
        raise argparse.ArgumentTypeError(
            f"invalid size {value!r} (expected e.g. 500000, 500kb, 2mb)"
        )
    unit = (m.group(2) or "b").lower()
    return int(m.group(1)) * _SIZE_UNITS[unit]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="splitcrate",
        description=(
            "Pack a repository into one document, or into parts that fit a "
            "byte or token budget."
        ),
    )
    p.add_argument(
        "--version",
        action="version",
        version=f"splitcrate {_splitcrate_version()}",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    pack = sub.add_parser("pack", help="Pack one or more directories.")
    pack.add_argument(
        "root",
        type=Path,
        nargs="+",
        help="Root directory to scan (repeat to pack several roots together)",
    )
    pack.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Output path; split parts insert the part number before the suffix",
    )
    pack.add_argument(
        "--style",
        choices=list(OUTPUT_STYLES),
        default=None,
        help="Output style (default: markdown via config)",
    )
    pack.add_argument(
        "--include",
        action="append",
        default=None,
        help="Include glob (repeatable; default: everything)",
    )
    pack.add_argument(
        "--exclude",
        action="append",
        default=None,
        help="Exclude glob (repeatable)",
    )
    pack.add_argument(
        "--respect-gitignore",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Respect .gitignore (default: true via config)",
    )
    pack.add_argument(
        "--directory-structure",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Render the directory structure section (default: true via config)",
    )
    pack.add_argument(
        "--file-summary",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Render the file summary and print a pack summary (default: true)",
    )
    pack.add_argument(
        "--header-text",
        default=None,
        help="Text placed after the summary of every output document",
    )
    pack.add_argument(
        "--split-output",
        type=parse_size,
        default=None,
        metavar="SIZE",
        help="Split output into parts of at most SIZE bytes (e.g. 500kb, 2mb)",
    )
    pack.add_argument(
        "--split-output-tokens",
        type=int,
        default=None,
        metavar="N",
        help=(
            "Split output into parts of at most N tokens "
            "(takes precedence over --split-output)"
        ),
    )
    pack.add_argument(
        "--token-count-encoding",
        default=None,
        help="Tokenizer encoding (default: o200k_base via config)",
    )
    pack.add_argument(
        "--include-diffs",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Include git work tree and staged diffs (first part only)",
    )
    pack.add_argument(
        "--include-logs",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Include recent git log entries (first part only)",
    )
    pack.add_argument(
        "--logs-count",
        type=int,
        default=None,
        help="Number of git log entries to include (default: 50 via config)",
    )
    pack.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Worker pool size for reading and token counting (<=0: auto)",
    )
    pack.add_argument(
        "--encoding-errors",
        choices=["replace", "strict"],
        default=None,
        help="UTF-8 decode policy for input files (default: replace via config)",
    )
    pack.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Print progress while splitting",
    )

    doctor = sub.add_parser(
        "doctor", help="Inspect config discovery, ignore files and backends."
    )
    doctor.add_argument("root", type=Path, help="Root directory to inspect")

    return p


def _resolve_output_path(cfg: Config, args: argparse.Namespace, root: Path) -> Path:
    if args.output is not None:
        return Path(args.output)
    out_path = Path(cfg.output)
    if not out_path.is_absolute():
        out_path = root / out_path
    if args.style is not None and out_path.suffix in STYLE_EXTENSIONS.values():
        out_path = out_path.with_suffix(STYLE_EXTENSIONS[args.style])
    return out_path


def _pick(cli_value: T | None, cfg_value: T) -> T:
    return cfg_value if cli_value is None else cli_value


def _resolve_pack_config(cfg: Config, args: argparse.Namespace, root: Path) -> Config:
    return replace(
        cfg,
        output=str(_resolve_output_path(cfg, args, root)),
        style=_pick(args.style, cfg.style),
        include=list(_pick(args.include, cfg.include)),
        exclude=list(_pick(args.exclude, cfg.exclude)),
        respect_gitignore=bool(_pick(args.respect_gitignore, cfg.respect_gitignore)),
        directory_structure=bool(
            _pick(args.directory_structure, cfg.directory_structure)
        ),
        file_summary=bool(_pick(args.file_summary, cfg.file_summary)),
        header_text=str(_pick(args.header_text, cfg.header_text)),
        token_count_encoding=(
            str(_pick(args.token_count_encoding, cfg.token_count_encoding)).strip()
            or "o200k_base"
        ),
        include_diffs=bool(_pick(args.include_diffs, cfg.include_diffs)),
        include_logs=bool(_pick(args.include_logs, cfg.include_logs)),
        logs_count=int(_pick(args.logs_count, cfg.logs_count)),
        max_workers=int(_pick(args.max_workers, cfg.max_workers) or 0),
        encoding_errors=_pick(args.encoding_errors, cfg.encoding_errors),
    )


def _resolve_budget(cli_value: int | None, cfg_value: int) -> int | None:
    # Explicit CLI values are passed through so invalid ones are reported.
    if cli_value is not None:
        return cli_value
    return cfg_value if cfg_value > 0 else None


@dataclass(frozen=True)
class _ReadFile:
    rel: str
    text: str
    is_binary: bool = False


def _is_likely_binary(data: bytes) -> bool:
    if not data:
        return False
    if b"\x00" in data:
        return True

    sample = data[:4096]
    text_whitespace = {9, 10, 13}
    suspicious = 0
    for b in sample:
        if b in text_whitespace or 32 <= b <= 126 or b >= 128:
            continue
        suspicious += 1
    return suspicious / len(sample) > 0.30


def _read_file(path: Path, rel: str, *, encoding_errors: str) -> _ReadFile:
    data = path.read_bytes()
    if _is_likely_binary(data):
        return _ReadFile(rel=rel, text="", is_binary=True)
    try:
        text = data.decode("utf-8", errors=encoding_errors)
    except UnicodeDecodeError as e:
        raise ValueError(
            f"Failed to decode UTF-8 for {rel} (encoding_errors={encoding_errors})"
        ) from e
    return _ReadFile(rel=rel, text=text.replace("\r\n", "\n").replace("\r", "\n"))


def _collect_files(
    roots: Sequence[Path], cfg: Config
) -> tuple[list[ProcessedFile], list[str], list[str]]:
    """Return (processed files, all known paths, skipped binary paths).

    With more than one root, paths are prefixed with the root's directory name so
    every root becomes its own top-level entry.
    """
    jobs: list[tuple[Path, str]] = []
    for root in roots:
        disc = discover_files(
            root=root,
            include=cfg.include,
            exclude=cfg.exclude,
            respect_gitignore=cfg.respect_gitignore,
        )
        prefix = f"{disc.root.name}/" if len(roots) > 1 else ""
        jobs.extend(
            (p, prefix + rel)
            for p, rel in zip(disc.files, disc.relative_paths(), strict=True)
        )

    worker_count = resolve_worker_count(cfg.max_workers, len(jobs))
    if worker_count == 1:
        read = [
            _read_file(p, rel, encoding_errors=cfg.encoding_errors) for p, rel in jobs
        ]
    else:
        with ThreadPoolExecutor(max_workers=worker_count) as pool:
            read = list(
                pool.map(
                    lambda job: _read_file(
                        job[0], job[1], encoding_errors=cfg.encoding_errors
                    ),
                    jobs,
                )
            )

    processed = [
        ProcessedFile(path=r.rel, content=r.text) for r in read if not r.is_binary
    ]
    all_paths = [r.rel for r in read]
    binary = [r.rel for r in read if r.is_binary]
    return processed, all_paths, binary


def _emit_binary_skip_warning(skipped: list[str]) -> None:
    if not skipped:
        return
    preview = ", ".join(skipped[:5])
    suffix = "" if len(skipped) <= 5 else ", ..."
    print(
        f"Warning: skipped {len(skipped)} likely-binary file(s): {preview}{suffix}",
        file=sys.stderr,
    )


def _display_path(path: Path) -> str:
    try:
        return path.resolve().relative_to(Path.cwd().resolve()).as_posix()
    except ValueError:
        return path.as_posix()


def _print_pack_summary(
    *, out_path: Path, content: str, total_files: int, encoding: str
) -> None:
    try:
        total_tokens = f"{TokenCounter(encoding).count(content):,}"
    except Exception:
        total_tokens = "n/a"

    print("", file=sys.stderr)
    print("Pack Summary:", file=sys.stderr)
    print("─────────────", file=sys.stderr)
    print(f"{'Total Files':>12}: {total_files:,} files", file=sys.stderr)
    print(f"{'Total Tokens':>12}: {total_tokens} tokens", file=sys.stderr)
    print(f"{'Total Chars':>12}: {len(content):,} chars", file=sys.stderr)
    print(f"{'Output':>12}: {_display_path(out_path)}", file=sys.stderr)


def _print_split_summary(
    *, parts: Sequence[OutputSplitPart], total_files: int, mode: str
) -> None:
    print("", file=sys.stderr)
    print("Split Summary:", file=sys.stderr)
    print("──────────────", file=sys.stderr)
    print(f"{'Split Mode':>12}: {mode}", file=sys.stderr)
    print(f"{'Total Parts':>12}: {len(parts):,}", file=sys.stderr)
    print(f"{'Total Files':>12}: {total_files:,} files", file=sys.stderr)
    for part in parts:
        detail = f"{len(part.files):,} files, {part.byte_length:,} bytes"
        if part.token_count:
            detail += f", {part.token_count:,} tokens"
        label = f"Part {part.index}"
        print(
            f"{label:>12}: {_display_path(part.file_path)} ({detail})",
            file=sys.stderr,
        )


def _print_progress(message: str) -> None:
    print(message, file=sys.stderr)


def _run_pack(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    roots = [r.resolve() for r in args.root]
    for root in roots:
        if not root.is_dir():
            parser.error(f"pack: root is not a directory: {root}")
    if len({r.name for r in roots}) != len(roots):
        parser.error("pack: roots must have distinct directory names")

    cfg = _resolve_pack_config(load_config(roots[0]), args, roots[0])
    max_bytes = _resolve_budget(args.split_output, cfg.split_output_bytes)
    max_tokens = _resolve_budget(args.split_output_tokens, cfg.split_output_tokens)

    try:
        processed, all_paths, binary = _collect_files(roots, cfg)
    except ValueError as e:
        parser.error(f"pack: {e}")
    _emit_binary_skip_warning(binary)

    git_root = roots[0]
    diffs = get_git_diffs(git_root) if cfg.include_diffs else None
    logs = get_git_logs(git_root, cfg.logs_count) if cfg.include_logs else None

    out_path = Path(cfg.output)

    if max_bytes is None and max_tokens is None:
        content = generate_output(roots, cfg, processed, all_paths, diffs, logs)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(content, encoding="utf-8")
        if cfg.file_summary:
            _print_pack_summary(
                out_path=out_path,
                content=content,
                total_files=len(processed),
                encoding=cfg.token_count_encoding,
            )
        print(f"Wrote {out_path}.")
        return

    try:
        parts = generate_split_output_parts(
            root_dirs=roots,
            base_config=cfg,
            processed_files=processed,
            all_file_paths=all_paths,
            max_bytes_per_part=max_bytes,
            max_tokens_per_part=max_tokens,
            git_diff_result=diffs,
            git_log_result=logs,
            progress_callback=_print_progress if args.verbose else None,
        )
    except ValueError as e:
        raise SystemExit(f"pack: {e}") from e

    for part in parts:
        part.file_path.parent.mkdir(parents=True, exist_ok=True)
        part.file_path.write_text(part.content, encoding="utf-8")

    if cfg.file_summary:
        _print_split_summary(
            parts=parts,
            total_files=len(processed),
            mode="tokens" if max_tokens is not None else "bytes",
        )
    print(f"Wrote {len(parts)} split part file(s).")


def _doctor_find_selected_config(root: Path) -> Path | None:
    for name in CONFIG_FILENAMES:
        p = root / name
        if p.exists():
            return p
    pyproject = root / PYPROJECT_FILENAME
    if pyproject.exists():
        return pyproject
    return None


def _doctor_config_state(path: Path, *, pyproject: bool) -> str:
    if not path.exists():
        return "missing"
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as e:
        return f"present (parse error: {type(e).__name__})"

    tool = data.get("tool")
    in_tool = isinstance(tool, dict) and isinstance(tool.get("splitcrate"), dict)
    if pyproject:
        section_found = in_tool
    else:
        section_found = isinstance(data.get("splitcrate"), dict) or in_tool

    return "present (section found)" if section_found else "present (section missing)"


def _run_doctor(root: Path) -> None:
    root = root.resolve()
    selected = _doctor_find_selected_config(root)

    print("Splitcrate Doctor")
    print(f"Root: {root.as_posix()}")
    print()

    print("Config discovery:")
    print(
        "- precedence: .splitcrate.toml > splitcrate.toml > "
        "pyproject.toml[tool.splitcrate]"
    )
    for name in CONFIG_FILENAMES:
        print(f"- {name}: {_doctor_config_state(root / name, pyproject=False)}")
    pyproject = root / PYPROJECT_FILENAME
    print(f"- {PYPROJECT_FILENAME}: {_doctor_config_state(pyproject, pyproject=True)}")
    if selected is None:
        print("- selected: none (defaults only)")
    else:
        print(f"- selected: {selected.relative_to(root).as_posix()}")

    cfg = load_config(root)
    print()
    print("Split budgets:")
    print(f"- split_output_bytes: {cfg.split_output_bytes or 'off'}")
    print(f"- split_output_tokens: {cfg.split_output_tokens or 'off'}")

    print()
    print("Ignore files:")
    print(f"- .gitignore: {'yes' if (root / '.gitignore').exists() else 'no'}")
    print(
        f"- {IGNORE_FILENAME}: {'yes' if (root / IGNORE_FILENAME).exists() else 'no'}"
    )

    print()
    print("Token backend:")
    token_counter = TokenCounter(cfg.token_count_encoding)
    print(f"- backend: {token_counter.backend}")
    try:
        token_counter.count("def _doctor_probe():\n    return 1\n")
        print(f"- encoding {cfg.token_count_encoding}: ok")
    except Exception as e:
        print(f"- encoding {cfg.token_count_encoding}: error ({type(e).__name__})")

    print()
    print("Git:")
    print(f"- git executable: {'found' if git_available() else 'missing'}")
    print(f"- repository: {'yes' if is_git_repository(root) else 'no'}")


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    raw_argv = list(sys.argv[1:] if argv is None else argv)
    if not raw_argv:
        parser.print_help()
        return

    args = parser.parse_args(raw_argv)

    if args.cmd == "pack":
        _run_pack(parser, args)

    elif args.cmd == "doctor":
        if not args.root.exists() or not args.root.is_dir():
            parser.error(f"doctor: root is not a directory: {args.root}")
        _run_doctor(args.root)


if __name__ == "__main__":
    main()
