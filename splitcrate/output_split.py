from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

from .config import Config
from .model import GitDiffResult, GitLogResult, ProcessedFile, SplitInfo
from .render import generate_output as render_output
from .tokens import TokenCountTask, TokenTaskRunner, calculate_output_tokens

MAX_SAFE_INTEGER = 2**53 - 1
# Estimated tokens spent on the markup wrapped around each file.
TOKEN_OVERHEAD_PER_FILE = 20

GenerateOutputFn = Callable[..., str]
ProgressCallback = Callable[[str], None]
# Called with (max_workers, number of files to estimate).
TaskRunnerFactory = Callable[[int, int], TokenTaskRunner]


class OutputSplitError(ValueError):
    pass


@dataclass(frozen=True)
class OutputSplitGroup:
    root_entry: str
    processed_files: tuple[ProcessedFile, ...]
    all_file_paths: tuple[str, ...]


@dataclass(frozen=True)
class OutputSplitPart:
    index: int  # 1-based
    file_path: Path
    content: str
    byte_length: int
    token_count: int = 0  # not computed in byte mode
    files: tuple[ProcessedFile, ...] = ()
    groups: tuple[OutputSplitGroup, ...] | None = None


def get_root_entry(relative_file_path: str) -> str:
    normalized = relative_file_path.replace("\\", "/")
    first = normalized.split("/", 1)[0]
    return first or normalized


def build_output_split_groups(
    processed_files: Sequence[ProcessedFile], all_file_paths: Sequence[str]
) -> list[OutputSplitGroup]:
    paths_by_root: dict[str, list[str]] = {}
    files_by_root: dict[str, list[ProcessedFile]] = {}
    known: set[str] = set()

    for file_path in all_file_paths:
        paths_by_root.setdefault(get_root_entry(file_path), []).append(file_path)
        known.add(file_path)

    for pf in processed_files:
        root_entry = get_root_entry(pf.path)
        files_by_root.setdefault(root_entry, []).append(pf)
        if pf.path not in known:
            paths_by_root.setdefault(root_entry, []).append(pf.path)
            known.add(pf.path)

    return [
        OutputSplitGroup(
            root_entry=root_entry,
            processed_files=tuple(files_by_root.get(root_entry, ())),
            all_file_paths=tuple(paths_by_root[root_entry]),
        )
        for root_entry in sorted(paths_by_root)
    ]


def build_split_output_file_path(base_file_path: Path | str, part_index: int) -> Path:
    base = Path(base_file_path)
    if base.name.endswith(".") and base.name.strip("."):
        # "out." keeps its empty extension: out.1.
        return base.with_name(f"{base.name[:-1]}.{part_index}.")
    if not base.suffix:
        return base.with_name(f"{base.name}.{part_index}")
    return base.with_name(f"{base.stem}.{part_index}{base.suffix}")


def get_utf8_byte_length(content: str) -> int:
    return len(content.encode("utf-8"))


def _flatten_files(groups: Sequence[OutputSplitGroup]) -> tuple[ProcessedFile, ...]:
    return tuple(pf for g in groups for pf in g.processed_files)


def _make_part_config(base_config: Config, part_index: int) -> Config:
    if part_index == 1:
        return base_config
    # Git diffs/logs are large and position-independent; keep them in part 1.
    return replace(base_config, include_diffs=False, include_logs=False)


@dataclass(frozen=True)
class SplitRenderContext:
    root_dirs: Sequence[Path]
    base_config: Config
    all_file_paths: Sequence[str]
    git_diff_result: GitDiffResult | None
    git_log_result: GitLogResult | None
    generate_output: GenerateOutputFn

    def render(
        self,
        files: Sequence[ProcessedFile],
        part_index: int,
        total_parts: int,
    ) -> str:
        first = part_index == 1
        return self.generate_output(
            self.root_dirs,
            _make_part_config(self.base_config, part_index),
            list(files),
            self.all_file_paths,
            self.git_diff_result if first else None,
            self.git_log_result if first else None,
            SplitInfo(
                part_number=part_index,
                total_parts=total_parts,
                total_files=len(self.all_file_paths),
            ),
        )


def _validate_budget(name: str, value: object) -> None:
    if value is None:
        return
    if (
        isinstance(value, bool)
        or not isinstance(value, int)
        or value <= 0
        or value > MAX_SAFE_INTEGER
    ):
        raise OutputSplitError(f"Invalid {name}: {value!r}")


def _reject_duplicate_paths(processed_files: Sequence[ProcessedFile]) -> None:
    seen: set[str] = set()
    for pf in processed_files:
        if pf.path in seen:
            raise OutputSplitError(
                f"Cannot split output: file '{pf.path}' is listed more than once."
            )
        seen.add(pf.path)


def _noop_progress(message: str) -> None:
    return None


def generate_split_output_parts(
    *,
    root_dirs: Sequence[Path],
    base_config: Config,
    processed_files: Sequence[ProcessedFile],
    all_file_paths: Sequence[str],
    max_bytes_per_part: int | None = None,
    max_tokens_per_part: int | None = None,
    git_diff_result: GitDiffResult | None = None,
    git_log_result: GitLogResult | None = None,
    progress_callback: ProgressCallback | None = None,
    generate_output: GenerateOutputFn | None = None,
    task_runner_factory: TaskRunnerFactory | None = None,
) -> list[OutputSplitPart]:
    """Split rendered output into parts that each fit a byte or token budget.

    The token budget wins when both are given; with neither, nothing is rendered
    and an empty list is returned. Either every part fits its budget or
    ``OutputSplitError`` is raised and no parts are returned.
    """
    _validate_budget("max_bytes_per_part", max_bytes_per_part)
    _validate_budget("max_tokens_per_part", max_tokens_per_part)
    if max_bytes_per_part is None and max_tokens_per_part is None:
        return []
    _reject_duplicate_paths(processed_files)

    ctx = SplitRenderContext(
        root_dirs=list(root_dirs),
        base_config=base_config,
        all_file_paths=list(all_file_paths),
        git_diff_result=git_diff_result,
        git_log_result=git_log_result,
        generate_output=generate_output or render_output,
    )
    progress = progress_callback or _noop_progress

    if max_tokens_per_part is None:
        return generate_split_output_parts_by_bytes(
            ctx,
            processed_files,
            max_bytes_per_part=max_bytes_per_part,
            progress_callback=progress,
        )
    return generate_split_output_parts_by_tokens(
        ctx,
        processed_files,
        max_tokens_per_part=max_tokens_per_part,
        progress_callback=progress,
        task_runner_factory=task_runner_factory or TokenTaskRunner,
    )


def _exceeds_max_size(root_entry: str, size: int, limit: int) -> OutputSplitError:
    return OutputSplitError(
        f"Cannot split output: root entry '{root_entry}' exceeds max size. "
        f"Part size {size:,} bytes > limit {limit:,} bytes."
    )


def generate_split_output_parts_by_bytes(
    ctx: SplitRenderContext,
    processed_files: Sequence[ProcessedFile],
    *,
    max_bytes_per_part: int,
    progress_callback: ProgressCallback,
) -> list[OutputSplitPart]:
    groups = build_output_split_groups(processed_files, ctx.all_file_paths)
    if not groups:
        return []

    # Trials use the group count as a provisional total; see _finalize_totals.
    provisional_total = len(groups)
    closed: list[tuple[list[OutputSplitGroup], str, int]] = []
    current_groups: list[OutputSplitGroup] = []
    current_content = ""
    current_bytes = 0

    for group in groups:
        part_index = len(closed) + 1
        next_groups = [*current_groups, group]
        progress_callback(
            f"Generating output... (part {part_index}) evaluating {group.root_entry}"
        )
        next_content = ctx.render(
            _flatten_files(next_groups), part_index, provisional_total
        )
        next_bytes = get_utf8_byte_length(next_content)

        if next_bytes <= max_bytes_per_part:
            current_groups = next_groups
            current_content = next_content
            current_bytes = next_bytes
            continue

        if not current_groups:
            raise _exceeds_max_size(group.root_entry, next_bytes, max_bytes_per_part)

        closed.append((current_groups, current_content, current_bytes))

        part_index = len(closed) + 1
        progress_callback(
            f"Generating output... (part {part_index}) evaluating {group.root_entry}"
        )
        single_content = ctx.render(
            group.processed_files, part_index, provisional_total
        )
        single_bytes = get_utf8_byte_length(single_content)
        if single_bytes > max_bytes_per_part:
            raise _exceeds_max_size(group.root_entry, single_bytes, max_bytes_per_part)

        current_groups = [group]
        current_content = single_content
        current_bytes = single_bytes

    if current_groups:
        closed.append((current_groups, current_content, current_bytes))

    closed = _finalize_totals(
        ctx,
        closed,
        provisional_total=provisional_total,
        max_bytes_per_part=max_bytes_per_part,
        progress_callback=progress_callback,
    )

    return [
        OutputSplitPart(
            index=i,
            file_path=build_split_output_file_path(ctx.base_config.output, i),
            content=content,
            byte_length=size,
            token_count=0,
            files=_flatten_files(part_groups),
            groups=tuple(part_groups),
        )
        for i, (part_groups, content, size) in enumerate(closed, 1)
    ]


def _finalize_totals(
    ctx: SplitRenderContext,
    closed: list[tuple[list[OutputSplitGroup], str, int]],
    *,
    provisional_total: int,
    max_bytes_per_part: int,
    progress_callback: ProgressCallback,
) -> list[tuple[list[OutputSplitGroup], str, int]]:
    """Re-render parts whose provisional total differs from the final count.

    Boundaries are already fixed. A re-render that no longer fits the budget is
    discarded and the provisional render is kept.
    """
    total = len(closed)
    if total == provisional_total:
        return closed

    out: list[tuple[list[OutputSplitGroup], str, int]] = []
    for i, (part_groups, content, size) in enumerate(closed, 1):
        progress_callback(f"Generating output... (part {i} of {total}) finalizing")
        final_content = ctx.render(_flatten_files(part_groups), i, total)
        final_bytes = get_utf8_byte_length(final_content)
        if final_bytes <= max_bytes_per_part:
            out.append((part_groups, final_content, final_bytes))
        else:
            out.append((part_groups, content, size))
    return out


def _pack_by_estimate(
    processed_files: Sequence[ProcessedFile],
    token_map: dict[str, int],
    max_tokens_per_part: int,
) -> list[list[ProcessedFile]]:
    batches: list[list[ProcessedFile]] = []
    current: list[ProcessedFile] = []
    current_tokens = 0

    for pf in processed_files:
        file_tokens = token_map.get(pf.path, 0) + TOKEN_OVERHEAD_PER_FILE

        if file_tokens > max_tokens_per_part:
            # Only the exact count after rendering can reject a lone file.
            if current:
                batches.append(current)
                current = []
                current_tokens = 0
            batches.append([pf])
            continue

        if current and current_tokens + file_tokens > max_tokens_per_part:
            batches.append(current)
            current = [pf]
            current_tokens = file_tokens
        else:
            current.append(pf)
            current_tokens += file_tokens

    if current:
        batches.append(current)
    return batches


def generate_split_output_parts_by_tokens(
    ctx: SplitRenderContext,
    processed_files: Sequence[ProcessedFile],
    *,
    max_tokens_per_part: int,
    progress_callback: ProgressCallback,
    task_runner_factory: TaskRunnerFactory,
) -> list[OutputSplitPart]:
    """Pack files greedily by estimated tokens, then verify each rendered part.

    Only single-file parts are checked against the budget after rendering;
    multi-file parts rely on the per-file estimate plus overhead.
    """
    runner = task_runner_factory(ctx.base_config.max_workers, len(processed_files))
    try:
        encoding = ctx.base_config.token_count_encoding

        progress_callback("Pre-calculating file tokens...")
        futures = [
            (
                pf.path,
                runner.submit(
                    TokenCountTask(content=pf.content, encoding=encoding, path=pf.path)
                ),
            )
            for pf in processed_files
        ]
        token_map = {path: int(fut.result()) for path, fut in futures}

        batches = _pack_by_estimate(processed_files, token_map, max_tokens_per_part)
        total_parts = len(batches)
        parts: list[OutputSplitPart] = []

        for part_index, files in enumerate(batches, 1):
            progress_callback(
                f"Generating output... (part {part_index} of {total_parts})"
            )
            file_path = build_split_output_file_path(ctx.base_config.output, part_index)
            content = ctx.render(files, part_index, total_parts)
            token_count = calculate_output_tokens(
                content, encoding, runner=runner, path=file_path.as_posix()
            )
            if len(files) == 1 and token_count > max_tokens_per_part:
                raise OutputSplitError(
                    f"Cannot split output: file '{files[0].path}' exceeds max "
                    f"tokens. Tokens {token_count:,} > limit {max_tokens_per_part:,}."
                )

            parts.append(
                OutputSplitPart(
                    index=part_index,
                    file_path=file_path,
                    content=content,
                    byte_length=get_utf8_byte_length(content),
                    token_count=token_count,
                    files=tuple(files),
                )
            )

        return parts
    finally:
        runner.cleanup()
