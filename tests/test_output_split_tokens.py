from __future__ import annotations

from concurrent.futures import Future
from pathlib import Path

import pytest

from splitcrate.config import Config
from splitcrate.model import GitDiffResult, ProcessedFile
from splitcrate.output_split import (
    TOKEN_OVERHEAD_PER_FILE,
    OutputSplitError,
    generate_split_output_parts,
)
from splitcrate.tokens import TokenCountTask


class _FakeRunner:
    """Estimates come from ``estimates`` by path; exact counts from ``exact``."""

    def __init__(self, estimates=None, exact=None, fail_on=None) -> None:
        self.estimates = estimates or {}
        self.exact = exact or (lambda content: 0)
        self.fail_on = fail_on
        self.submitted: list[TokenCountTask] = []
        self.ran: list[TokenCountTask] = []
        self.cleanup_calls = 0

    def submit(self, task: TokenCountTask) -> Future:
        self.submitted.append(task)
        fut: Future = Future()
        if task.path == self.fail_on:
            fut.set_exception(RuntimeError(f"worker crashed on {task.path}"))
        else:
            fut.set_result(self.estimates.get(task.path, 0))
        return fut

    def run(self, task: TokenCountTask) -> int:
        self.ran.append(task)
        return self.exact(task.content)

    def cleanup(self) -> None:
        self.cleanup_calls += 1


def _render_paths(
    root_dirs,
    config,
    files,
    all_file_paths,
    git_diff_result=None,
    git_log_result=None,
    split_info=None,
) -> str:
    return "\n".join(f.path for f in files)


def _split(runner, files, render=_render_paths, **kwargs):
    kwargs.setdefault("all_file_paths", [f.path for f in files])
    kwargs.setdefault("base_config", Config(output="repo-output.xml"))
    factory_args: list[tuple[int, int]] = []

    def factory(max_workers: int, item_count: int):
        factory_args.append((max_workers, item_count))
        return runner

    parts = generate_split_output_parts(
        root_dirs=[Path("/test")],
        processed_files=files,
        generate_output=render,
        task_runner_factory=factory,
        **kwargs,
    )
    return parts, factory_args


def _files(*names: str) -> list[ProcessedFile]:
    return [ProcessedFile(name, f"content of {name}") for name in names]


def test_each_file_gets_its_own_part_when_pairs_exceed_budget() -> None:
    files = _files("file1.ts", "file2.ts", "file3.ts")
    runner = _FakeRunner(
        estimates={f.path: 60 for f in files}, exact=lambda content: 80
    )

    parts, _ = _split(runner, files, max_tokens_per_part=100)

    assert [p.content for p in parts] == ["file1.ts", "file2.ts", "file3.ts"]
    assert [p.index for p in parts] == [1, 2, 3]
    assert [p.token_count for p in parts] == [80, 80, 80]
    assert [p.file_path for p in parts] == [
        Path("repo-output.1.xml"),
        Path("repo-output.2.xml"),
        Path("repo-output.3.xml"),
    ]
    assert all(p.groups is None for p in parts)
    assert runner.cleanup_calls == 1


def test_estimates_pack_files_greedily_in_order() -> None:
    files = _files("a.py", "b.py", "c.py")
    runner = _FakeRunner(
        estimates={"a.py": 30, "b.py": 20, "c.py": 20}, exact=lambda content: 50
    )

    parts, _ = _split(runner, files, max_tokens_per_part=100)

    assert [[f.path for f in p.files] for p in parts] == [["a.py", "b.py"], ["c.py"]]
    assert parts[0].byte_length == len("a.py\nb.py")


def test_overhead_is_added_per_file() -> None:
    files = _files("a.py", "b.py")
    budget = 2 * (40 + TOKEN_OVERHEAD_PER_FILE)
    runner = _FakeRunner(estimates={"a.py": 40, "b.py": 41})

    parts, _ = _split(runner, files, max_tokens_per_part=budget)

    assert len(parts) == 2


def test_single_file_over_budget_after_rendering_fails() -> None:
    files = _files("big.ts")
    runner = _FakeRunner(estimates={"big.ts": 150}, exact=lambda content: 200)

    with pytest.raises(OutputSplitError, match="exceeds max tokens") as excinfo:
        _split(runner, files, max_tokens_per_part=100)

    assert "file 'big.ts'" in str(excinfo.value)
    assert "Tokens 200 > limit 100" in str(excinfo.value)
    assert runner.cleanup_calls == 1


def test_oversized_estimate_is_accepted_when_exact_count_fits() -> None:
    files = _files("big.ts")
    runner = _FakeRunner(estimates={"big.ts": 150}, exact=lambda content: 90)

    parts, _ = _split(runner, files, max_tokens_per_part=100)

    assert len(parts) == 1
    assert parts[0].token_count == 90


def test_oversized_file_flushes_the_running_batch() -> None:
    files = _files("a.py", "huge.py", "c.py")
    runner = _FakeRunner(
        estimates={"a.py": 10, "huge.py": 500, "c.py": 10}, exact=lambda content: 60
    )

    parts, _ = _split(runner, files, max_tokens_per_part=100)

    assert [[f.path for f in p.files] for p in parts] == [
        ["a.py"],
        ["huge.py"],
        ["c.py"],
    ]


def test_multi_file_part_is_not_rejected_after_rendering() -> None:
    files = _files("a.py", "b.py")
    runner = _FakeRunner(estimates={"a.py": 10, "b.py": 10}, exact=lambda c: 500)

    parts, _ = _split(runner, files, max_tokens_per_part=100)

    assert len(parts) == 1
    assert parts[0].token_count == 500


def test_every_file_is_estimated_once_with_configured_encoding() -> None:
    files = _files("a.py", "b.py", "c.py")
    runner = _FakeRunner()
    config = Config(output="out.md", token_count_encoding="cl100k_base", max_workers=3)

    _, factory_args = _split(runner, files, base_config=config, max_tokens_per_part=500)

    assert factory_args == [(3, 3)]
    assert [t.path for t in runner.submitted] == ["a.py", "b.py", "c.py"]
    assert [t.content for t in runner.submitted] == [f.content for f in files]
    assert {t.encoding for t in runner.submitted} == {"cl100k_base"}
    assert [t.path for t in runner.ran] == ["out.1.md"]
    assert runner.ran[0].encoding == "cl100k_base"


def test_estimate_failure_propagates_and_runner_is_cleaned_up() -> None:
    files = _files("a.py", "b.py")
    runner = _FakeRunner(fail_on="b.py")

    with pytest.raises(RuntimeError, match="worker crashed on b.py"):
        _split(runner, files, max_tokens_per_part=100)

    assert runner.cleanup_calls == 1
    assert runner.ran == []


def test_render_receives_final_total_and_git_context_only_in_part_one() -> None:
    files = _files("a.py", "b.py")
    diff = GitDiffResult(staged_diff="diff --git a/a.py b/a.py\n")
    calls = []

    def render(root_dirs, config, files, all_file_paths, diff_result, log, info):
        calls.append((config.include_diffs, diff_result, info, list(all_file_paths)))
        return "part"

    runner = _FakeRunner(estimates={"a.py": 90, "b.py": 90})
    _split(
        runner,
        files,
        render=render,
        base_config=Config(output="out.md", include_diffs=True),
        max_tokens_per_part=200,
        git_diff_result=diff,
    )

    assert len(calls) == 2
    (diffs1, result1, info1, paths1), (diffs2, result2, info2, _) = calls
    assert (diffs1, result1) == (True, diff)
    assert (diffs2, result2) == (False, None)
    assert (info1.part_number, info1.total_parts, info1.total_files) == (1, 2, 2)
    assert (info2.part_number, info2.total_parts) == (2, 2)
    assert paths1 == ["a.py", "b.py"]


def test_progress_messages_for_token_mode() -> None:
    files = _files("a.py", "b.py")
    runner = _FakeRunner(estimates={"a.py": 90, "b.py": 90})
    messages: list[str] = []

    _split(
        runner, files, max_tokens_per_part=200, progress_callback=messages.append
    )

    assert messages == [
        "Pre-calculating file tokens...",
        "Generating output... (part 1 of 2)",
        "Generating output... (part 2 of 2)",
    ]


def test_token_budget_takes_precedence_over_byte_budget() -> None:
    files = _files("src/a.py", "tests/b.py")
    runner = _FakeRunner(estimates={"src/a.py": 5, "tests/b.py": 5})

    parts, factory_args = _split(
        runner, files, max_tokens_per_part=1000, max_bytes_per_part=1
    )

    assert factory_args == [(0, 2)]
    assert len(parts) == 1
    assert parts[0].groups is None


def test_no_budget_creates_no_runner() -> None:
    runner = _FakeRunner()

    parts, factory_args = _split(runner, _files("a.py"))

    assert parts == []
    assert factory_args == []
    assert runner.submitted == []


@pytest.mark.parametrize("budget", [0, -5, 2.0, False, 2**53])
def test_invalid_token_budget_is_rejected(budget) -> None:
    runner = _FakeRunner()

    with pytest.raises(OutputSplitError, match="Invalid max_tokens_per_part"):
        _split(runner, _files("a.py"), max_tokens_per_part=budget)

    assert runner.submitted == []


def test_invalid_byte_budget_is_rejected_even_with_token_budget() -> None:
    with pytest.raises(OutputSplitError, match="Invalid max_bytes_per_part"):
        _split(
            _FakeRunner(),
            _files("a.py"),
            max_tokens_per_part=100,
            max_bytes_per_part=0,
        )


def test_empty_input_yields_no_parts_and_cleans_up() -> None:
    runner = _FakeRunner()

    parts, _ = _split(runner, [], all_file_paths=[], max_tokens_per_part=100)

    assert parts == []
    assert runner.cleanup_calls == 1


def test_render_failure_propagates_and_runner_is_cleaned_up() -> None:
    files = _files("a.py", "b.py")

    def render(root_dirs, config, files, all_file_paths, diffs, logs, info):
        if info.part_number == 2:
            raise OSError("renderer lost its template")
        return "part"

    runner = _FakeRunner(estimates={"a.py": 90, "b.py": 90})

    with pytest.raises(OSError, match="renderer lost its template"):
        _split(runner, files, render=render, max_tokens_per_part=200)

    assert runner.cleanup_calls == 1
    assert len(runner.ran) == 1


def test_exact_count_failure_propagates_and_runner_is_cleaned_up() -> None:
    def exact(content: str) -> int:
        raise KeyError("unknown encoding")

    runner = _FakeRunner(exact=exact)

    with pytest.raises(KeyError, match="unknown encoding"):
        _split(runner, _files("a.py"), max_tokens_per_part=200)

    assert runner.cleanup_calls == 1
