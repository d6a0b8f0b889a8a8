from __future__ import annotations

import hashlib
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import tiktoken

_ENCODER_CACHE: dict[str, Any] = {}
_ENCODER_CACHE_LOCK = threading.Lock()
_TOKEN_COUNT_CACHE: dict[tuple[str, str], int] = {}
_TOKEN_COUNT_CACHE_LOCK = threading.Lock()


def _get_encoder(name: str) -> Any:
    with _ENCODER_CACHE_LOCK:
        enc = _ENCODER_CACHE.get(name)
        if enc is None:
            enc = tiktoken.get_encoding(name)
            _ENCODER_CACHE[name] = enc
    return enc


def _content_sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def resolve_worker_count(max_workers: int, item_count: int) -> int:
    if item_count <= 1:
        return 1
    if max_workers > 0:
        return max_workers
    cpu = os.cpu_count() or 1
    return max(2, min(32, cpu * 4, item_count))


@dataclass(frozen=True)
class TokenCounter:
    encoding: str = "o200k_base"

    @property
    def backend(self) -> str:
        return "tiktoken"

    def count(self, text: str) -> int:
        key = (self.encoding, _content_sha256(text))
        with _TOKEN_COUNT_CACHE_LOCK:
            cached = _TOKEN_COUNT_CACHE.get(key)
        if cached is not None:
            return cached

        # Special tokens in source text are counted as plain text.
        result = len(_get_encoder(self.encoding).encode(text, disallowed_special=()))

        with _TOKEN_COUNT_CACHE_LOCK:
            _TOKEN_COUNT_CACHE[key] = result
        return result


@dataclass(frozen=True)
class TokenCountTask:
    content: str
    encoding: str
    path: str = ""  # diagnostics only


def count_task_tokens(task: TokenCountTask) -> int:
    return TokenCounter(task.encoding).count(task.content)


class TokenTaskRunner:
    """Bounded thread pool for token counting.

    ``submit`` queues a task and returns its future; ``run`` counts a single
    task and waits for the result. ``cleanup`` shuts the pool down and may be
    called more than once.
    """

    def __init__(self, max_workers: int = 0, item_count: int = 2) -> None:
        self.max_workers = resolve_worker_count(max_workers, item_count)
        self._pool: ThreadPoolExecutor | None = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="splitcrate-tokens"
        )

    def _require_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            raise RuntimeError("TokenTaskRunner has been cleaned up")
        return self._pool

    def submit(self, task: TokenCountTask) -> Future[int]:
        return self._require_pool().submit(count_task_tokens, task)

    def run(self, task: TokenCountTask) -> int:
        return self.submit(task).result()

    def cleanup(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> TokenTaskRunner:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cleanup()


def calculate_output_tokens(
    content: str, encoding: str, *, runner: TokenTaskRunner, path: str = ""
) -> int:
    return runner.run(TokenCountTask(content=content, encoding=encoding, path=path))
