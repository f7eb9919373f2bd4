"""Concurrent fan-out with per-item outcome capture.

Every bulk vendor or mirror operation goes through ``BatchExecutor``. Items
are split into chunks, all chunks are dispatched together and every item in a
chunk runs concurrently. A failing item never cancels its siblings; the caller
receives one ``ItemResult`` per item and decides what to log.

Example:
    >>> executor = BatchExecutor()
    >>> results = await executor.run(group_ids, 100, vendor.delete_group)
    >>> for failed in failures(results):
    ...     logger.warning("delete failed", extra={"group_id": failed.item})
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class ItemResult(Generic[T, R]):
    """Outcome of one item: either a value or the exception it raised."""

    item: T
    value: R | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive lists of at most ``size`` elements."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def successes(results: Iterable[ItemResult[T, R]]) -> list[ItemResult[T, R]]:
    return [r for r in results if r.ok]


def failures(results: Iterable[ItemResult[T, R]]) -> list[ItemResult[T, R]]:
    return [r for r in results if not r.ok]


class BatchExecutor:
    """Settle-all executor for independent I/O-bound calls.

    Args:
        max_concurrency: Optional cap on calls in flight across all chunks.
            ``None`` dispatches everything at once.
    """

    def __init__(self, max_concurrency: int | None = None) -> None:
        if max_concurrency is not None and max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    async def run(
        self,
        items: Sequence[T],
        chunk_size: int,
        fn: Callable[[T], Awaitable[R]],
    ) -> list[ItemResult[T, R]]:
        """Call ``fn`` for every item and capture each outcome.

        Args:
            items: Items to process. Empty input returns an empty list.
            chunk_size: Items per chunk.
            fn: Coroutine function applied to one item.

        Returns:
            One ItemResult per item, in input order.
        """
        if not items:
            return []
        chunks = chunked(items, chunk_size)
        settled = await asyncio.gather(*(self._run_chunk(chunk, fn) for chunk in chunks))
        return [result for chunk_results in settled for result in chunk_results]

    async def run_chunks(
        self,
        items: Sequence[T],
        chunk_size: int,
        fn: Callable[[list[T]], Awaitable[R]],
    ) -> list[ItemResult[list[T], R]]:
        """Call ``fn`` once per chunk, for APIs that accept a list of items.

        Returns:
            One ItemResult per chunk whose ``item`` is the chunk itself.
        """
        if not items:
            return []
        return await self._run_chunk(chunked(items, chunk_size), fn)

    async def _run_chunk(
        self,
        chunk: Sequence[T],
        fn: Callable[[T], Awaitable[R]],
    ) -> list[ItemResult[T, R]]:
        outcomes = await asyncio.gather(
            *(self._call(fn, item) for item in chunk), return_exceptions=True
        )
        results: list[ItemResult[T, R]] = []
        for item, outcome in zip(chunk, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    # CancelledError and friends are not per-item failures
                    raise outcome
                results.append(ItemResult(item=item, error=outcome))
            else:
                results.append(ItemResult(item=item, value=outcome))
        return results

    async def _call(self, fn: Callable[[T], Awaitable[R]], item: T) -> R:
        if self._semaphore is None:
            return await fn(item)
        async with self._semaphore:
            return await fn(item)


__all__ = ["BatchExecutor", "ItemResult", "chunked", "failures", "successes"]
