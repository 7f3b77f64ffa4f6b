"""Fixed-size, fixed-delay batch dispatch for bulk remote operations.

Ids are split into consecutive chunks. Every member of a chunk is sent
concurrently and the chunk is awaited until all members settle; the
dispatcher then sleeps for a fixed delay before starting the next chunk.
Per-item failures are logged and never abort the remaining work.

:meth:`BatchDispatcher.dispatch` returns the ids immediately and runs the
chunks in a background task. Callers get no confirmation of completion.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 9
DEFAULT_BATCH_DELAY_S = 3.0

ItemOperation = Callable[[str], Awaitable[object]]
Sleeper = Callable[[float], Awaitable[object]]


@dataclass
class BatchReport:
    """Outcome of one batched run."""

    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, Exception] = field(default_factory=dict)
    batches: int = 0


async def run_batched(
    ids: Iterable[str],
    operation: ItemOperation,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    delay_s: float = DEFAULT_BATCH_DELAY_S,
    description: str = "process item",
    sleep: Sleeper = asyncio.sleep,
) -> BatchReport:
    """Apply *operation* to every id, one chunk at a time.

    The delay is applied between chunks only, never after the last one.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    items = list(ids)
    report = BatchReport()
    for offset in range(0, len(items), batch_size):
        chunk = items[offset : offset + batch_size]
        report.batches += 1
        results = await asyncio.gather(
            *(operation(item) for item in chunk),
            return_exceptions=True,
        )
        for item, result in zip(chunk, results, strict=True):
            if isinstance(result, Exception):
                report.failed[item] = result
                logger.error(
                    "Failed to %s %s: %s",
                    description,
                    item,
                    result,
                    exc_info=result,
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                report.succeeded.append(item)

        if offset + batch_size < len(items):
            await sleep(delay_s)

    logger.info(
        "Batch %s finished: %d succeeded, %d failed across %d chunk(s)",
        description,
        len(report.succeeded),
        len(report.failed),
        report.batches,
    )
    return report


class BatchDispatcher:
    """Runs batched operations in the background and tracks them until they finish."""

    def __init__(
        self,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        delay_s: float = DEFAULT_BATCH_DELAY_S,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._batch_size = batch_size
        self._delay_s = delay_s
        self._sleep = sleep
        self._tasks: set[asyncio.Task[BatchReport]] = set()

    @property
    def pending(self) -> int:
        """Number of background runs that have not finished yet."""
        return len(self._tasks)

    def dispatch(
        self,
        ids: Iterable[str],
        operation: ItemOperation,
        *,
        description: str = "process item",
        batch_size: int | None = None,
        delay_s: float | None = None,
    ) -> list[str]:
        """Schedule *operation* over *ids* and return the ids without waiting.

        Must be called from within a running event loop.
        """
        accepted = list(ids)
        task = asyncio.create_task(
            run_batched(
                accepted,
                operation,
                batch_size=batch_size or self._batch_size,
                delay_s=self._delay_s if delay_s is None else delay_s,
                description=description,
                sleep=self._sleep,
            ),
            name=f"batch:{description}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return accepted

    def _on_done(self, task: asyncio.Task[BatchReport]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background batch %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background batch %s failed: %s",
                task.get_name(),
                exc,
                exc_info=exc,
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding runs; cancel whatever is still running after *timeout*."""
        if not self._tasks:
            return
        tasks = set(self._tasks)
        _done, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d unfinished background batch(es)", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
