"""
Bounded-concurrency batch execution.

Splits work into batches and runs a blocking function over each batch with
at most `max_workers` calls in flight, each one on a worker thread. Failures
are captured per item so one bad email never sinks its batch.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterator, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ItemOutcome(Generic[T, R]):
    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchReport:
    """Outcomes of one batch, in input order."""
    outcomes: List[ItemOutcome] = field(default_factory=list)
    started_at: float = 0.0
    completed_at: float = 0.0

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed_count(self) -> int:
        return len(self.outcomes) - self.success_count

    @property
    def elapsed(self) -> float:
        return self.completed_at - self.started_at


class BatchProcessor:
    """
    Usage:
        processor = BatchProcessor(config["sync"])
        for batch in processor.batches(emails):
            report = await processor.run(batch, classify_fn)
    """

    def __init__(self, config: Optional[dict] = None):
        """
        Args:
            config: Configuration with:
                - batch_size: Items per batch (default: 25)
                - max_workers: Concurrent calls per batch (default: 4)
        """
        config = config or {}
        self.batch_size = max(1, int(config.get("batch_size", 25)))
        self.max_workers = max(1, int(config.get("max_workers", 4)))

    def batches(self, items: Sequence[T]) -> Iterator[List[T]]:
        for start in range(0, len(items), self.batch_size):
            yield list(items[start:start + self.batch_size])

    def batch_count(self, total: int) -> int:
        return (total + self.batch_size - 1) // self.batch_size

    async def run(
        self,
        items: Sequence[T],
        fn: Callable[[T], R],
        on_item_done: Optional[Callable[[ItemOutcome], Any]] = None,
    ) -> BatchReport:
        """
        Run `fn` over `items` on worker threads.

        Args:
            items: One batch
            fn: Blocking function applied to each item
            on_item_done: Called on the event loop as each item finishes
        """
        report = BatchReport(started_at=time.time())
        semaphore = asyncio.Semaphore(self.max_workers)

        async def _one(item: T) -> ItemOutcome:
            async with semaphore:
                try:
                    outcome = ItemOutcome(item=item, result=await asyncio.to_thread(fn, item))
                except Exception as e:
                    logger.warning(f"Batch item failed: {e}")
                    outcome = ItemOutcome(item=item, error=e)
            if on_item_done is not None:
                on_item_done(outcome)
            return outcome

        report.outcomes = list(await asyncio.gather(*(_one(item) for item in items)))
        report.completed_at = time.time()

        logger.debug(
            f"Batch of {len(items)} done: {report.success_count} ok, "
            f"{report.failed_count} failed in {report.elapsed:.2f}s"
        )
        return report
