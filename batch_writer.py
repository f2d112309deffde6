"""
Bounded, sequential batch writes against the document store.

Records are split into batches of ``store.max_batch_size - headroom``
operations and committed strictly one after another. Every record write is a
merge-upsert keyed by the record's stable id, so re-running a write with the
same input is idempotent. A failed batch stops the write; batches already
committed stay committed.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from database_ops import DocumentStore, WriteOp
from exceptions import StoreError, StoreWriteError, SyncCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HEADROOM = 50

ProgressCallback = Callable[[float], None]
CancelCheck = Callable[[], bool]


@dataclass
class BatchResult:
    """Outcome of a completed batch write."""
    total_records: int
    total_batches: int
    committed_batches: int


class BatchWriter:
    """
    Splits writes into bounded batches and commits them in order.

    Attributes:
        store: Document store to commit against
        batch_size: Maximum operations per batch (store limit minus headroom)
    """

    def __init__(self, store: DocumentStore, headroom: int = DEFAULT_HEADROOM):
        """
        Initialize the writer.

        Args:
            store: Document store exposing ``max_batch_size`` and ``batch_commit``
            headroom: Operations left free in every batch for unrelated writes

        Raises:
            ValueError: If the headroom leaves no room for any operation
        """
        self.store = store
        self.batch_size = store.max_batch_size - headroom
        if self.batch_size < 1:
            raise ValueError(
                f"Headroom {headroom} leaves no room in store batches of {store.max_batch_size}"
            )

    def batch_count(self, total: int) -> int:
        return math.ceil(total / self.batch_size) if total else 0

    def plan_batches(self, items: Sequence[T]) -> List[List[T]]:
        """Split items into consecutive chunks of at most ``batch_size``."""
        return [
            list(items[i:i + self.batch_size])
            for i in range(0, len(items), self.batch_size)
        ]

    async def write(
        self,
        records: Iterable[T],
        path_fn: Callable[[T], str],
        serialize: Callable[[T], Dict[str, Any]],
        *,
        progress: Optional[ProgressCallback] = None,
        base: float = 0.0,
        span: float = 1.0,
        should_cancel: Optional[CancelCheck] = None
    ) -> BatchResult:
        """
        Merge-upsert every record, one bounded batch at a time.

        Args:
            records: Records to write
            path_fn: Returns the document path for a record (keyed by stable id)
            serialize: Returns the fields to merge for a record
            progress: Called with ``base + (k / total_batches) * span`` after batch k
            base: Progress value at the start of this write
            span: Share of overall progress this write owns
            should_cancel: Checked before each batch; a true result stops the write

        Returns:
            BatchResult describing the completed write

        Raises:
            StoreWriteError: On the first failed batch (details carry batch_index)
            SyncCancelledError: When cancellation is requested between batches
        """
        ops = [WriteOp.merge(path_fn(record), serialize(record)) for record in records]
        return await self.commit_ops(
            ops, progress=progress, base=base, span=span, should_cancel=should_cancel
        )

    async def commit_ops(
        self,
        ops: Sequence[WriteOp],
        *,
        progress: Optional[ProgressCallback] = None,
        base: float = 0.0,
        span: float = 1.0,
        should_cancel: Optional[CancelCheck] = None
    ) -> BatchResult:
        """Commit prepared operations in bounded sequential batches."""
        batches = self.plan_batches(list(ops))
        total = len(batches)
        logger.debug(f"Writing {len(ops)} operations in {total} batches of up to {self.batch_size}")

        if total == 0:
            if progress:
                progress(base + span)
            return BatchResult(total_records=0, total_batches=0, committed_batches=0)

        committed = 0
        for index, batch in enumerate(batches):
            if should_cancel and should_cancel():
                logger.info(f"Batch write cancelled after {committed} of {total} batches")
                raise SyncCancelledError(
                    "Batch write cancelled",
                    details={"committed_batches": committed, "total_batches": total}
                )
            try:
                await self.store.batch_commit(batch)
            except StoreError as e:
                logger.error(f"Batch {index + 1}/{total} failed: {e}")
                raise StoreWriteError(
                    "Batch commit failed",
                    details={
                        "batch_index": index,
                        "committed_batches": committed,
                        "total_batches": total,
                    },
                    original_error=e
                ) from e
            committed += 1
            logger.debug(f"Committed batch {committed}/{total} ({len(batch)} operations)")
            if progress:
                progress(base + (committed / total) * span)

        return BatchResult(total_records=len(ops), total_batches=total, committed_batches=committed)
