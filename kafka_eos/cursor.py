"""
PartitionCursor: one partition's read state inside a PartitionedReader.

Two threads touch a cursor, each through its own fields:

- the fetch thread puts records into `queue`, and updates the end offset and the
  offline flag;
- the foreground (advance/checkpoint/watermark) takes records out of `queue` and
  owns every "delivered" field.

Single attribute assignments are atomic in CPython, so the foreground reads the
fetch thread's fields without a lock and never waits on it.
"""

from __future__ import annotations

import queue
import threading
from typing import Optional

from .checkpoint import PartitionMark
from .records import MIN_TIMESTAMP, PartitionId, Record, now_millis
from .timestamps import PartitionContext, TimestampPolicy

# Window of the moving average used for backlog-in-bytes estimates.
MOVING_AVG_WINDOW: int = 1000


class PartitionCursor:
    def __init__(
        self,
        partition: PartitionId,
        policy: TimestampPolicy,
        capacity: int,
        previous_watermark: Optional[int] = None,
    ) -> None:
        self.partition: PartitionId = partition
        self.policy: TimestampPolicy = policy
        # single producer (fetch thread) / single consumer (foreground)
        self.queue: "queue.Queue[Record]" = queue.Queue(maxsize=capacity)

        self.next_offset_to_read: int = 0
        self.last_delivered_offset: Optional[int] = None
        self.last_delivered_timestamp: Optional[int] = None

        # written by the fetch thread
        self.end_offset: Optional[int] = None
        self.backlog_check_time: int = now_millis()
        self.offline: bool = False

        self._watermark: int = previous_watermark if previous_watermark is not None else MIN_TIMESTAMP
        self._avg_record_size: float = 0.0
        self._num_sized: int = 0

    def __repr__(self) -> str:
        return (
            f"PartitionCursor({self.partition}, next={self.next_offset_to_read}, "
            f"end={self.end_offset}, buffered={self.queue.qsize()})"
        )

    # ---- set-up (before the fetch thread starts) ----

    def seeked(self, offset: int, end_offset: int) -> None:
        self.next_offset_to_read = offset
        self.end_offset = end_offset
        self.backlog_check_time = now_millis()

    # ---- fetch thread side ----

    def offer(self, record: Record, stop: threading.Event, poll_interval: float = 0.1) -> bool:
        """Block until the record fits in the queue; False if `stop` was set first."""
        while not stop.is_set():
            try:
                self.queue.put(record, timeout=poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def update_end_offset(self, end_offset: int) -> None:
        if self.end_offset is None or end_offset > self.end_offset:
            self.end_offset = end_offset
        self.backlog_check_time = now_millis()

    def mark_offline(self) -> None:
        self.offline = True

    # ---- foreground side ----

    def take(self) -> Optional[Record]:
        """Next deliverable record, or None when nothing is buffered."""
        while True:
            try:
                record = self.queue.get_nowait()
            except queue.Empty:
                return None
            # Records below the read position can only be re-deliveries after a
            # client-side retry; never hand them out twice.
            if record.offset < self.next_offset_to_read:
                continue
            self.next_offset_to_read = record.offset + 1
            self.last_delivered_offset = record.offset
            self.offline = False
            if self.end_offset is not None and self.next_offset_to_read > self.end_offset:
                self.end_offset = self.next_offset_to_read
            self._update_avg_size(record.size)
            return record

    def stamp(self, record: Record) -> int:
        ts: int = self.policy.get_timestamp_for_record(self.context(), record)
        self.last_delivered_timestamp = ts
        return ts

    def _update_avg_size(self, size: int) -> None:
        self._num_sized += 1
        self._avg_record_size += (size - self._avg_record_size) / min(self._num_sized, MOVING_AVG_WINDOW)

    @property
    def backlog(self) -> int:
        if self.end_offset is None:
            return 0
        return max(0, self.end_offset - self.next_offset_to_read)

    @property
    def backlog_bytes(self) -> int:
        return int(self.backlog * self._avg_record_size)

    def context(self) -> PartitionContext:
        return PartitionContext(
            backlog=self.backlog,
            backlog_check_time=self.backlog_check_time,
            end_offset=self.end_offset,
        )

    def watermark(self) -> int:
        """
        Partition watermark, never lower than a value reported before.

        "Unknown" (MIN_TIMESTAMP) until the first record has been delivered; frozen
        at its last value while the partition is offline.
        """
        if self.last_delivered_offset is None and self._watermark == MIN_TIMESTAMP:
            return MIN_TIMESTAMP
        if self.offline:
            return self._watermark
        self._watermark = max(self._watermark, self.policy.get_watermark(self.context()))
        return self._watermark

    def checkpoint(self) -> PartitionMark:
        return PartitionMark(self.partition, self.next_offset_to_read - 1, self._watermark)
