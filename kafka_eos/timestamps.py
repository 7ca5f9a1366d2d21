"""
Per-partition timestamp policies.

A policy decides two things for the partition it was created for:

- the event timestamp of each record the reader emits;
- the partition watermark, a lower bound on timestamps still to come.

The reader creates one policy per partition through a factory
(partition, previous_watermark) -> TimestampPolicy, where previous_watermark is
the value stored in the checkpoint mark on restore (None on a fresh start).
Watermarks reported by a policy must never go backwards for the lifetime of
that policy; the cursor clamps them anyway.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Callable, Optional

from .records import MAX_TIMESTAMP, MIN_TIMESTAMP, PartitionId, Record, TimestampType, now_millis

Clock = Callable[[], int]


@dataclass(frozen=True)
class PartitionContext:
    """What the reader knows about a partition when it asks for a watermark."""

    backlog: int                  # records between next offset to read and the known end
    backlog_check_time: int       # when `backlog` was computed (millis)
    end_offset: Optional[int]     # latest known end offset (next offset the broker will assign)


class TimestampPolicy(abc.ABC):
    @abc.abstractmethod
    def get_timestamp_for_record(self, ctx: PartitionContext, record: Record) -> int:
        ...

    @abc.abstractmethod
    def get_watermark(self, ctx: PartitionContext) -> int:
        ...


TimestampPolicyFactory = Callable[[PartitionId, Optional[int]], TimestampPolicy]


class ProcessingTimePolicy(TimestampPolicy):
    """Wall-clock time for both timestamps and watermark."""

    def __init__(self, previous_watermark: Optional[int] = None, clock: Clock = now_millis) -> None:
        self._clock = clock
        self._watermark: int = previous_watermark if previous_watermark is not None else MIN_TIMESTAMP

    def get_timestamp_for_record(self, ctx: PartitionContext, record: Record) -> int:
        self._watermark = max(self._watermark, self._clock())
        return self._watermark

    def get_watermark(self, ctx: PartitionContext) -> int:
        self._watermark = max(self._watermark, self._clock())
        return self._watermark


class LogAppendTimePolicy(TimestampPolicy):
    """
    Broker-assigned LogAppendTime as event time.

    The topic must be configured with message.timestamp.type=LogAppendTime; a record
    carrying any other timestamp type is rejected. LogAppendTime is monotonic per
    partition, so the watermark is simply the last timestamp. While the partition is
    idle (no backlog) the watermark moves up to backlog_check_time - idle_delta, since
    anything appended later gets a later broker timestamp.
    """

    IDLE_WATERMARK_DELTA_MS: int = 2_000

    def __init__(self, previous_watermark: Optional[int] = None, idle_delta_ms: int = IDLE_WATERMARK_DELTA_MS) -> None:
        self._idle_delta = idle_delta_ms
        self._watermark: int = previous_watermark if previous_watermark is not None else MIN_TIMESTAMP

    def get_timestamp_for_record(self, ctx: PartitionContext, record: Record) -> int:
        if record.timestamp_type != TimestampType.LOG_APPEND_TIME:
            raise ValueError(
                f"LogAppendTime policy: record {record.partition}@{record.offset} has timestamp type "
                f"{record.timestamp_type.name}; configure the topic with LogAppendTime"
            )
        self._watermark = max(self._watermark, record.timestamp)
        return record.timestamp

    def get_watermark(self, ctx: PartitionContext) -> int:
        if ctx.backlog == 0:
            idle_watermark = ctx.backlog_check_time - self._idle_delta
            if idle_watermark > self._watermark:
                self._watermark = idle_watermark
        return self._watermark


class CustomTimestampPolicy(TimestampPolicy):
    """
    Event time extracted from the record by a user function.

    Records may arrive out of order by up to max_delay_ms; the watermark trails the
    largest timestamp seen by that much. When the partition is caught up (backlog 0)
    the watermark advances to now - max_delay_ms, as any record still to come is
    assumed to be no older than that.
    """

    def __init__(
        self,
        extractor: Callable[[Record], int],
        max_delay_ms: int = 0,
        previous_watermark: Optional[int] = None,
        clock: Clock = now_millis,
    ) -> None:
        if max_delay_ms < 0:
            raise ValueError("max_delay_ms must be >= 0")
        self._extractor = extractor
        self._max_delay = max_delay_ms
        self._clock = clock
        self._max_event_timestamp: int = MIN_TIMESTAMP
        self._watermark: int = previous_watermark if previous_watermark is not None else MIN_TIMESTAMP

    def get_timestamp_for_record(self, ctx: PartitionContext, record: Record) -> int:
        ts: int = self._extractor(record)
        if ts > self._max_event_timestamp:
            self._max_event_timestamp = ts
        return ts

    def get_watermark(self, ctx: PartitionContext) -> int:
        if ctx.backlog == 0:
            candidate = self._clock() - self._max_delay
        elif self._max_event_timestamp == MIN_TIMESTAMP:
            candidate = MIN_TIMESTAMP
        else:
            candidate = self._max_event_timestamp - self._max_delay
        self._watermark = max(self._watermark, candidate)
        return self._watermark


class EndOfSourceAwarePolicy(TimestampPolicy):
    """
    Record timestamps, plus an "infinite" watermark once the partition is exhausted.

    max_offset is the last offset that will ever be read from the partition. When it
    is None, the end offset the reader last observed is used instead (end_offset - 1),
    which suits replays of a topic that is no longer written to.
    """

    def __init__(self, max_offset: Optional[int] = None, previous_watermark: Optional[int] = None) -> None:
        self._max_offset = max_offset
        self._last_offset: Optional[int] = None
        self._last_timestamp: int = previous_watermark if previous_watermark is not None else MIN_TIMESTAMP

    def get_timestamp_for_record(self, ctx: PartitionContext, record: Record) -> int:
        self._last_offset = record.offset
        self._last_timestamp = max(self._last_timestamp, record.timestamp)
        return record.timestamp

    def _limit(self, ctx: PartitionContext) -> Optional[int]:
        if self._max_offset is not None:
            return self._max_offset
        if ctx.end_offset is not None:
            return ctx.end_offset - 1
        return None

    def get_watermark(self, ctx: PartitionContext) -> int:
        limit = self._limit(ctx)
        if self._last_offset is not None and limit is not None and self._last_offset >= limit:
            return MAX_TIMESTAMP
        return self._last_timestamp


# ---- factories ----

def processing_time(clock: Clock = now_millis) -> TimestampPolicyFactory:
    return lambda partition, previous: ProcessingTimePolicy(previous, clock)


def log_append_time(idle_delta_ms: int = LogAppendTimePolicy.IDLE_WATERMARK_DELTA_MS) -> TimestampPolicyFactory:
    return lambda partition, previous: LogAppendTimePolicy(previous, idle_delta_ms)


def with_timestamp_fn(
    extractor: Callable[[Record], int], max_delay_ms: int = 0, clock: Clock = now_millis
) -> TimestampPolicyFactory:
    return lambda partition, previous: CustomTimestampPolicy(extractor, max_delay_ms, previous, clock)


def with_end_of_source(max_offset: Optional[int] = None) -> TimestampPolicyFactory:
    return lambda partition, previous: EndOfSourceAwarePolicy(max_offset, previous)
