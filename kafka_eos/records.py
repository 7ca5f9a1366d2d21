"""
Value types shared by the reader, the checkpoint mark and the sinks.

Timestamps are integer epoch milliseconds, the unit Kafka itself uses for
record timestamps (CreateTime / LogAppendTime).
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Optional

from confluent_kafka import TopicPartition

# Watermark sentinels. MIN_TIMESTAMP also means "unknown" (no record seen yet).
MIN_TIMESTAMP: int = -9_223_372_036_854_775
MAX_TIMESTAMP: int = 9_223_372_036_854_775


def now_millis() -> int:
    return int(time.time() * 1000)


class TimestampType(enum.IntEnum):
    """Mirrors confluent_kafka.TIMESTAMP_* (0, 1, 2)."""

    NOT_AVAILABLE = 0
    CREATE_TIME = 1
    LOG_APPEND_TIME = 2


@dataclass(frozen=True, order=True)
class PartitionId:
    """
    One partition of a topic.

    Ordered by (topic, partition); string form is "<topic>-<partition>",
    the same form Kafka tooling prints, e.g. "topic_a-3".
    """

    topic: str
    partition: int

    def __str__(self) -> str:
        return f"{self.topic}-{self.partition}"

    @classmethod
    def parse(cls, text: str) -> "PartitionId":
        # Topic names may contain '-', the partition number never does.
        topic, sep, number = text.rpartition("-")
        if not sep or not topic or not number.isdigit():
            raise ValueError(f"not a partition id: {text!r}")
        return cls(topic, int(number))

    def to_topic_partition(self, offset: Optional[int] = None) -> TopicPartition:
        if offset is None:
            return TopicPartition(self.topic, self.partition)
        return TopicPartition(self.topic, self.partition, offset)

    @classmethod
    def from_topic_partition(cls, tp: TopicPartition) -> "PartitionId":
        return cls(tp.topic, tp.partition)


@dataclass(frozen=True)
class LogPosition:
    """(partition, offset). Ordered within a partition only."""

    partition: PartitionId
    offset: int

    def __lt__(self, other: "LogPosition") -> bool:
        if self.partition != other.partition:
            raise TypeError(f"positions of {self.partition} and {other.partition} are not comparable")
        return self.offset < other.offset


@dataclass(frozen=True)
class Record:
    """A fetched record. Immutable once fetched."""

    partition: PartitionId
    offset: int
    key: Optional[bytes]
    value: Optional[bytes]
    timestamp: int
    timestamp_type: TimestampType = TimestampType.CREATE_TIME

    @property
    def position(self) -> LogPosition:
        return LogPosition(self.partition, self.offset)

    @property
    def size(self) -> int:
        """Serialized key + value size in bytes (tombstones count as 0)."""
        return len(self.key or b"") + len(self.value or b"")


@dataclass(frozen=True)
class OutgoingRecord:
    """
    A record handed to a sink.

    sequence: optional id that is stable across replays of the same input
    (e.g. the input offset). The exactly-once sink uses it to skip records a
    previous attempt already committed.
    """

    key: Optional[bytes]
    value: Optional[bytes]
    timestamp: Optional[int] = None
    sequence: Optional[int] = None
