from __future__ import annotations

import threading

from kafka_eos.cursor import PartitionCursor
from kafka_eos.records import MIN_TIMESTAMP, PartitionId, Record
from kafka_eos.timestamps import ProcessingTimePolicy

PART = PartitionId("topic_a", 0)


class Clock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def rec(offset: int, size: int = 12) -> Record:
    return Record(PART, offset, b"k" * 4, b"v" * (size - 4), 1_000 + offset)


def make_cursor(clock: Clock, capacity: int = 10, previous=None) -> PartitionCursor:
    return PartitionCursor(PART, ProcessingTimePolicy(previous, clock), capacity, previous)


def test_take_delivers_in_offset_order_and_skips_redeliveries():
    cursor = make_cursor(Clock(0))
    cursor.seeked(5, 10)
    stop = threading.Event()
    for off in (3, 4, 5, 6, 6, 7):
        assert cursor.offer(rec(off), stop)

    got = []
    record = cursor.take()
    while record is not None:
        got.append(record.offset)
        record = cursor.take()
    assert got == [5, 6, 7]
    assert cursor.next_offset_to_read == 8
    assert cursor.last_delivered_offset == 7


def test_offer_gives_up_when_stopped():
    cursor = make_cursor(Clock(0), capacity=1)
    stop = threading.Event()
    assert cursor.offer(rec(0), stop)
    stop.set()
    assert cursor.offer(rec(1), stop, poll_interval=0.01) is False


def test_backlog_never_negative_and_end_tracks_delivery():
    cursor = make_cursor(Clock(0))
    cursor.seeked(0, 2)
    stop = threading.Event()
    for off in range(4):
        cursor.offer(rec(off), stop)
    for _ in range(4):
        cursor.take()
    assert cursor.backlog == 0
    assert cursor.end_offset == 4

    cursor.update_end_offset(3)
    assert cursor.end_offset == 4
    cursor.update_end_offset(10)
    assert cursor.backlog == 6


def test_backlog_bytes_uses_average_record_size():
    cursor = make_cursor(Clock(0))
    cursor.seeked(0, 10)
    stop = threading.Event()
    cursor.offer(rec(0, size=10), stop)
    cursor.offer(rec(1, size=20), stop)
    cursor.take()
    cursor.take()
    assert cursor.backlog == 8
    assert cursor.backlog_bytes == 8 * 15


def test_watermark_unknown_until_first_record():
    clock = Clock(5_000)
    cursor = make_cursor(clock)
    cursor.seeked(0, 1)
    assert cursor.watermark() == MIN_TIMESTAMP

    cursor.offer(rec(0), threading.Event())
    cursor.stamp(cursor.take())
    assert cursor.watermark() == 5_000


def test_restored_watermark_is_known_and_never_regresses():
    clock = Clock(1_000)
    cursor = make_cursor(clock, previous=9_000)
    cursor.seeked(0, 0)
    assert cursor.watermark() == 9_000
    clock.now = 12_000
    assert cursor.watermark() == 12_000


def test_offline_partition_freezes_watermark():
    clock = Clock(1_000)
    cursor = make_cursor(clock)
    cursor.seeked(0, 5)
    stop = threading.Event()
    cursor.offer(rec(0), stop)
    cursor.stamp(cursor.take())
    assert cursor.watermark() == 1_000

    cursor.mark_offline()
    clock.now = 50_000
    assert cursor.watermark() == 1_000

    # records flowing again bring the partition back
    cursor.offer(rec(1), stop)
    cursor.stamp(cursor.take())
    assert cursor.offline is False
    assert cursor.watermark() == 50_000


def test_checkpoint_stores_last_consumed_offset():
    cursor = make_cursor(Clock(0))
    cursor.seeked(7, 20)
    mark = cursor.checkpoint()
    assert (mark.offset, mark.next_offset) == (6, 7)

    cursor.offer(rec(7), threading.Event())
    cursor.take()
    assert cursor.checkpoint().offset == 7
