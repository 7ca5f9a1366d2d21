"""
Sinks writing back to Kafka.

ExactlyOnceSink: records are routed to per-shard transactional writers. A bundle of
writes is made visible atomically together with a consumer-group offset that records
how far each shard has got:

    write(...)*  -> begin_transaction (lazily), produce async
    finalize_bundle()
                 -> wait for in-flight sends
                 -> send_offsets_to_transaction(sink_group, {<topic>-<shard>: next_seq})
                 -> send_offsets_to_transaction(input_group, input offsets)   last shard, if given
                 -> commit_transaction
    on any failure -> abort_transaction, nothing visible, nothing advanced

The offset attached to a shard is its next sequence id. On start-up every shard reads
it back, so records carrying an upstream `sequence` below it (already committed by an
earlier attempt of the same bundle) are skipped. Exactly-once therefore comes from
replaying the whole bundle plus the atomic commit; nothing is retried in here.

AtLeastOnceSink: plain async produce; the first delivery error is remembered and
raised on the next write()/flush()/close().
"""

from __future__ import annotations

import enum
import itertools
import threading
import zlib
from concurrent.futures import Future
from concurrent.futures import wait as wait_futures
from typing import Callable, Dict, Mapping, Optional, Set

from loguru import logger

from .client import TransactionalWriter, WriterFactory, confluent_writer_factory
from .config import KafkaEosSettings, get_settings
from .errors import ClosedError, CommitConflict, KafkaEosError, SendError
from .metrics import Metrics, NoopMetrics
from .records import LogPosition, OutgoingRecord, PartitionId

ShardFn = Callable[[OutgoingRecord], int]


class KeyHashRouter:
    """crc32(key) % num_shards; keyless records are dealt round robin."""

    def __init__(self, num_shards: int) -> None:
        if num_shards < 1:
            raise ValueError("num_shards must be >= 1")
        self.num_shards = num_shards
        self._rr = itertools.count()

    def __call__(self, record: OutgoingRecord) -> int:
        if record.key is None:
            return next(self._rr) % self.num_shards
        return zlib.crc32(record.key) % self.num_shards


class _InFlight:
    """Bounded set of unacknowledged sends with first-error capture.

    A future leaves the set as soon as it completes, so the set never holds more
    than `limit` entries.
    """

    def __init__(self, limit: int, closed: threading.Event) -> None:
        self._slots = threading.Semaphore(limit)
        self._closed = closed
        self._lock = threading.Lock()
        self.futures: Set["Future[LogPosition]"] = set()
        self.first_error: Optional[BaseException] = None
        self.acked = 0
        self._generation = 0

    def acquire(self) -> None:
        # Backpressure: block while the cap is reached, but give up once closed.
        while not self._slots.acquire(timeout=0.1):
            if self._closed.is_set():
                raise ClosedError("sink closed while waiting for an in-flight slot")

    def track(self, fut: "Future[LogPosition]") -> None:
        with self._lock:
            self.futures.add(fut)
            generation = self._generation
        fut.add_done_callback(lambda f: self._on_done(f, generation))

    def release_unsent(self) -> None:
        self._slots.release()

    def _on_done(self, fut: "Future[LogPosition]", generation: int) -> None:
        self._slots.release()
        exc = fut.exception()
        with self._lock:
            self.futures.discard(fut)
            if generation != self._generation:
                # late completion of a send from an aborted transaction
                return
            if exc is None:
                self.acked += 1
            elif self.first_error is None:
                self.first_error = exc

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self.futures)

    def wait(self, timeout: Optional[float]) -> None:
        with self._lock:
            pending = list(self.futures)
        _, not_done = wait_futures(pending, timeout=timeout)
        if not_done:
            with self._lock:
                if self.first_error is None:
                    self.first_error = SendError(f"{len(not_done)} sends unacknowledged after {timeout}s")

    def reset(self) -> None:
        with self._lock:
            self.futures = set()
            self.first_error = None
            self.acked = 0
            self._generation += 1


class ShardState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    COMMITTING = "committing"
    ABORTING = "aborting"


class ShardWriter:
    """One shard's transactional writer and its IDLE -> SENDING -> COMMITTING state machine."""

    def __init__(
        self,
        shard: int,
        writer: TransactionalWriter,
        topic: str,
        settings: KafkaEosSettings,
        metrics: Metrics,
        closed: threading.Event,
    ) -> None:
        self.shard = shard
        self.writer = writer
        self.topic = topic
        self.state = ShardState.IDLE
        self.epoch = 0
        self.committed_seq = 0
        self.next_seq = 0
        self._settings = settings
        self._metrics = metrics
        self._group = settings.sink_group_id
        self._progress = PartitionId(topic, shard)
        self._in_flight = _InFlight(settings.max_in_flight, closed)

    def open(self) -> None:
        self.writer.init_transactions()
        committed: Optional[int] = self.writer.committed_offset(self._group, self._progress)
        self.committed_seq = committed if committed is not None else 0
        self.next_seq = self.committed_seq
        logger.info(f"[SHARD] {self._progress} ready, committed seq={self.committed_seq}")

    def write(self, record: OutgoingRecord) -> bool:
        """Send one record inside the shard's transaction; False if it was already committed."""
        if self._in_flight.first_error is not None:
            err = self._in_flight.first_error
            raise SendError(f"shard {self.shard}: earlier send failed: {err}") from err

        if record.sequence is not None and record.sequence < self.committed_seq:
            logger.debug(f"[SKIP] shard={self.shard} seq={record.sequence} already committed")
            return False

        self.begin()

        seq = record.sequence if record.sequence is not None else self.next_seq
        self._in_flight.acquire()
        try:
            fut = self.writer.send(self.topic, record)
        except KafkaEosError:
            self._in_flight.release_unsent()
            raise
        self._in_flight.track(fut)
        self.next_seq = max(self.next_seq, seq + 1)
        return True

    def begin(self) -> None:
        """Open a transaction unless one is already live."""
        if self.state is ShardState.IDLE:
            self.epoch += 1
            self.writer.begin_transaction(self.epoch)
            self._in_flight.reset()
            self.state = ShardState.SENDING

    @property
    def live(self) -> bool:
        return self.state is not ShardState.IDLE

    def finalize(
        self,
        input_group: Optional[str] = None,
        input_offsets: Optional[Mapping[PartitionId, int]] = None,
    ) -> None:
        """Commit the live transaction, with `input_offsets` for `input_group` if given."""
        if not self.live:
            return
        self._in_flight.wait(self._settings.transaction_timeout_seconds)
        err = self._in_flight.first_error
        if err is not None:
            logger.error(f"[TX] shard={self.shard} epoch={self.epoch} send failed, aborting: {err}")
            self.abort()
            raise SendError(f"shard {self.shard}: send failed: {err}") from err

        self.state = ShardState.COMMITTING
        try:
            self.writer.send_offsets_to_transaction(self._group, {self._progress: self.next_seq})
            if input_offsets:
                self.writer.send_offsets_to_transaction(input_group, input_offsets)
            self.writer.commit_transaction()
        except KafkaEosError as e:
            logger.error(f"[TX] shard={self.shard} epoch={self.epoch} commit failed, aborting: {e}")
            self._abort_quietly()
            if isinstance(e, CommitConflict):
                raise
            raise CommitConflict(f"shard {self.shard}: {e}") from e

        acked = self._in_flight.acked
        self.committed_seq = self.next_seq
        self._in_flight.reset()
        self.state = ShardState.IDLE
        self._metrics.records_written(str(self._progress), acked)
        logger.info(f"[TX] commit ok shard={self.shard} epoch={self.epoch} records={acked} seq={self.committed_seq}")

    def abort(self) -> None:
        if not self.live:
            return
        self.state = ShardState.ABORTING
        try:
            self.writer.abort_transaction()
            logger.warning(f"[TX] aborted shard={self.shard} epoch={self.epoch}")
        finally:
            self.next_seq = self.committed_seq
            self._in_flight.reset()
            self.state = ShardState.IDLE

    def _abort_quietly(self) -> None:
        try:
            self.abort()
        except KafkaEosError as e:
            # The commit error is what the caller needs to see.
            logger.error(f"[TX] shard={self.shard} abort after failed commit also failed: {e}")


class ExactlyOnceSink:
    def __init__(
        self,
        topic: str,
        *,
        writer_factory: Optional[WriterFactory] = None,
        settings: Optional[KafkaEosSettings] = None,
        metrics: Optional[Metrics] = None,
        shard_fn: Optional[ShardFn] = None,
    ) -> None:
        self.topic = topic
        self._settings = settings or get_settings()
        self._metrics = metrics or NoopMetrics()
        self._writer_factory = writer_factory or confluent_writer_factory(self._settings)
        self.num_shards = self._settings.sink_num_shards
        self._route: ShardFn = shard_fn or KeyHashRouter(self.num_shards)
        self._shards: Dict[int, ShardWriter] = {}
        self._closed = threading.Event()

    def _check_open(self) -> None:
        if self._closed.is_set():
            raise ClosedError(f"sink for {self.topic} is closed")

    def shard(self, shard: int) -> ShardWriter:
        writer = self._shards.get(shard)
        if writer is None:
            if not 0 <= shard < self.num_shards:
                raise ValueError(f"shard {shard} out of range [0, {self.num_shards})")
            writer = ShardWriter(
                shard, self._writer_factory(shard), self.topic, self._settings, self._metrics, self._closed
            )
            writer.open()
            self._shards[shard] = writer
        return writer

    def write(self, record: OutgoingRecord) -> bool:
        self._check_open()
        return self.shard(self._route(record)).write(record)

    def finalize_bundle(
        self,
        input_offsets: Optional[Mapping[PartitionId, int]] = None,
        input_group: Optional[str] = None,
    ) -> None:
        """
        Commit every shard with a live transaction. On the first failure the rest are aborted.

        `input_offsets` (next offsets to consume, for consumer group `input_group`,
        default settings.group_id) ride on the last shard's transaction, so the input
        only advances once every shard of the bundle is committed. With nothing
        written, shard 0 commits them alone.
        """
        self._check_open()
        live = [w for w in self._shards.values() if w.live]
        if input_offsets and not live:
            first = self.shard(0)
            first.begin()
            live = [first]
        group = input_group or self._settings.group_id
        for i, w in enumerate(live):
            last = i == len(live) - 1
            try:
                if last and input_offsets:
                    w.finalize(group, input_offsets)
                else:
                    w.finalize()
            except KafkaEosError:
                for other in live[i + 1:]:
                    other._abort_quietly()
                raise

    def abort_bundle(self) -> None:
        self._check_open()
        for w in self._shards.values():
            w.abort()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for w in self._shards.values():
            w._abort_quietly()
            w.writer.close()
        logger.info(f"[CLOSED] exactly-once sink for {self.topic} closed cleanly.")


class AtLeastOnceSink:
    """Asynchronous sends; a failed delivery is raised on the next call, never dropped."""

    def __init__(
        self,
        topic: str,
        *,
        writer_factory: Optional[WriterFactory] = None,
        settings: Optional[KafkaEosSettings] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.topic = topic
        self._settings = settings or get_settings()
        self._metrics = metrics or NoopMetrics()
        factory = writer_factory or confluent_writer_factory(self._settings, transactional=False)
        self._writer: TransactionalWriter = factory(0)
        self._closed = threading.Event()
        self._in_flight = _InFlight(self._settings.max_in_flight, self._closed)
        self._reported = 0

    @property
    def in_flight(self) -> int:
        """Sends not yet acknowledged."""
        return self._in_flight.pending

    def _raise_pending(self) -> None:
        err = self._in_flight.first_error
        if err is not None:
            raise SendError(f"send to {self.topic} failed: {err}") from err

    def write(self, record: OutgoingRecord) -> None:
        if self._closed.is_set():
            raise ClosedError(f"sink for {self.topic} is closed")
        self._raise_pending()
        self._in_flight.acquire()
        try:
            fut = self._writer.send(self.topic, record)
        except KafkaEosError:
            self._in_flight.release_unsent()
            raise
        self._in_flight.track(fut)

    def flush(self) -> None:
        if self._closed.is_set():
            raise ClosedError(f"sink for {self.topic} is closed")
        self._in_flight.wait(self._settings.transaction_timeout_seconds)
        self._report_written()
        self._raise_pending()

    def _report_written(self) -> None:
        acked = self._in_flight.acked
        if acked > self._reported:
            self._metrics.records_written(self.topic, acked - self._reported)
            self._reported = acked

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._in_flight.wait(self._settings.transaction_timeout_seconds)
        self._closed.set()
        self._writer.close()
        self._report_written()
        logger.info(f"[CLOSED] at-least-once sink for {self.topic} closed.")
        self._raise_pending()
