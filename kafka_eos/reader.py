"""
PartitionedSource / PartitionedReader: unbounded, checkpointable reads over many partitions.

Flow:
    start()    assign partitions, seek every cursor (checkpoint, start policy), start fetch thread
    fetch      background thread: client.poll() -> per-partition bounded queues
    advance()  foreground, non-blocking: round-robin over cursors, emit first buffered record
    checkpoint get_checkpoint_mark() freezes what has been *emitted* (never what was only fetched)

Fairness: advance() starts at the cursor after the one served last and wraps once, so a
busy partition can never starve a quiet one.
"""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from .checkpoint import CheckpointMark
from .client import ClientFactory, PartitionClient, confluent_client_factory
from .config import KafkaEosSettings, get_settings
from .cursor import PartitionCursor
from .errors import (
    ClosedError,
    DecodeError,
    InitializationTimeout,
    KafkaEosError,
    NotStartedError,
    PermanentPartitionError,
    TransientFetchError,
)
from .metrics import Metrics, NoopMetrics
from .records import MIN_TIMESTAMP, PartitionId, Record
from .timestamps import TimestampPolicyFactory, processing_time


class StartKind(enum.Enum):
    EARLIEST = "earliest"
    LATEST = "latest"
    EXPLICIT_TIMESTAMP = "timestamp"
    EXPLICIT_OFFSETS = "offsets"
    COMMITTED = "committed"


@dataclass(frozen=True)
class StartPolicy:
    """Where a reader without a checkpoint mark starts in each partition."""

    kind: StartKind = StartKind.EARLIEST
    timestamp: Optional[int] = None
    offsets: Mapping[PartitionId, int] = field(default_factory=dict)

    @classmethod
    def earliest(cls) -> "StartPolicy":
        return cls(StartKind.EARLIEST)

    @classmethod
    def latest(cls) -> "StartPolicy":
        return cls(StartKind.LATEST)

    @classmethod
    def at_timestamp(cls, timestamp: int) -> "StartPolicy":
        return cls(StartKind.EXPLICIT_TIMESTAMP, timestamp=timestamp)

    @classmethod
    def at_offsets(cls, offsets: Mapping[PartitionId, int]) -> "StartPolicy":
        return cls(StartKind.EXPLICIT_OFFSETS, offsets=dict(offsets))

    @classmethod
    def committed(cls) -> "StartPolicy":
        """The consumer group's committed offsets; the beginning where none exist."""
        return cls(StartKind.COMMITTED)


def _fmt_parts(parts: Sequence[PartitionId]) -> str:
    return ", ".join(str(p) for p in parts)


class PartitionedSource:
    """
    Everything needed to build readers: what to read, from where, and with which client.

    Either `topics` (partitions discovered through the client) or explicit
    `partitions` must be given.
    """

    def __init__(
        self,
        *,
        topics: Optional[Sequence[str]] = None,
        partitions: Optional[Sequence[PartitionId]] = None,
        start: StartPolicy = StartPolicy(),
        timestamp_policy: Optional[TimestampPolicyFactory] = None,
        client_factory: ClientFactory = confluent_client_factory,
        settings: Optional[KafkaEosSettings] = None,
        metrics: Optional[Metrics] = None,
        split_id: int = 0,
    ) -> None:
        if not topics and not partitions:
            raise ValueError("either topics or partitions must be given")
        if topics and partitions:
            raise ValueError("topics and partitions are mutually exclusive")
        self.topics: Tuple[str, ...] = tuple(topics or ())
        self._partitions: Optional[Tuple[PartitionId, ...]] = tuple(partitions) if partitions else None
        self.start = start
        self.timestamp_policy: TimestampPolicyFactory = timestamp_policy or processing_time()
        self.client_factory = client_factory
        self.settings: KafkaEosSettings = settings or get_settings()
        self.metrics: Metrics = metrics or NoopMetrics()
        self.split_id = split_id

    def discover_partitions(self) -> Tuple[PartitionId, ...]:
        if self._partitions is not None:
            return self._partitions
        client: PartitionClient = self.client_factory(self.settings.consumer_config())
        try:
            found: List[PartitionId] = []
            for topic in self.topics:
                found.extend(client.partitions_for(topic))
        finally:
            client.close()
        if not found:
            raise PermanentPartitionError(f"no partitions found for topics {list(self.topics)}")
        self._partitions = tuple(found)
        logger.debug(f"[DISCOVER] {len(found)} partitions for {list(self.topics)}")
        return self._partitions

    def _with_partitions(self, partitions: Sequence[PartitionId], split_id: int) -> "PartitionedSource":
        return PartitionedSource(
            partitions=partitions,
            start=self.start,
            timestamp_policy=self.timestamp_policy,
            client_factory=self.client_factory,
            settings=self.settings,
            metrics=self.metrics,
            split_id=split_id,
        )

    def split(self, desired: int) -> List["PartitionedSource"]:
        """
        min(desired, partition count) sources over disjoint partition sets covering all.

        Partitions are sorted by (partition, topic) and dealt round-robin: with 2 topics
        of 10 partitions and 10 splits, split 0 gets topic_a-0 and topic_a-5.
        """
        if desired < 1:
            raise ValueError("desired number of splits must be >= 1")
        parts: List[PartitionId] = sorted(self.discover_partitions(), key=lambda p: (p.partition, p.topic))
        count: int = min(desired, len(parts))
        groups: List[List[PartitionId]] = [[] for _ in range(count)]
        for i, p in enumerate(parts):
            groups[i % count].append(p)
        for i, g in enumerate(groups):
            logger.debug(f"[SPLIT] split {i}: {_fmt_parts(g)}")
        return [self._with_partitions(g, i) for i, g in enumerate(groups)]

    def create_reader(self, checkpoint_mark: Optional[CheckpointMark] = None) -> "PartitionedReader":
        return PartitionedReader(self, checkpoint_mark)


class PartitionedReader:
    def __init__(self, source: PartitionedSource, checkpoint_mark: Optional[CheckpointMark] = None) -> None:
        self._source = source
        self._settings: KafkaEosSettings = source.settings
        self._metrics: Metrics = source.metrics
        self.name: str = f"Reader-{source.split_id}"
        self.partitions: Tuple[PartitionId, ...] = source.discover_partitions()

        if checkpoint_mark is not None:
            covered = {m.partition for m in checkpoint_mark.partitions}
            if covered != set(self.partitions):
                raise DecodeError(
                    f"{self.name}: checkpoint mark covers [{_fmt_parts(sorted(covered))}] "
                    f"but the reader is assigned [{_fmt_parts(self.partitions)}]"
                )
        self._checkpoint_mark = checkpoint_mark

        self._cursors: List[PartitionCursor] = []
        for p in self.partitions:
            mark = checkpoint_mark.get(p) if checkpoint_mark is not None else None
            previous = mark.watermark if mark is not None and mark.watermark != MIN_TIMESTAMP else None
            self._cursors.append(PartitionCursor(
                p, source.timestamp_policy(p, previous), self._settings.max_buffered_records, previous
            ))

        self._client: Optional[PartitionClient] = None
        self._client_busy = False           # a seek timed out and still holds the client
        self._started = False
        self._closed = threading.Event()
        self._fetch_thread: Optional[threading.Thread] = None
        self._fetch_error: Optional[BaseException] = None

        self._commit_lock = threading.Lock()
        self._pending_commit: Optional[CheckpointMark] = None

        self._cur_index: int = -1
        self._current: Optional[Record] = None
        self._current_timestamp: Optional[int] = None

    def __enter__(self) -> "PartitionedReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def source(self) -> PartitionedSource:
        return self._source

    @property
    def started(self) -> bool:
        return self._started

    # ------------------------------------------------------------------ start

    def start(self) -> bool:
        """Seek every partition, start fetching, and try to emit a first record."""
        if self._closed.is_set():
            raise ClosedError(f"{self.name} is closed")
        if self._started:
            raise KafkaEosError(f"{self.name} already started")

        self._client = self._source.client_factory(self._settings.consumer_config())
        self._client.assign(self.partitions)
        logger.info(f"[ASSIGN] {self.name} now responsible for: {_fmt_parts(self.partitions)}")

        # A partition that cannot be positioned in time fails the whole start
        # instead of being skipped.
        for cursor in self._cursors:
            self._bounded_seek(self._client, cursor)

        self._fetch_thread = threading.Thread(target=self._fetch_loop, name=f"{self.name}-fetch", daemon=True)
        self._fetch_thread.start()
        self._started = True
        logger.info(f"[START] {self.name} reading {len(self._cursors)} partitions")
        return self.advance()

    def _bounded_seek(self, client: PartitionClient, cursor: PartitionCursor) -> None:
        # The seek runs on a daemon thread: one stuck past the bound is abandoned
        # and never holds up interpreter exit.
        done = threading.Event()
        failure: List[Exception] = []

        def _run() -> None:
            try:
                self._seek_cursor(client, cursor)
            except Exception as e:  # noqa: BLE001
                failure.append(e)
            finally:
                done.set()

        threading.Thread(target=_run, name=f"{self.name}-init-{cursor.partition}", daemon=True).start()
        if not done.wait(self._settings.init_timeout_seconds):
            self._client_busy = True
            msg = f"{self.name}: Timeout while initializing partition '{cursor.partition}'"
            logger.error(f"[INIT] {msg}")
            raise InitializationTimeout(msg, cursor.partition)
        if failure:
            raise failure[0]

    def _start_offset(self, client: PartitionClient, partition: PartitionId) -> int:
        if self._checkpoint_mark is not None:
            mark = self._checkpoint_mark.get(partition)
            if mark is not None:
                return mark.next_offset

        start = self._source.start
        if start.kind is StartKind.LATEST:
            return client.end_offset(partition)
        if start.kind is StartKind.EXPLICIT_TIMESTAMP:
            found = client.offsets_for_timestamps({partition: start.timestamp}).get(partition)
            if found is None:
                raise PermanentPartitionError(
                    f"{self.name}: no record at or after timestamp {start.timestamp} in '{partition}'",
                    partition,
                )
            return found
        if start.kind is StartKind.EXPLICIT_OFFSETS and partition in start.offsets:
            return start.offsets[partition]
        if start.kind is StartKind.COMMITTED:
            committed = client.committed_offset(partition)
            if committed is not None:
                return committed
        return client.beginning_offset(partition)

    def _seek_cursor(self, client: PartitionClient, cursor: PartitionCursor) -> None:
        attempt = 0
        backoff = self._settings.fetch_backoff_initial_seconds
        while True:
            try:
                offset = self._start_offset(client, cursor.partition)
                end = client.end_offset(cursor.partition)
                client.seek(cursor.partition, offset)
                break
            except TransientFetchError as e:
                attempt += 1
                if attempt > self._settings.fetch_max_retries:
                    raise
                logger.warning(f"[SEEK-RETRY] {self.name} {cursor.partition} attempt={attempt}: {e}")
                time.sleep(backoff)
                backoff = min(backoff * 2, self._settings.fetch_backoff_max_seconds)
        cursor.seeked(offset, end)
        logger.debug(f"[SEEK] {self.name} {cursor.partition} -> offset {offset} (end {end})")

    # ------------------------------------------------------------------ fetch thread

    def _fetch_loop(self) -> None:
        assert self._client is not None
        client = self._client
        by_partition: Dict[PartitionId, PartitionCursor] = {c.partition: c for c in self._cursors}
        poll_timeout = self._settings.poll_timeout_seconds
        failures = 0
        backoff = self._settings.fetch_backoff_initial_seconds
        next_refresh = time.monotonic() + self._settings.backlog_refresh_seconds

        try:
            while not self._closed.is_set():
                self._commit_pending(client)

                if time.monotonic() >= next_refresh:
                    self._refresh_backlog(client)
                    next_refresh = time.monotonic() + self._settings.backlog_refresh_seconds

                try:
                    records: List[Record] = client.poll(poll_timeout)
                except TransientFetchError as e:
                    failures += 1
                    if e.offline and e.partition in by_partition:
                        by_partition[e.partition].mark_offline()
                    if failures > self._settings.fetch_max_retries:
                        raise
                    logger.warning(f"[FETCH-RETRY] {self.name} attempt={failures} backoff={backoff:.2f}s: {e}")
                    self._closed.wait(backoff)
                    backoff = min(backoff * 2, self._settings.fetch_backoff_max_seconds)
                    continue

                failures = 0
                backoff = self._settings.fetch_backoff_initial_seconds
                for record in records:
                    cursor = by_partition.get(record.partition)
                    if cursor is None:
                        logger.warning(f"[FETCH] {self.name} ignoring record from unassigned {record.partition}")
                        continue
                    if not cursor.offer(record, self._closed):
                        return
        except Exception as e:  # noqa: BLE001
            # Handed to the foreground: advance() raises it once the buffers are drained.
            logger.error(f"[FETCH-FATAL] {self.name}: {e!r}")
            self._fetch_error = e

    def _refresh_backlog(self, client: PartitionClient) -> None:
        for cursor in self._cursors:
            try:
                cursor.update_end_offset(client.end_offset(cursor.partition))
            except TransientFetchError as e:
                logger.debug(f"[BACKLOG] {self.name} {cursor.partition} end offset unavailable: {e}")
                if e.offline:
                    cursor.mark_offline()
        self._metrics.backlog_records(self.name, self.get_split_backlog_records())
        self._metrics.backlog_bytes(self.name, self.get_split_backlog_bytes())

    def _commit_pending(self, client: PartitionClient) -> None:
        with self._commit_lock:
            mark, self._pending_commit = self._pending_commit, None
        if mark is None:
            return
        offsets = mark.next_offsets()
        try:
            client.commit(offsets)
            logger.debug(f"[COMMIT] {self.name} group offsets {offsets}")
        except KafkaEosError as e:
            # Best effort: the checkpoint mark, not the group offset, drives resumption.
            logger.warning(f"[COMMIT-ERROR] {self.name} finalized offsets not committed: {e}")

    def _enqueue_commit(self, mark: CheckpointMark) -> None:
        if self._closed.is_set():
            logger.debug(f"[COMMIT] {self.name} closed, dropping finalized checkpoint")
            return
        with self._commit_lock:
            # Only the newest mark matters; offsets in it supersede older ones.
            self._pending_commit = mark
        self._metrics.checkpoint_commits_enqueued(self.name)

    # ------------------------------------------------------------------ foreground

    def _check_usable(self) -> None:
        if self._closed.is_set():
            raise ClosedError(f"{self.name} is closed")
        if not self._started:
            raise NotStartedError(f"{self.name}: start() has not completed")

    def advance(self) -> bool:
        """Emit the next buffered record, round-robin over partitions. Never blocks."""
        self._check_usable()
        n = len(self._cursors)
        for i in range(n):
            idx = (self._cur_index + 1 + i) % n
            cursor = self._cursors[idx]
            record = cursor.take()
            if record is None:
                continue
            self._cur_index = idx
            self._current_timestamp = cursor.stamp(record)
            self._current = record
            self._metrics.records_read(self.name, 1)
            self._metrics.bytes_read(self.name, record.size)
            return True

        if self._fetch_error is not None:
            raise self._fetch_error
        return False

    def get_current(self) -> Record:
        if self._current is None:
            raise KafkaEosError(f"{self.name}: no current record")
        return self._current

    def get_current_timestamp(self) -> int:
        if self._current_timestamp is None:
            raise KafkaEosError(f"{self.name}: no current record")
        return self._current_timestamp

    def get_watermark(self) -> int:
        if not self._started:
            return MIN_TIMESTAMP
        return min(c.watermark() for c in self._cursors)

    def get_checkpoint_mark(self) -> CheckpointMark:
        self._check_usable()
        finalizer = self._enqueue_commit if self._settings.commit_offsets_in_finalize else None
        return CheckpointMark(tuple(c.checkpoint() for c in self._cursors), finalizer)

    def get_split_backlog_records(self) -> int:
        return sum(c.backlog for c in self._cursors)

    def get_split_backlog_bytes(self) -> int:
        return sum(c.backlog_bytes for c in self._cursors)

    def split(self, desired: int) -> List["PartitionedReader"]:
        """Sub-readers (not started) over a disjoint, covering split of this reader's partitions."""
        return [s.create_reader() for s in self._source.split(desired)]

    # ------------------------------------------------------------------ close

    def close(self) -> None:
        """Stop fetching and release the client. Safe to call from any thread, more than once."""
        if self._closed.is_set():
            return
        self._closed.set()
        thread = self._fetch_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._settings.poll_timeout_seconds * 4 + 1.0)
        if self._client is not None:
            if self._client_busy:
                logger.warning(f"[CLOSE] {self.name} client still blocked in a seek; not closing it")
            else:
                self._client.close()
        for cursor in self._cursors:
            while cursor.take() is not None:
                pass
        logger.info(f"[CLOSED] {self.name} closed cleanly.")


def read_records(
    reader: PartitionedReader,
    max_records: Optional[int] = None,
    idle_timeout: float = 5.0,
    pause: float = 0.001,
) -> List[Tuple[Record, int]]:
    """
    Drain a reader into a list of (record, timestamp) pairs.

    Stops after max_records, or when nothing new arrived for idle_timeout seconds.
    Starts the reader if needed; does not close it.
    """
    out: List[Tuple[Record, int]] = []
    available = reader.start() if not reader.started else reader.advance()
    idle_since = time.monotonic()
    while max_records is None or len(out) < max_records:
        if available:
            out.append((reader.get_current(), reader.get_current_timestamp()))
            idle_since = time.monotonic()
        elif time.monotonic() - idle_since > idle_timeout:
            break
        else:
            time.sleep(pause)
        if max_records is not None and len(out) >= max_records:
            break
        available = reader.advance()
    return out
