"""
Broker contracts used by the reader and the sinks, and their confluent_kafka adapters.

The reader and the sinks only ever talk to these two protocols. Production code
passes factories that build the Confluent adapters below; tests pass factories that
build in-memory doubles. No global registry is involved: whoever builds a source or
a sink decides which client it gets.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from confluent_kafka import OFFSET_INVALID, Consumer, KafkaError, KafkaException, Message, Producer, TopicPartition
from loguru import logger

from .config import KafkaEosSettings
from .errors import CommitConflict, KafkaEosError, SendError, classify_kafka_error
from .records import LogPosition, OutgoingRecord, PartitionId, Record, TimestampType


class PartitionClient(Protocol):
    """Read-side broker contract (one instance per reader, one thread at a time)."""

    def partitions_for(self, topic: str) -> List[PartitionId]: ...

    def assign(self, partitions: Sequence[PartitionId]) -> None: ...

    def seek(self, partition: PartitionId, offset: int) -> None: ...

    def poll(self, timeout: float) -> List[Record]: ...

    def offsets_for_timestamps(
        self, timestamps: Mapping[PartitionId, int]
    ) -> Dict[PartitionId, Optional[int]]: ...

    def beginning_offset(self, partition: PartitionId) -> int: ...

    def end_offset(self, partition: PartitionId) -> int: ...

    def committed_offset(self, partition: PartitionId) -> Optional[int]: ...

    def commit(self, offsets: Mapping[PartitionId, int]) -> None: ...

    def close(self) -> None: ...


class TransactionalWriter(Protocol):
    """Write-side broker contract (one instance per sink shard)."""

    def init_transactions(self) -> None: ...

    def begin_transaction(self, epoch: int) -> None: ...

    def send(self, topic: str, record: OutgoingRecord) -> "Future[LogPosition]": ...

    def flush(self, timeout: float) -> int: ...

    def send_offsets_to_transaction(self, group_id: str, offsets: Mapping[PartitionId, int]) -> None: ...

    def commit_transaction(self) -> None: ...

    def abort_transaction(self) -> None: ...

    def committed_offset(self, group_id: str, partition: PartitionId) -> Optional[int]: ...

    def close(self) -> None: ...


# consumer config dict -> client (mirrors confluent_kafka.Consumer(conf))
ClientFactory = Callable[[Dict[str, Any]], PartitionClient]
# shard id -> writer
WriterFactory = Callable[[int], TransactionalWriter]


# Error events librdkafka reports while it retries by itself.
_INFORMATIONAL_CODES = frozenset({KafkaError._TRANSPORT, KafkaError._ALL_BROKERS_DOWN})


def _translate(e: KafkaException, partition: Optional[PartitionId] = None) -> KafkaEosError:
    err = e.args[0] if e.args and isinstance(e.args[0], KafkaError) else None
    if err is None:
        return classify_kafka_error(KafkaError(KafkaError._FAIL, str(e)), partition)
    return classify_kafka_error(err, partition)


# ------------------------------------------------------------------------------
# Read side
# ------------------------------------------------------------------------------

class ConfluentPartitionClient:
    """
    PartitionClient on top of confluent_kafka.Consumer with manual assignment.

    No subscribe()/rebalancing: the reader owns an explicit partition list, which is
    what makes split() and checkpoint restore deterministic.
    """

    def __init__(self, conf: Dict[str, Any], *, request_timeout: float = 10.0, batch_size: int = 500) -> None:
        self._consumer: Consumer = Consumer(conf)
        self._timeout: float = request_timeout
        self._batch_size: int = batch_size
        # Offsets handed to assign(); librdkafka only honors seek() on partitions that
        # are already fetching, so positions are (re)applied through assign().
        self._positions: Dict[PartitionId, int] = {}
        self._pending_error: Optional[KafkaEosError] = None

    def partitions_for(self, topic: str) -> List[PartitionId]:
        try:
            md = self._consumer.list_topics(topic, timeout=self._timeout)
        except KafkaException as e:
            raise _translate(e) from e
        topic_md = md.topics.get(topic)
        if topic_md is None:
            raise classify_kafka_error(KafkaError(KafkaError.UNKNOWN_TOPIC_OR_PART, f"topic {topic} not found"))
        if topic_md.error is not None:
            raise classify_kafka_error(topic_md.error)
        return [PartitionId(topic, p) for p in sorted(topic_md.partitions)]

    def assign(self, partitions: Sequence[PartitionId]) -> None:
        self._positions = {p: OFFSET_INVALID for p in partitions}
        self._pending_error = None
        self._apply_assignment()

    def seek(self, partition: PartitionId, offset: int) -> None:
        self._positions[partition] = offset
        self._apply_assignment()

    def _apply_assignment(self) -> None:
        tps: List[TopicPartition] = [p.to_topic_partition(off) for p, off in self._positions.items()]
        try:
            self._consumer.assign(tps)
        except KafkaException as e:
            raise _translate(e) from e

    def poll(self, timeout: float) -> List[Record]:
        # An error seen in the previous batch is raised only after that batch's
        # records were handed out: librdkafka's position is already past them.
        if self._pending_error is not None:
            pending, self._pending_error = self._pending_error, None
            raise pending
        try:
            msgs: List[Message] = self._consumer.consume(num_messages=self._batch_size, timeout=timeout)
        except KafkaException as e:
            raise _translate(e) from e

        records: List[Record] = []
        for msg in msgs:
            err: Optional[KafkaError] = msg.error()
            if err is not None:
                # _PARTITION_EOF is just "we read to the end for now", not an error.
                if err.code() == KafkaError._PARTITION_EOF:
                    continue
                # Connection-level events: librdkafka reconnects on its own.
                if err.code() in _INFORMATIONAL_CODES:
                    logger.warning(f"[CONSUMER] {err.name()}: {err.str()}")
                    continue
                part = PartitionId(msg.topic(), msg.partition()) if msg.topic() else None
                if self._pending_error is None:
                    self._pending_error = classify_kafka_error(err, part)
                continue
            ts_type, ts = msg.timestamp()
            records.append(Record(
                partition=PartitionId(msg.topic(), msg.partition()),
                offset=msg.offset(),
                key=msg.key(),
                value=msg.value(),
                timestamp=ts,
                timestamp_type=TimestampType(ts_type),
            ))
        if not records and self._pending_error is not None:
            pending, self._pending_error = self._pending_error, None
            raise pending
        return records

    def offsets_for_timestamps(
        self, timestamps: Mapping[PartitionId, int]
    ) -> Dict[PartitionId, Optional[int]]:
        query: List[TopicPartition] = [p.to_topic_partition(ts) for p, ts in timestamps.items()]
        try:
            found: List[TopicPartition] = self._consumer.offsets_for_times(query, timeout=self._timeout)
        except KafkaException as e:
            raise _translate(e) from e
        result: Dict[PartitionId, Optional[int]] = {}
        for tp in found:
            # -1 (OFFSET_END) means no record at or after the timestamp.
            result[PartitionId.from_topic_partition(tp)] = tp.offset if tp.offset >= 0 else None
        return result

    def _bounds(self, partition: PartitionId) -> Tuple[int, int]:
        try:
            bounds = self._consumer.get_watermark_offsets(
                partition.to_topic_partition(), timeout=self._timeout, cached=False
            )
        except KafkaException as e:
            raise _translate(e, partition) from e
        if bounds is None:
            # older clients report a timed-out lookup as None instead of raising
            raise classify_kafka_error(KafkaError(KafkaError._TIMED_OUT, "watermark lookup timed out"), partition)
        return bounds

    def beginning_offset(self, partition: PartitionId) -> int:
        return self._bounds(partition)[0]

    def end_offset(self, partition: PartitionId) -> int:
        return self._bounds(partition)[1]

    def committed_offset(self, partition: PartitionId) -> Optional[int]:
        try:
            found: List[TopicPartition] = self._consumer.committed(
                [partition.to_topic_partition()], timeout=self._timeout
            )
        except KafkaException as e:
            raise _translate(e, partition) from e
        if not found or found[0].offset < 0:
            return None
        return found[0].offset

    def commit(self, offsets: Mapping[PartitionId, int]) -> None:
        tps: List[TopicPartition] = [p.to_topic_partition(off) for p, off in offsets.items()]
        try:
            self._consumer.commit(offsets=tps, asynchronous=False)
        except KafkaException as e:
            raise _translate(e) from e

    def close(self) -> None:
        self._consumer.close()


def confluent_client_factory(conf: Dict[str, Any]) -> PartitionClient:
    return ConfluentPartitionClient(conf)


# ------------------------------------------------------------------------------
# Write side
# ------------------------------------------------------------------------------

class ConfluentTransactionalWriter:
    """
    TransactionalWriter on top of confluent_kafka.Producer.

    produce() is asynchronous; delivery callbacks are served by a small daemon thread
    that keeps calling producer.poll(), so send() futures resolve without the writing
    thread having to pump the event loop.
    """

    def __init__(
        self,
        settings: KafkaEosSettings,
        transactional_id: Optional[str] = None,
        *,
        request_timeout: float = 30.0,
    ) -> None:
        self._settings = settings
        self._transactional_id = transactional_id
        self._timeout = request_timeout
        self._producer: Producer = Producer(settings.producer_config(transactional_id))
        self._group_consumers: Dict[str, Consumer] = {}
        self._closed = threading.Event()
        self._poller = threading.Thread(
            target=self._serve_callbacks, name=f"delivery-{transactional_id or 'plain'}", daemon=True
        )
        self._poller.start()

    def _serve_callbacks(self) -> None:
        while not self._closed.is_set():
            self._producer.poll(0.1)

    def init_transactions(self) -> None:
        # Registers transactional.id with the coordinator, fences older instances and
        # aborts whatever transaction a previous incarnation left open.
        try:
            self._producer.init_transactions(self._timeout)
        except KafkaException as e:
            raise _translate(e) from e

    def begin_transaction(self, epoch: int) -> None:
        logger.debug(f"[TX] begin transactional.id={self._transactional_id} epoch={epoch}")
        try:
            self._producer.begin_transaction()
        except KafkaException as e:
            raise _translate(e) from e

    def send(self, topic: str, record: OutgoingRecord) -> "Future[LogPosition]":
        fut: "Future[LogPosition]" = Future()

        def _on_delivery(err: Optional[KafkaError], msg: Message) -> None:
            if err is not None:
                fut.set_exception(SendError(f"delivery to {topic} failed: {err}"))
            else:
                fut.set_result(LogPosition(PartitionId(msg.topic(), msg.partition()), msg.offset()))

        kwargs: Dict[str, Any] = {"key": record.key, "value": record.value, "on_delivery": _on_delivery}
        if record.timestamp is not None:
            kwargs["timestamp"] = record.timestamp
        while True:
            try:
                self._producer.produce(topic, **kwargs)
                return fut
            except BufferError:
                # Local queue full: let librdkafka drain a bit and try again.
                self._producer.poll(0.1)
            except KafkaException as e:
                raise SendError(str(e)) from e

    def flush(self, timeout: float) -> int:
        return self._producer.flush(timeout)

    def _group_consumer(self, group_id: str) -> Consumer:
        # A consumer is the only way to obtain group metadata and committed offsets;
        # it never polls.
        consumer = self._group_consumers.get(group_id)
        if consumer is None:
            consumer = Consumer(self._settings.consumer_config(group_id))
            self._group_consumers[group_id] = consumer
        return consumer

    def send_offsets_to_transaction(self, group_id: str, offsets: Mapping[PartitionId, int]) -> None:
        tps: List[TopicPartition] = [p.to_topic_partition(off) for p, off in offsets.items()]
        group_md = self._group_consumer(group_id).consumer_group_metadata()
        try:
            self._producer.send_offsets_to_transaction(tps, group_md, self._timeout)
        except KafkaException as e:
            raise CommitConflict(f"attaching offsets to transaction failed: {e}") from e

    def commit_transaction(self) -> None:
        try:
            self._producer.commit_transaction(self._timeout)
        except KafkaException as e:
            raise CommitConflict(f"commit failed: {e}") from e

    def abort_transaction(self) -> None:
        try:
            self._producer.abort_transaction(self._timeout)
        except KafkaException as e:
            raise _translate(e) from e

    def committed_offset(self, group_id: str, partition: PartitionId) -> Optional[int]:
        try:
            found: List[TopicPartition] = self._group_consumer(group_id).committed(
                [partition.to_topic_partition()], timeout=self._timeout
            )
        except KafkaException as e:
            raise _translate(e, partition) from e
        if not found or found[0].offset < 0:
            return None
        return found[0].offset

    def close(self) -> None:
        remaining: int = self._producer.flush(self._timeout)
        if remaining:
            logger.warning(f"[CLOSE] {remaining} messages not delivered before timeout")
        self._closed.set()
        self._poller.join(timeout=1.0)
        for consumer in self._group_consumers.values():
            consumer.close()
        self._group_consumers.clear()


def confluent_writer_factory(settings: KafkaEosSettings, *, transactional: bool = True) -> WriterFactory:
    """Writers with transactional.id "<prefix>-<shard>" (stable per shard), or plain ones."""

    def _make(shard: int) -> TransactionalWriter:
        txn_id = f"{settings.transactional_id_prefix}-{shard}" if transactional else None
        return ConfluentTransactionalWriter(settings, txn_id)

    return _make
