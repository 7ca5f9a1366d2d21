from __future__ import annotations

import threading
import time
from types import SimpleNamespace

import pytest
from confluent_kafka import OFFSET_INVALID, KafkaError, KafkaException, TopicPartition

import kafka_eos.client as client_module
from kafka_eos.client import ConfluentPartitionClient, ConfluentTransactionalWriter, confluent_writer_factory
from kafka_eos.errors import CommitConflict, PermanentPartitionError, SendError, TransientFetchError
from kafka_eos.records import LogPosition, OutgoingRecord, PartitionId, TimestampType

P0 = PartitionId("t", 0)
P1 = PartitionId("t", 1)


class StubMessage:
    def __init__(self, offset=0, partition=0, topic="t", value=b"v", key=None, error=None):
        self._offset = offset
        self._partition = partition
        self._topic = topic
        self._value = value
        self._key = key
        self._error = error

    def error(self):
        return self._error

    def topic(self):
        return self._topic

    def partition(self):
        return self._partition

    def offset(self):
        return self._offset

    def key(self):
        return self._key

    def value(self):
        return self._value

    def timestamp(self):
        return (1, 1_000 + self._offset)


def error_event(code, topic="t", partition=0) -> StubMessage:
    return StubMessage(offset=-1, partition=partition, topic=topic, value=None, error=KafkaError(code))


class StubConsumer:
    def __init__(self, conf):
        self.conf = conf
        self.batches = []
        self.consume_error = None
        self.assigned = []
        self.times = {}
        self.watermarks = (0, 0)
        self.committed_offsets = {}
        self.commits = []
        self.topics = {}
        self.closed = False

    def consume(self, num_messages, timeout):
        if self.consume_error is not None:
            raise KafkaException(self.consume_error)
        return self.batches.pop(0) if self.batches else []

    def assign(self, tps):
        self.assigned = [(tp.topic, tp.partition, tp.offset) for tp in tps]

    def list_topics(self, topic, timeout):
        return SimpleNamespace(topics=self.topics)

    def offsets_for_times(self, tps, timeout):
        return [TopicPartition(tp.topic, tp.partition, self.times.get(tp.partition, -1)) for tp in tps]

    def get_watermark_offsets(self, tp, timeout, cached):
        return self.watermarks

    def committed(self, tps, timeout):
        return [TopicPartition(tp.topic, tp.partition, self.committed_offsets.get(tp.partition, -1001)) for tp in tps]

    def commit(self, offsets, asynchronous):
        self.commits.append([(tp.topic, tp.partition, tp.offset) for tp in offsets])

    def consumer_group_metadata(self):
        return f"metadata:{self.conf['group.id']}"

    def close(self):
        self.closed = True


class StubProducer:
    """Queues produce() calls; poll() delivers them, the way librdkafka serves callbacks."""

    def __init__(self, conf):
        self.conf = conf
        self.lock = threading.Lock()
        self.queued = []
        self.next_offset = 0
        self.fail_next = None
        self.buffer_full = 0
        self.commit_error = None
        self.calls = []
        self.sent_offsets = []

    def produce(self, topic, **kwargs):
        with self.lock:
            if self.buffer_full:
                self.buffer_full -= 1
                raise BufferError("Local: Queue full")
            error, self.fail_next = self.fail_next, None
            self.queued.append((topic, kwargs, error))

    def poll(self, timeout):
        with self.lock:
            batch, self.queued = self.queued, []
            first, self.next_offset = self.next_offset, self.next_offset + len(batch)
        for i, (topic, kwargs, error) in enumerate(batch):
            msg = StubMessage(offset=first + i, topic=topic, value=kwargs["value"], key=kwargs["key"])
            kwargs["on_delivery"](error, msg)
        if not batch:
            time.sleep(min(timeout, 0.005))
        return len(batch)

    def flush(self, timeout):
        self.poll(0)
        return 0

    def init_transactions(self, timeout):
        self.calls.append("init")

    def begin_transaction(self):
        self.calls.append("begin")

    def send_offsets_to_transaction(self, tps, metadata, timeout):
        self.sent_offsets.append(([(tp.topic, tp.partition, tp.offset) for tp in tps], metadata))

    def commit_transaction(self, timeout):
        if self.commit_error is not None:
            raise KafkaException(self.commit_error)
        self.calls.append("commit")

    def abort_transaction(self, timeout):
        self.calls.append("abort")


@pytest.fixture
def stubbed(monkeypatch):
    monkeypatch.setattr(client_module, "Consumer", StubConsumer)
    monkeypatch.setattr(client_module, "Producer", StubProducer)


@pytest.fixture
def consumer_client(stubbed):
    client = ConfluentPartitionClient({"group.id": "g"})
    client.assign([P0])
    yield client
    client.close()


@pytest.fixture
def writer(stubbed, settings):
    w = ConfluentTransactionalWriter(settings, "kafka-eos-0", request_timeout=1.0)
    yield w
    w.close()


# ---------------------------------------------------------------- consumer adapter


def test_poll_keeps_records_around_an_error_event(consumer_client):
    consumer_client._consumer.batches = [
        [StubMessage(0), StubMessage(1), error_event(KafkaError.REQUEST_TIMED_OUT), StubMessage(2)],
    ]

    got = consumer_client.poll(0.1)
    assert [r.offset for r in got] == [0, 1, 2]
    assert got[0].timestamp_type is TimestampType.CREATE_TIME
    assert got[0].timestamp == 1_000

    # the error surfaces on the next call, after its batch was handed out
    with pytest.raises(TransientFetchError) as info:
        consumer_client.poll(0.1)
    assert info.value.partition == P0
    assert consumer_client.poll(0.1) == []


def test_poll_skips_end_of_partition_and_connection_events(consumer_client):
    consumer_client._consumer.batches = [
        [error_event(KafkaError._PARTITION_EOF), error_event(KafkaError._TRANSPORT, topic=None), StubMessage(0)],
        [error_event(KafkaError._ALL_BROKERS_DOWN, topic=None)],
    ]
    assert [r.offset for r in consumer_client.poll(0.1)] == [0]
    assert consumer_client.poll(0.1) == []
    assert consumer_client.poll(0.1) == []


def test_poll_raises_an_error_event_without_records(consumer_client):
    consumer_client._consumer.batches = [[error_event(KafkaError.UNKNOWN_TOPIC_OR_PART, partition=1)]]
    with pytest.raises(PermanentPartitionError) as info:
        consumer_client.poll(0.1)
    assert info.value.partition == P1
    assert consumer_client.poll(0.1) == []


def test_consume_exception_is_translated(consumer_client):
    consumer_client._consumer.consume_error = KafkaError(KafkaError._TIMED_OUT)
    with pytest.raises(TransientFetchError):
        consumer_client.poll(0.1)


def test_seek_reapplies_the_whole_assignment(stubbed):
    client = ConfluentPartitionClient({"group.id": "g"})
    client.assign([P0, P1])
    assert client._consumer.assigned == [("t", 0, OFFSET_INVALID), ("t", 1, OFFSET_INVALID)]
    client.seek(P1, 5)
    client.seek(P0, 2)
    assert client._consumer.assigned == [("t", 0, 2), ("t", 1, 5)]


def test_partitions_for(stubbed):
    client = ConfluentPartitionClient({"group.id": "g"})
    client._consumer.topics = {"t": SimpleNamespace(partitions={1: None, 0: None}, error=None)}
    assert client.partitions_for("t") == [P0, P1]
    with pytest.raises(PermanentPartitionError, match="topic missing not found"):
        client.partitions_for("missing")


def test_offsets_for_timestamps_without_match_is_none(consumer_client):
    consumer_client._consumer.times = {0: 17}
    assert consumer_client.offsets_for_timestamps({P0: 5_000, P1: 9_000}) == {P0: 17, P1: None}


def test_watermark_bounds(consumer_client):
    consumer_client._consumer.watermarks = (3, 42)
    assert consumer_client.beginning_offset(P0) == 3
    assert consumer_client.end_offset(P0) == 42

    consumer_client._consumer.watermarks = None
    with pytest.raises(TransientFetchError, match="watermark lookup timed out"):
        consumer_client.end_offset(P0)


def test_committed_offset_and_commit(consumer_client):
    assert consumer_client.committed_offset(P0) is None
    consumer_client._consumer.committed_offsets = {0: 12}
    assert consumer_client.committed_offset(P0) == 12

    consumer_client.commit({P0: 13})
    assert consumer_client._consumer.commits == [[("t", 0, 13)]]


# ---------------------------------------------------------------- producer adapter


def test_send_resolves_with_log_position(writer):
    fut = writer.send("out", OutgoingRecord(key=b"k", value=b"v1"))
    assert fut.result(timeout=2) == LogPosition(PartitionId("out", 0), 0)


def test_failed_delivery_fails_the_future(writer):
    writer._producer.fail_next = KafkaError(KafkaError.MSG_SIZE_TOO_LARGE)
    fut = writer.send("out", OutgoingRecord(key=None, value=b"v"))
    with pytest.raises(SendError, match="delivery to out failed"):
        fut.result(timeout=2)


def test_full_local_queue_is_retried(writer):
    writer._producer.buffer_full = 2
    fut = writer.send("out", OutgoingRecord(key=None, value=b"v"))
    assert fut.result(timeout=2).offset == 0


def test_transaction_round_trip(writer, settings):
    writer.init_transactions()
    writer.begin_transaction(1)
    writer.send_offsets_to_transaction("input-group", {P0: 10})
    writer.commit_transaction()

    assert writer._producer.calls == ["init", "begin", "commit"]
    assert writer._producer.sent_offsets == [([("t", 0, 10)], "metadata:input-group")]


def test_commit_failure_is_a_conflict(writer):
    writer._producer.commit_error = KafkaError(KafkaError._FAIL)
    writer.begin_transaction(1)
    with pytest.raises(CommitConflict, match="commit failed"):
        writer.commit_transaction()


def test_committed_offset_through_group_consumer(writer):
    assert writer.committed_offset("sink", PartitionId("out", 0)) is None
    writer._group_consumers["sink"].committed_offsets = {0: 8}
    assert writer.committed_offset("sink", PartitionId("out", 0)) == 8


def test_writer_factory_uses_stable_transactional_ids(stubbed, settings):
    made = [confluent_writer_factory(settings)(shard) for shard in (0, 1)]
    plain = confluent_writer_factory(settings, transactional=False)(0)
    try:
        assert [w._producer.conf["transactional.id"] for w in made] == ["kafka-eos-0", "kafka-eos-1"]
        assert "transactional.id" not in plain._producer.conf
    finally:
        for w in made + [plain]:
            w.close()
