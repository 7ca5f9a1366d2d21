"""
Outbound metrics. Nothing in the reader or the sinks depends on them for correctness.

Components call a Metrics implementation; NoopMetrics is the default and
PrometheusMetrics publishes to the prometheus_client global REGISTRY (import this
module at start-up and expose the registry the usual way).
"""

from __future__ import annotations

from typing import Protocol

from prometheus_client import Counter, Gauge


class Metrics(Protocol):
    def records_read(self, split: str, n: int) -> None: ...

    def bytes_read(self, split: str, n: int) -> None: ...

    def backlog_records(self, split: str, value: int) -> None: ...

    def backlog_bytes(self, split: str, value: int) -> None: ...

    def records_written(self, shard: str, n: int) -> None: ...

    def checkpoint_commits_enqueued(self, split: str) -> None: ...


class NoopMetrics:
    def records_read(self, split: str, n: int) -> None:
        pass

    def bytes_read(self, split: str, n: int) -> None:
        pass

    def backlog_records(self, split: str, value: int) -> None:
        pass

    def backlog_bytes(self, split: str, value: int) -> None:
        pass

    def records_written(self, shard: str, n: int) -> None:
        pass

    def checkpoint_commits_enqueued(self, split: str) -> None:
        pass


# --- Reader Metrics ---

RECORDS_READ_TOTAL = Counter(
    "kafka_eos_records_read_total",
    "Records emitted by partitioned readers",
    ["split"],
)

BYTES_READ_TOTAL = Counter(
    "kafka_eos_bytes_read_total",
    "Key + value bytes emitted by partitioned readers",
    ["split"],
)

BACKLOG_RECORDS = Gauge(
    "kafka_eos_backlog_records",
    "Records between the read position and the partition end, summed over a split",
    ["split"],
)

BACKLOG_BYTES = Gauge(
    "kafka_eos_backlog_bytes",
    "Estimated backlog in bytes (backlog records x average record size)",
    ["split"],
)

CHECKPOINT_COMMITS_ENQUEUED_TOTAL = Counter(
    "kafka_eos_checkpoint_commits_enqueued_total",
    "Finalized checkpoint marks queued for a consumer-group commit",
    ["split"],
)

# --- Sink Metrics ---

RECORDS_WRITTEN_TOTAL = Counter(
    "kafka_eos_records_written_total",
    "Records acknowledged by the broker, per sink shard",
    ["shard"],
)


class PrometheusMetrics:
    def records_read(self, split: str, n: int) -> None:
        RECORDS_READ_TOTAL.labels(split=split).inc(n)

    def bytes_read(self, split: str, n: int) -> None:
        BYTES_READ_TOTAL.labels(split=split).inc(n)

    def backlog_records(self, split: str, value: int) -> None:
        BACKLOG_RECORDS.labels(split=split).set(value)

    def backlog_bytes(self, split: str, value: int) -> None:
        BACKLOG_BYTES.labels(split=split).set(value)

    def records_written(self, shard: str, n: int) -> None:
        RECORDS_WRITTEN_TOTAL.labels(shard=shard).inc(n)

    def checkpoint_commits_enqueued(self, split: str) -> None:
        CHECKPOINT_COMMITS_ENQUEUED_TOTAL.labels(split=split).inc()
