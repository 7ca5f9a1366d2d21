"""
Environment-driven settings and the librdkafka configuration built from them.

Every field can be set through a KAFKA_EOS_* environment variable (or a .env
file), e.g. KAFKA_EOS_BOOTSTRAP_SERVERS=broker1:9092,broker2:9092.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KafkaEosSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KAFKA_EOS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # ---- broker ----
    bootstrap_servers: str = "localhost:9092"
    group_id: str = "kafka-eos"

    # ---- reader ----
    init_timeout_seconds: float = Field(60.0, gt=0)     # per-partition seek bound in start()
    poll_timeout_seconds: float = Field(0.5, gt=0)      # fetch thread poll() timeout
    max_buffered_records: int = Field(1000, gt=0)       # per-partition queue capacity
    fetch_max_retries: int = Field(10, ge=0)            # consecutive transient failures tolerated
    fetch_backoff_initial_seconds: float = Field(0.1, gt=0)
    fetch_backoff_max_seconds: float = Field(5.0, gt=0)
    backlog_refresh_seconds: float = Field(5.0, gt=0)   # how often end offsets are re-read
    commit_offsets_in_finalize: bool = False            # best-effort group commit on finalize

    # ---- sink ----
    sink_num_shards: int = Field(1, gt=0)
    sink_group_id: str = "kafka-eos-sink"               # group whose offsets track committed sequences
    transactional_id_prefix: str = "kafka-eos"          # one transactional.id per shard: <prefix>-<shard>
    max_in_flight: int = Field(1000, gt=0)              # unacknowledged sends per writer
    transaction_timeout_seconds: float = Field(60.0, gt=0)

    # Raw librdkafka overrides, applied last.
    consumer_overrides: Dict[str, Any] = Field(default_factory=dict)
    producer_overrides: Dict[str, Any] = Field(default_factory=dict)

    def consumer_config(self, group_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Consumer configuration for the partitioned reader.

        - enable.auto.commit=False: progress lives in the checkpoint mark; the group
          offset is only written on finalize (and only if enabled).
        - auto.offset.reset is irrelevant in practice: the reader always seeks explicitly.
        - isolation.level=read_committed hides records of aborted transactions.
        """
        conf: Dict[str, Any] = {
            "bootstrap.servers": self.bootstrap_servers,
            "group.id": group_id or self.group_id,
            "enable.auto.commit": False,
            "enable.auto.offset.store": False,
            "auto.offset.reset": "earliest",
            "isolation.level": "read_committed",
            "enable.partition.eof": False,
        }
        conf.update(self.consumer_overrides)
        return conf

    def producer_config(self, transactional_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Producer configuration for the sinks.

        - acks=all + enable.idempotence: no duplicates from the client's own retries.
        - transactional.id (exactly-once only) must be stable per shard so a restarted
          writer fences its zombie predecessor.
        """
        conf: Dict[str, Any] = {
            "bootstrap.servers": self.bootstrap_servers,
            "acks": "all",
            "enable.idempotence": True,
            "linger.ms": 5,
        }
        if transactional_id is not None:
            conf["transactional.id"] = transactional_id
            conf["transaction.timeout.ms"] = int(self.transaction_timeout_seconds * 1000)
        conf.update(self.producer_overrides)
        return conf


@lru_cache()
def get_settings() -> KafkaEosSettings:
    return KafkaEosSettings()
