"""Checkpointed, fair multi-partition Kafka reads and exactly-once Kafka writes."""

from .checkpoint import CheckpointMark, PartitionMark
from .config import KafkaEosSettings, get_settings
from .errors import (
    ClosedError,
    CommitConflict,
    DecodeError,
    InitializationTimeout,
    KafkaEosError,
    NotStartedError,
    PermanentPartitionError,
    SendError,
    TransientFetchError,
)
from .reader import PartitionedReader, PartitionedSource, StartKind, StartPolicy, read_records
from .records import MAX_TIMESTAMP, MIN_TIMESTAMP, LogPosition, OutgoingRecord, PartitionId, Record, TimestampType
from .sink import AtLeastOnceSink, ExactlyOnceSink, KeyHashRouter
from .timestamps import (
    CustomTimestampPolicy,
    EndOfSourceAwarePolicy,
    LogAppendTimePolicy,
    ProcessingTimePolicy,
    TimestampPolicy,
    log_append_time,
    processing_time,
    with_end_of_source,
    with_timestamp_fn,
)

__version__ = "0.1.0"
