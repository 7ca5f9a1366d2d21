"""
Error taxonomy for the reader and the sinks.

Every error raised by kafka_eos derives from KafkaEosError. librdkafka errors
(confluent_kafka.KafkaError / KafkaException) are translated once, at the
client adapter boundary, by classify_kafka_error().

    InitializationTimeout    fatal   a partition failed to seek within the bound
    TransientFetchError      retried by the reader with bounded backoff
    PermanentPartitionError  fatal   unknown partition, authorization, fatal client
    SendError                sink    surfaced on the next write/flush/finalize
    CommitConflict           sink    transaction aborted, caller redrives the bundle
    DecodeError              fatal   malformed or mismatched checkpoint mark
    ClosedError              fatal   operation after close()
    NotStartedError          fatal   reader used before start() succeeded
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from confluent_kafka import KafkaError

if TYPE_CHECKING:
    from .records import PartitionId


class KafkaEosError(Exception):
    """Base error for the partitioned reader and the sinks."""

    pass


class InitializationTimeout(KafkaEosError):
    """A partition's seek did not complete within the start-up bound."""

    def __init__(self, message: str, partition: Optional["PartitionId"] = None) -> None:
        super().__init__(message)
        self.partition = partition


class TransientFetchError(KafkaEosError):
    """Temporary broker/network failure; safe to retry after a backoff.

    offline=True marks a partition that lost its leader; the reader freezes
    that partition's watermark until it delivers records again.
    """

    def __init__(
        self,
        message: str,
        partition: Optional["PartitionId"] = None,
        *,
        offline: bool = False,
    ) -> None:
        super().__init__(message)
        self.partition = partition
        self.offline = offline


class PermanentPartitionError(KafkaEosError):
    """Partition missing, access denied or client fenced. Never retried."""

    def __init__(self, message: str, partition: Optional["PartitionId"] = None) -> None:
        super().__init__(message)
        self.partition = partition


class SendError(KafkaEosError):
    """A produced record was not acknowledged by the broker."""

    pass


class CommitConflict(KafkaEosError):
    """A transaction could not be committed; its records stay invisible."""

    pass


class DecodeError(KafkaEosError):
    """A checkpoint mark could not be decoded or does not fit the assignment."""

    pass


class ClosedError(KafkaEosError):
    """The reader or sink was closed."""

    pass


class NotStartedError(KafkaEosError):
    """The reader was used before start() returned successfully."""

    pass


def _codes(*names: str) -> frozenset:
    # Some names were renamed across librdkafka releases
    # (NOT_LEADER_FOR_PARTITION -> NOT_LEADER_OR_FOLLOWER); keep whichever exist.
    return frozenset(getattr(KafkaError, n) for n in names if hasattr(KafkaError, n))


# Codes that mean "the partition is (temporarily) without a leader".
# The reader freezes that partition's watermark until records flow again.
_PARTITION_OFFLINE_CODES = _codes(
    "LEADER_NOT_AVAILABLE",
    "NOT_LEADER_FOR_PARTITION",
    "NOT_LEADER_OR_FOLLOWER",
)

_TRANSIENT_CODES = frozenset({
    KafkaError._TRANSPORT,
    KafkaError._TIMED_OUT,
    KafkaError._ALL_BROKERS_DOWN,
    KafkaError.REQUEST_TIMED_OUT,
    KafkaError.NETWORK_EXCEPTION,
    KafkaError.COORDINATOR_NOT_AVAILABLE,
}) | _PARTITION_OFFLINE_CODES

_PERMANENT_CODES = frozenset({
    KafkaError.UNKNOWN_TOPIC_OR_PART,
    KafkaError._UNKNOWN_PARTITION,
    KafkaError._UNKNOWN_TOPIC,
    KafkaError.TOPIC_AUTHORIZATION_FAILED,
    KafkaError.GROUP_AUTHORIZATION_FAILED,
    KafkaError.CLUSTER_AUTHORIZATION_FAILED,
    KafkaError.TRANSACTIONAL_ID_AUTHORIZATION_FAILED,
})


def is_partition_offline(err: KafkaError) -> bool:
    return err.code() in _PARTITION_OFFLINE_CODES


def classify_kafka_error(
    err: KafkaError, partition: Optional["PartitionId"] = None
) -> KafkaEosError:
    """
    Map a librdkafka error to the taxonomy above.

    Fatal client errors and the permanent codes win over the retriable flag,
    so a fenced or unauthorized client is never retried in a loop.
    """
    message: str = f"{err.name()}: {err.str()}"
    if err.fatal() or err.code() in _PERMANENT_CODES:
        return PermanentPartitionError(message, partition)
    if err.retriable() or err.code() in _TRANSIENT_CODES:
        return TransientFetchError(message, partition, offline=is_partition_offline(err))
    return PermanentPartitionError(message, partition)
