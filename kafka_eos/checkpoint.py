"""
CheckpointMark: the durable snapshot of a reader's progress.

Wire format (UTF-8 JSON, partitions in assignment order):

    {"version": 1,
     "partitions": [{"partition": "topic_a-0", "offset": 41, "watermark": 1700000000000}, ...]}

`offset` is the last consumed offset of the partition; a restored reader resumes at
offset + 1. A partition nothing was consumed from is stored as (start position - 1),
e.g. -1 for a partition read from its beginning, so it also resumes where reading
would have started.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .errors import DecodeError
from .records import MIN_TIMESTAMP, PartitionId

WIRE_VERSION: int = 1


@dataclass(frozen=True)
class PartitionMark:
    partition: PartitionId
    offset: int
    watermark: int = MIN_TIMESTAMP

    @property
    def next_offset(self) -> int:
        return self.offset + 1


@dataclass(frozen=True)
class CheckpointMark:
    partitions: Tuple[PartitionMark, ...]
    # Not part of the value: set by the reader that produced the mark when it should
    # commit the offsets to the consumer group once the mark is finalized.
    finalizer: Optional[Callable[["CheckpointMark"], None]] = field(
        default=None, compare=False, repr=False, hash=False
    )

    def next_offsets(self) -> Dict[PartitionId, int]:
        """Offsets to resume from (and to commit to a consumer group)."""
        return {m.partition: m.next_offset for m in self.partitions}

    def get(self, partition: PartitionId) -> Optional[PartitionMark]:
        for m in self.partitions:
            if m.partition == partition:
                return m
        return None

    def finalize_checkpoint(self) -> None:
        """
        Called once the mark is durably recorded downstream.

        Best effort: the offsets may be committed to the broker's consumer group so
        that lag monitoring sees progress. The mark itself stays authoritative for
        resumption, so a failure here is logged and otherwise ignored.
        """
        if self.finalizer is None:
            return
        try:
            self.finalizer(self)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"[CHECKPOINT] finalize failed, offsets not committed to group: {e}")

    # ---- wire format ----

    def encode(self) -> bytes:
        doc: Dict[str, Any] = {
            "version": WIRE_VERSION,
            "partitions": [
                {"partition": str(m.partition), "offset": m.offset, "watermark": m.watermark}
                for m in self.partitions
            ],
        }
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> "CheckpointMark":
        """Strict inverse of encode(). Anything unexpected raises DecodeError."""
        try:
            doc = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(f"checkpoint mark is not valid JSON: {e}") from e

        if not isinstance(doc, dict) or doc.get("version") != WIRE_VERSION:
            raise DecodeError(f"unsupported checkpoint mark: {str(doc)[:80]}")
        entries = doc.get("partitions")
        if not isinstance(entries, list):
            raise DecodeError("checkpoint mark has no partition list")

        marks: List[PartitionMark] = []
        seen: set = set()
        for entry in entries:
            marks.append(_decode_entry(entry))
            if marks[-1].partition in seen:
                raise DecodeError(f"partition {marks[-1].partition} appears twice")
            seen.add(marks[-1].partition)
        return cls(tuple(marks))


def _is_int(v: Any) -> bool:
    # bool is an int subclass; never accept true/false as an offset.
    return isinstance(v, int) and not isinstance(v, bool)


def _decode_entry(entry: Any) -> PartitionMark:
    if not isinstance(entry, dict):
        raise DecodeError(f"bad partition entry: {entry!r}")
    name, offset, watermark = entry.get("partition"), entry.get("offset"), entry.get("watermark")
    if not isinstance(name, str) or not _is_int(offset) or not _is_int(watermark):
        raise DecodeError(f"bad partition entry: {entry!r}")
    if offset < -1:
        raise DecodeError(f"negative offset {offset} for {name}")
    try:
        partition = PartitionId.parse(name)
    except ValueError as e:
        raise DecodeError(str(e)) from e
    return PartitionMark(partition, offset, watermark)
