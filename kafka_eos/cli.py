"""
kafka-eos command line.

    kafka-eos read --topic ads_input --checkpoint ckpt.json
        drain partitions, resume from / save a checkpoint mark file
    kafka-eos pipeline --in-topic ads_input --out-topic ads_output --batch 10
        read -> transform -> exactly-once write, one transaction per batch; the input
        offsets commit in the same transaction and a restart resumes from them
    kafka-eos check-duplicates --topic ads_output
        read a topic from the beginning and report repeated "seq" values

Connection settings come from KAFKA_EOS_* environment variables (or .env), see
KafkaEosSettings; flags only cover what differs per run.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from .checkpoint import CheckpointMark
from .client import ClientFactory, WriterFactory, confluent_client_factory
from .config import KafkaEosSettings, get_settings
from .errors import KafkaEosError
from .metrics import PrometheusMetrics
from .reader import PartitionedSource, StartPolicy, read_records
from .records import OutgoingRecord, PartitionId, Record
from .sink import ExactlyOnceSink
from .timestamps import TimestampPolicyFactory, log_append_time, processing_time


# -------- Helpers --------

def _process(value: Dict[str, Any]) -> Dict[str, Any]:
    """Toy transform: synthetic 'spend' from seq (seq * 1.11), bucketed."""
    seq: int = int(value.get("seq", 0))
    spend: float = seq * 1.11
    bucket: str = "low" if spend < 10 else ("mid" if spend < 30 else "high")
    return {
        "seq": seq,
        "campaign_id": value.get("campaign_id"),
        "spend": spend,
        "bucket": bucket,
    }


def _json(record: Record) -> Optional[Dict[str, Any]]:
    """Decode a JSON object value; None for tombstones and anything undecodable."""
    if record.value is None:
        return None
    try:
        doc = json.loads(record.value.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return doc if isinstance(doc, dict) else None


def _load_checkpoint(path: Optional[str]) -> Optional[CheckpointMark]:
    if not path or not Path(path).exists():
        return None
    mark = CheckpointMark.decode(Path(path).read_bytes())
    print(f"[CHECKPOINT] resuming from {path}: {len(mark.partitions)} partitions")
    return mark


def _save_checkpoint(path: Optional[str], mark: CheckpointMark) -> None:
    if not path:
        return
    # Write-then-rename so a crash never leaves a half-written mark behind.
    tmp = Path(path + ".tmp")
    tmp.write_bytes(mark.encode())
    tmp.replace(path)
    mark.finalize_checkpoint()
    print(f"[CHECKPOINT] saved {path}")


def _start_policy(args: argparse.Namespace) -> StartPolicy:
    if args.start_timestamp is not None:
        return StartPolicy.at_timestamp(args.start_timestamp)
    return StartPolicy.latest() if args.start == "latest" else StartPolicy.earliest()


def _timestamp_policy(name: str) -> TimestampPolicyFactory:
    return log_append_time() if name == "log-append" else processing_time()


def _source(
    args: argparse.Namespace,
    topics: Sequence[str],
    settings: KafkaEosSettings,
    client_factory: ClientFactory,
    start: Optional[StartPolicy] = None,
) -> PartitionedSource:
    partitions: List[PartitionId] = [PartitionId.parse(p) for p in (getattr(args, "partition", None) or [])]
    return PartitionedSource(
        topics=None if partitions else topics,
        partitions=partitions or None,
        start=start or _start_policy(args),
        timestamp_policy=_timestamp_policy(getattr(args, "timestamp_policy", "processing")),
        client_factory=client_factory,
        settings=settings,
        metrics=PrometheusMetrics(),
    )


# -------- Commands --------

def cmd_read(args: argparse.Namespace, settings: KafkaEosSettings, client_factory: ClientFactory) -> int:
    source = _source(args, args.topic, settings, client_factory)
    reader = source.create_reader(_load_checkpoint(args.checkpoint))
    try:
        got = read_records(reader, max_records=args.max, idle_timeout=args.timeout)
        for record, ts in got:
            print(f"[RECV] {record.partition}@{record.offset} ts={ts} key={record.key!r} value={record.value!r}")
        print(f"[STATS] read={len(got)} watermark={reader.get_watermark()} "
              f"backlog={reader.get_split_backlog_records()}")
        _save_checkpoint(args.checkpoint, reader.get_checkpoint_mark())
    finally:
        reader.close()
    return 0


def cmd_pipeline(
    args: argparse.Namespace,
    settings: KafkaEosSettings,
    client_factory: ClientFactory,
    writer_factory: Optional[WriterFactory],
) -> int:
    # Resume from the input offsets committed together with the last output transaction.
    source = _source(args, [args.in_topic], settings, client_factory, StartPolicy.committed())
    reader = source.create_reader()
    # One shard: outputs and input offsets of a batch commit in a single transaction.
    sink = ExactlyOnceSink(args.out_topic, writer_factory=writer_factory, settings=settings,
                           metrics=PrometheusMetrics(), shard_fn=lambda _record: 0)
    processed_total: int = 0
    try:
        while args.max is None or processed_total < args.max:
            limit = args.batch if args.max is None else min(args.batch, args.max - processed_total)
            batch = read_records(reader, max_records=limit, idle_timeout=args.timeout)
            if not batch:
                print("[IDLE] no more input")
                break
            try:
                for record, _ in batch:
                    vin = _json(record)
                    if vin is None:
                        continue
                    vout = _process(vin)
                    sink.write(OutgoingRecord(
                        key=str(vout.get("campaign_id")).encode("utf-8"),
                        value=json.dumps(vout).encode("utf-8"),
                    ))
                sink.finalize_bundle(reader.get_checkpoint_mark().next_offsets(), settings.group_id)
            except KafkaEosError:
                sink.abort_bundle()
                raise
            processed_total += len(batch)
            print(f"[TX] commit ok (batch={len(batch)}) total={processed_total}")
    except KeyboardInterrupt:
        print("\n[STOP] KeyboardInterrupt")
    finally:
        reader.close()
        sink.close()
        print("[CLOSED] pipeline closed.")
    return 0


def cmd_check_duplicates(args: argparse.Namespace, settings: KafkaEosSettings, client_factory: ClientFactory) -> int:
    reader = _source(args, [args.topic], settings, client_factory, StartPolicy.earliest()).create_reader()
    seen: Dict[int, int] = {}
    try:
        got = read_records(reader, max_records=args.max, idle_timeout=args.timeout)
    finally:
        reader.close()
    for record, _ in got:
        payload = _json(record)
        if payload is None or "seq" not in payload:
            continue
        seq = int(payload["seq"])
        seen[seq] = seen.get(seq, 0) + 1

    dups = {k: v for k, v in seen.items() if v > 1}
    print(f"[STATS] read={len(got)} unique_seqs={len(seen)} duplicates={len(dups)}")
    if dups:
        print("[DUPLICATES]")
        for k in sorted(dups):
            print(f"  seq={k} count={dups[k]}")
        return 1
    print("[DUPLICATES] none")
    return 0


# -------- Main --------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="kafka-eos", description="Checkpointed Kafka reads and exactly-once writes.")
    ap.add_argument("--log-level", type=str, default="INFO", help="loguru level for internals (default: INFO).")
    sub = ap.add_subparsers(dest="command", required=True)

    def _read_opts(p: argparse.ArgumentParser) -> None:
        p.add_argument("--partition", action="append",
                       help="Explicit partition 'topic-N' (repeatable); overrides topic discovery.")
        p.add_argument("--timestamp-policy", choices=["processing", "log-append"], default="processing",
                       help="Event-time policy (default: processing).")
        p.add_argument("--timeout", type=float, default=5.0, help="Idle seconds before stopping (default: 5.0).")

    def _position_opts(p: argparse.ArgumentParser) -> None:
        p.add_argument("--start", choices=["earliest", "latest"], default="earliest",
                       help="Start position without a checkpoint (default: earliest).")
        p.add_argument("--start-timestamp", type=int, default=None,
                       help="Start at the first record at/after this epoch-millis timestamp.")
        p.add_argument("--checkpoint", type=str, default=None,
                       help="Checkpoint mark file: resumed from if present, rewritten after reading.")

    r = sub.add_parser("read", help="Drain partitions and print records.")
    r.add_argument("--topic", action="append", default=[], help="Topic to read (repeatable).")
    r.add_argument("--max", type=int, default=None, help="Max records to read (default: unbounded).")
    _read_opts(r)
    _position_opts(r)

    p = sub.add_parser("pipeline", help="Transactional read->process->write in-topic -> out-topic, "
                                         "resuming from the committed input offsets.")
    p.add_argument("--in-topic", type=str, default="ads_input", help="Source topic (default: ads_input).")
    p.add_argument("--out-topic", type=str, default="ads_output", help="Destination topic (default: ads_output).")
    p.add_argument("--batch", type=int, default=10, help="Records per transaction (default: 10).")
    p.add_argument("--max", type=int, default=None, help="Stop after N input records (default: unbounded).")
    _read_opts(p)

    c = sub.add_parser("check-duplicates", help="Report duplicate seq values in a topic.")
    c.add_argument("--topic", type=str, default="ads_output")
    c.add_argument("--partition", action="append", help="Explicit partition 'topic-N' (repeatable).")
    c.add_argument("--max", type=int, default=10000, help="Max messages to read (default: 10000).")
    c.add_argument("--timeout", type=float, default=5.0, help="Idle seconds before stopping (default: 5.0).")
    return ap


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    settings: Optional[KafkaEosSettings] = None,
    client_factory: ClientFactory = confluent_client_factory,
    writer_factory: Optional[WriterFactory] = None,
) -> int:
    args = build_parser().parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())
    settings = settings or get_settings()

    if args.command == "read":
        if not args.topic and not args.partition:
            print("[ERROR] give --topic or --partition", file=sys.stderr)
            return 2
        return cmd_read(args, settings, client_factory)
    if args.command == "pipeline":
        return cmd_pipeline(args, settings, client_factory, writer_factory)
    return cmd_check_duplicates(args, settings, client_factory)


if __name__ == "__main__":
    sys.exit(main())
