from __future__ import annotations

import json

import pytest

from fakes import FakeBroker
from kafka_eos.checkpoint import CheckpointMark
from kafka_eos.cli import _process, main
from kafka_eos.errors import CommitConflict
from kafka_eos.records import PartitionId
from kafka_eos.sink import ExactlyOnceSink


def run(broker: FakeBroker, settings, *argv: str) -> int:
    return main(
        list(argv),
        settings=settings,
        client_factory=broker.client_factory,
        writer_factory=broker.writer_factory(),
    )


def put_json(broker: FakeBroker, topic: str, docs) -> None:
    for i, doc in enumerate(docs):
        broker.append(PartitionId(topic, 0), None, json.dumps(doc).encode("utf-8"), 1_000 + i)


def test_process_buckets_spend():
    assert _process({"seq": 2, "campaign_id": "c1"})["bucket"] == "low"
    assert _process({"seq": 20})["bucket"] == "mid"
    assert _process({"seq": 200})["bucket"] == "high"


def test_read_resumes_from_checkpoint_file(broker, settings, tmp_path, capsys):
    broker.produce_round_robin(40)
    ckpt = str(tmp_path / "ckpt.json")

    assert run(broker, settings, "read", "--topic", "topic_a", "--checkpoint", ckpt, "--timeout", "0.3") == 0
    first = capsys.readouterr().out
    assert "[STATS] read=20" in first
    assert first.count("[RECV]") == 20
    mark = CheckpointMark.decode((tmp_path / "ckpt.json").read_bytes())
    assert len(mark.partitions) == 10

    assert run(broker, settings, "read", "--topic", "topic_a", "--checkpoint", ckpt, "--timeout", "0.3") == 0
    second = capsys.readouterr().out
    assert "[CHECKPOINT] resuming from" in second
    assert "[STATS] read=0" in second


def test_read_requires_topic_or_partition(broker, settings):
    assert run(broker, settings, "read") == 2


def test_read_explicit_partition_with_max(broker, settings, capsys):
    broker.produce_round_robin(100)
    assert run(broker, settings, "read", "--partition", "topic_b-4", "--max", "3", "--timeout", "0.3") == 0
    assert "[STATS] read=3" in capsys.readouterr().out


def test_check_duplicates(broker, settings, capsys):
    put_json(broker, "dups", [{"seq": 1}, {"seq": 1}, {"seq": 2}, {"other": 3}])
    assert run(broker, settings, "check-duplicates", "--topic", "dups", "--timeout", "0.3") == 1
    out = capsys.readouterr().out
    assert "[STATS] read=4 unique_seqs=2 duplicates=1" in out
    assert "seq=1 count=2" in out


def test_pipeline_copies_exactly_once_across_restarts(broker, settings, capsys):
    put_json(broker, "ads_input", [{"seq": i, "campaign_id": i % 3} for i in range(10)])
    args = ("pipeline", "--in-topic", "ads_input", "--out-topic", "ads_output",
            "--batch", "4", "--timeout", "0.3")

    assert run(broker, settings, *args) == 0
    assert "[TX] commit ok (batch=2) total=10" in capsys.readouterr().out
    assert broker.group_offsets[settings.group_id] == {PartitionId("ads_input", 0): 10}

    # a second run resumes after the committed input and writes nothing new
    assert run(broker, settings, *args) == 0
    outputs = [json.loads(v) for v in broker.values("ads_output")]
    assert sorted(o["seq"] for o in outputs) == list(range(10))

    assert run(broker, settings, "check-duplicates", "--topic", "ads_output", "--timeout", "0.3") == 0
    assert "[DUPLICATES] none" in capsys.readouterr().out


def test_pipeline_crash_after_commit_does_not_duplicate(broker, settings, monkeypatch):
    put_json(broker, "ads_input", [{"seq": i, "campaign_id": "c"} for i in range(10)])
    args = ("pipeline", "--in-topic", "ads_input", "--out-topic", "ads_output",
            "--batch", "4", "--timeout", "0.3")
    commit = ExactlyOnceSink.finalize_bundle

    def commit_then_crash(self, *a, **kw):
        commit(self, *a, **kw)
        raise RuntimeError("process died after the commit")

    monkeypatch.setattr(ExactlyOnceSink, "finalize_bundle", commit_then_crash)
    with pytest.raises(RuntimeError):
        run(broker, settings, *args)
    assert len(broker.values("ads_output")) == 4

    monkeypatch.setattr(ExactlyOnceSink, "finalize_bundle", commit)
    assert run(broker, settings, *args) == 0
    seqs = sorted(json.loads(v)["seq"] for v in broker.values("ads_output"))
    assert seqs == list(range(10))


def test_pipeline_failed_commit_is_replayed(broker, settings):
    put_json(broker, "ads_input", [{"seq": i, "campaign_id": "c"} for i in range(6)])
    args = ("pipeline", "--in-topic", "ads_input", "--out-topic", "ads_output",
            "--batch", "3", "--timeout", "0.3")
    broker.commit_failures = 1
    with pytest.raises(CommitConflict):
        run(broker, settings, *args)
    assert broker.values("ads_output") == []

    assert run(broker, settings, *args) == 0
    seqs = sorted(json.loads(v)["seq"] for v in broker.values("ads_output"))
    assert seqs == list(range(6))


def test_unknown_command_exits(broker, settings):
    with pytest.raises(SystemExit):
        run(broker, settings, "explode")
