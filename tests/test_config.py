from __future__ import annotations

from kafka_eos.config import KafkaEosSettings, get_settings


def test_defaults():
    s = KafkaEosSettings()
    assert s.bootstrap_servers == "localhost:9092"
    assert s.sink_num_shards == 1
    assert s.commit_offsets_in_finalize is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("KAFKA_EOS_BOOTSTRAP_SERVERS", "b1:9092,b2:9092")
    monkeypatch.setenv("KAFKA_EOS_SINK_NUM_SHARDS", "4")
    monkeypatch.setenv("KAFKA_EOS_COMMIT_OFFSETS_IN_FINALIZE", "true")
    s = get_settings()
    assert s.bootstrap_servers == "b1:9092,b2:9092"
    assert s.sink_num_shards == 4
    assert s.commit_offsets_in_finalize is True
    assert get_settings() is s


def test_consumer_config_disables_auto_commit():
    conf = KafkaEosSettings(group_id="g1").consumer_config()
    assert conf["group.id"] == "g1"
    assert conf["enable.auto.commit"] is False
    assert conf["isolation.level"] == "read_committed"
    assert KafkaEosSettings().consumer_config("other")["group.id"] == "other"


def test_producer_config_transactional_only_when_asked():
    s = KafkaEosSettings(transaction_timeout_seconds=30, producer_overrides={"linger.ms": 0})
    plain = s.producer_config()
    assert plain["acks"] == "all"
    assert plain["enable.idempotence"] is True
    assert plain["linger.ms"] == 0
    assert "transactional.id" not in plain

    tx = s.producer_config("kafka-eos-3")
    assert tx["transactional.id"] == "kafka-eos-3"
    assert tx["transaction.timeout.ms"] == 30_000
