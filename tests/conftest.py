from __future__ import annotations

import pytest

from fakes import FakeBroker
from kafka_eos.config import KafkaEosSettings, get_settings


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def settings() -> KafkaEosSettings:
    """Small timeouts so the background threads react within test time."""
    return KafkaEosSettings(
        init_timeout_seconds=2.0,
        poll_timeout_seconds=0.01,
        max_buffered_records=100,
        fetch_max_retries=3,
        fetch_backoff_initial_seconds=0.001,
        fetch_backoff_max_seconds=0.01,
        backlog_refresh_seconds=0.02,
        transaction_timeout_seconds=2.0,
    )


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
