"""Shared fixtures: settings, a zero-delay executor and a temporary state store."""

import pytest

from po_pipeline.config import Settings
from po_pipeline.core.rate_limit import RateLimitedExecutor
from po_pipeline.workflow.store import SQLiteStateStore


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        gemini_api_key="test-key",
        retry_base_delay=0,
        retry_max_delay=0,
        retry_jitter_range=0,
        queue_base_delay=0,
        queue_max_delay=0,
        parse_timeout_seconds=5,
    )


@pytest.fixture
def executor():
    """Executor that retries without sleeping."""
    return RateLimitedExecutor(capacity=4, max_retries=3, base_delay=0, max_delay=0, jitter_range=0)


@pytest.fixture
def store(tmp_path):
    state_store = SQLiteStateStore(tmp_path / "state.db")
    state_store.connect()
    yield state_store
    state_store.close()
