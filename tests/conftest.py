# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import fakeredis
import pytest

from specfleet.common import RetryOrdering
from specfleet.persistence import DurableStore, PersistenceService, Persister
from specfleet.server import LiveStateStore, Notificator, RetryPolicy, TaskQueueService, WorkerRegistry


@pytest.fixture()
def redis_client() -> fakeredis.FakeAsyncRedis:
    """An isolated in-memory Redis per test."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())


@pytest.fixture()
def store(redis_client) -> LiveStateStore:
    return LiveStateStore(redis_client, key_prefix="test")


@pytest.fixture()
def notificator() -> Notificator:
    return Notificator(send_timeout=0.2, max_queue_size=100)


@pytest.fixture()
def queue(store: LiveStateStore, notificator: Notificator) -> TaskQueueService:
    return TaskQueueService(store, notificator, RetryPolicy(RetryOrdering.FRONT))


@pytest.fixture()
def registry(store: LiveStateStore) -> WorkerRegistry:
    return WorkerRegistry(store)


@pytest.fixture()
def durable_store(tmp_path: Path) -> DurableStore:
    durable = DurableStore(f"sqlite:///{tmp_path / 'specfleet.db'}")
    durable.init_database()
    yield durable
    durable.dispose()


@pytest.fixture()
def log_dir(tmp_path: Path) -> Path:
    return tmp_path / "execute_log_text"


@pytest.fixture()
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture()
def persister(store: LiveStateStore, durable_store: DurableStore, log_dir: Path) -> Persister:
    # Small threshold so tests can externalize logs with short strings
    return Persister(store, durable_store, log_text_path=str(log_dir), size_threshold=16)


@pytest.fixture()
def persistence(persister: Persister, store: LiveStateStore, cache_dir: Path) -> PersistenceService:
    return PersistenceService(persister, store, json_cache_path=str(cache_dir), live_state_ttl_sec=0)
