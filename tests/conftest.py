import math
from datetime import datetime, timedelta, timezone

import pytest

from jobstore.common import Job
from jobstore.config import Settings
from jobstore.monitoring.metrics import MetricsCollector
from jobstore.storage import SqlJobStorage


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a fresh SQLite file with fast polling."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'jobstore.db'}",
        queue_poll_interval_seconds=0.01,
        lock_poll_interval_seconds=0.01,
        lock_lease_seconds=60,
        server_heartbeat_interval_seconds=0.01,
        server_check_interval_seconds=0.01,
        maintenance_batch_size=2,
        metrics_enabled=False,
    )


@pytest.fixture
def storage(settings):
    storage = SqlJobStorage(settings, metrics=MetricsCollector())
    storage.create_tables()
    yield storage
    storage.dispose()


@pytest.fixture
def connection(storage):
    with storage.get_connection() as connection:
        yield connection


@pytest.fixture
def session(storage):
    """A separate session for inspecting rows directly."""
    session = storage.session_factory()
    yield session
    session.close()


@pytest.fixture
def create_job(connection):
    """Create a math.hypot job and return its id."""

    def _create(args=(3, 4), parameters=None, created_at=None, expire_in=timedelta(days=1)):
        return connection.create_job(
            Job(math.hypot, args),
            parameters or {},
            created_at or datetime.now(timezone.utc),
            expire_in,
        )

    return _create
