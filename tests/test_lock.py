from datetime import datetime, timedelta, timezone

import pytest
from freezegun import freeze_time

from jobstore.errors import ArgumentError, LockTimeoutError
from jobstore.models import DistributedLockRecord

SHORT = timedelta(milliseconds=100)


@pytest.fixture
def other(storage):
    with storage.get_connection() as connection:
        yield connection


def _lock_rows(session):
    session.expire_all()
    return session.query(DistributedLockRecord).all()


def test_lock_is_held_inside_context_and_released_after(connection, session):
    with connection.acquire_distributed_lock("resource", SHORT) as lock:
        assert lock.acquired
        [row] = _lock_rows(session)
        assert (row.resource, row.owner) == ("resource", lock.owner)

    assert not lock.acquired
    assert _lock_rows(session) == []


def test_second_owner_times_out(connection, other, storage):
    with connection.acquire_distributed_lock("resource", SHORT):
        with pytest.raises(LockTimeoutError) as excinfo:
            other.acquire_distributed_lock("resource", SHORT)

    assert excinfo.value.resource == "resource"
    assert storage.metrics.registry.get_sample_value(
        "jobstore_lock_acquisitions_total", {"outcome": "timeout"}) == 1


def test_lock_is_not_reentrant(connection):
    with connection.acquire_distributed_lock("resource", SHORT):
        with pytest.raises(LockTimeoutError):
            connection.acquire_distributed_lock("resource", timedelta(0))


def test_different_resources_do_not_contend(connection, other):
    with connection.acquire_distributed_lock("a", SHORT):
        with other.acquire_distributed_lock("b", SHORT) as lock:
            assert lock.acquired


def test_lock_can_be_taken_after_release(connection, other, storage):
    with connection.acquire_distributed_lock("resource", SHORT):
        pass

    with other.acquire_distributed_lock("resource", SHORT) as lock:
        assert lock.acquired
    assert storage.metrics.registry.get_sample_value(
        "jobstore_lock_acquisitions_total", {"outcome": "acquired"}) == 2


def test_lock_is_released_when_body_raises(connection, other):
    with pytest.raises(RuntimeError):
        with connection.acquire_distributed_lock("resource", SHORT):
            raise RuntimeError("boom")

    with other.acquire_distributed_lock("resource", SHORT) as lock:
        assert lock.acquired


def test_release_is_idempotent(connection, session):
    lock = connection.acquire_distributed_lock("resource", SHORT)
    lock.release()
    lock.release()

    assert _lock_rows(session) == []


def test_expired_lease_is_taken_over(connection, other):
    stale = connection.acquire_distributed_lock("resource", SHORT)

    with freeze_time(datetime.now(timezone.utc) + timedelta(minutes=2)):
        with other.acquire_distributed_lock("resource", SHORT) as lock:
            assert lock.acquired
            assert stale.renew() is False

    assert not stale.acquired


def test_renew_extends_lease(connection, session):
    start = datetime(2026, 4, 1, 12, 0, tzinfo=timezone.utc)

    with freeze_time(start) as frozen:
        lock = connection.acquire_distributed_lock("resource", SHORT)
        frozen.tick(timedelta(seconds=30))
        assert lock.renew() is True

    [row] = _lock_rows(session)
    assert row.expire_at == start + timedelta(seconds=30) + timedelta(seconds=60)
    lock.release()


def test_release_does_not_remove_a_lock_taken_over(connection, other, session):
    stale = connection.acquire_distributed_lock("resource", SHORT)

    with freeze_time(datetime.now(timezone.utc) + timedelta(minutes=2)):
        current = other.acquire_distributed_lock("resource", SHORT)

    stale.release()

    [row] = _lock_rows(session)
    assert row.owner == current.owner


@pytest.mark.parametrize("resource, timeout", [(None, SHORT), ("resource", None), ("resource", timedelta(seconds=-1))])
def test_lock_arguments_are_validated(connection, resource, timeout):
    with pytest.raises(ArgumentError):
        connection.acquire_distributed_lock(resource, timeout)
