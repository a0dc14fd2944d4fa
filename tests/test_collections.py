from datetime import timedelta
from unittest import mock

import pytest
from freezegun import freeze_time

from jobstore.connection import NO_EXPIRATION
from jobstore.dialects import upsert as real_upsert
from jobstore.errors import ArgumentError
from jobstore.models import AggregatedCounter, Counter, HashEntry


def _commit(connection, build):
    transaction = connection.create_write_transaction()
    build(transaction)
    transaction.commit()


# Sets

@pytest.fixture
def scored_set(connection):
    def build(t):
        t.add_to_set("schedule", "job-c", 30.0)
        t.add_to_set("schedule", "job-a", 10.0)
        t.add_to_set("schedule", "job-b", 20.0)
        t.add_to_set("other", "job-z", 1.0)
    _commit(connection, build)


def test_get_all_items_from_set(connection, scored_set):
    assert connection.get_all_items_from_set("schedule") == {"job-a", "job-b", "job-c"}
    assert connection.get_all_items_from_set("missing") == set()


def test_get_range_from_set_uses_insertion_order(connection, scored_set):
    assert connection.get_range_from_set("schedule", 0, 1) == ["job-c", "job-a"]
    assert connection.get_range_from_set("schedule", 1, 5) == ["job-a", "job-b"]
    assert connection.get_range_from_set("schedule", 2, 1) == []


def test_get_first_by_lowest_score_from_set(connection, scored_set):
    assert connection.get_first_by_lowest_score_from_set("schedule", 0, 100) == "job-a"
    assert connection.get_first_by_lowest_score_from_set("schedule", 15, 30) == "job-b"
    assert connection.get_first_by_lowest_score_from_set("schedule", 30, 30) == "job-c"
    assert connection.get_first_by_lowest_score_from_set("schedule", 31, 100) is None


def test_get_first_by_lowest_score_rejects_inverted_range(connection, scored_set):
    with pytest.raises(ArgumentError):
        connection.get_first_by_lowest_score_from_set("schedule", 10, 5)


def test_get_set_count(connection, scored_set):
    assert connection.get_set_count("schedule") == 3
    assert connection.get_set_count("missing") == 0


def test_add_to_set_twice_updates_score(connection):
    _commit(connection, lambda t: t.add_to_set("s", "v", 1.0))
    _commit(connection, lambda t: t.add_to_set("s", "v", 50.0))

    assert connection.get_set_count("s") == 1
    assert connection.get_first_by_lowest_score_from_set("s", 40, 60) == "v"


def test_set_reads_require_key(connection):
    with pytest.raises(ArgumentError):
        connection.get_all_items_from_set(None)
    with pytest.raises(ArgumentError):
        connection.get_set_count(None)
    with pytest.raises(ArgumentError):
        connection.get_set_ttl(None)


# Hashes

def test_set_range_in_hash_and_read_back(connection):
    connection.set_range_in_hash("recurring:job", {"Cron": "* * * * *", "Queue": "default"})

    assert connection.get_all_entries_from_hash("recurring:job") == {
        "Cron": "* * * * *",
        "Queue": "default",
    }
    assert connection.get_value_from_hash("recurring:job", "Cron") == "* * * * *"
    assert connection.get_value_from_hash("recurring:job", "Missing") is None
    assert connection.get_hash_count("recurring:job") == 2


def test_set_range_in_hash_updates_existing_fields(connection, session):
    connection.set_range_in_hash("h", [("a", "1"), ("b", "2")])
    connection.set_range_in_hash("h", [("b", "20"), ("c", "30")])

    assert connection.get_all_entries_from_hash("h") == {"a": "1", "b": "20", "c": "30"}
    assert session.query(HashEntry).filter_by(key="h", field="b").count() == 1


def test_set_range_in_hash_is_all_or_nothing(connection):
    connection.set_range_in_hash("h", {"a": "1"})
    calls = []

    def failing_upsert(*args, **kwargs):
        calls.append(kwargs)
        if len(calls) == 2:
            raise RuntimeError("store failure")
        return real_upsert(*args, **kwargs)

    with mock.patch("jobstore.connection.upsert", side_effect=failing_upsert):
        with pytest.raises(RuntimeError):
            connection.set_range_in_hash("h", {"a": "changed", "b": "2"})

    assert connection.get_all_entries_from_hash("h") == {"a": "1"}


def test_set_range_in_hash_validates_before_writing(connection):
    with pytest.raises(ArgumentError):
        connection.set_range_in_hash("h", [("a", "1"), (None, "2")])
    with pytest.raises(ArgumentError):
        connection.set_range_in_hash("h", None)

    assert connection.get_hash_count("h") == 0


def test_get_all_entries_from_hash_is_none_when_empty(connection):
    assert connection.get_all_entries_from_hash("missing") is None


# Lists

@pytest.fixture
def history(connection):
    def build(t):
        for value in ("first", "second", "third", "fourth"):
            t.insert_to_list("history", value)
    _commit(connection, build)


def test_get_all_items_from_list_newest_first(connection, history):
    assert connection.get_all_items_from_list("history") == ["fourth", "third", "second", "first"]


def test_get_range_from_list_newest_first(connection, history):
    assert connection.get_range_from_list("history", 0, 1) == ["fourth", "third"]
    assert connection.get_range_from_list("history", 2, 10) == ["second", "first"]
    assert connection.get_range_from_list("history", 3, 2) == []


def test_get_range_rejects_negative_start(connection, history):
    with pytest.raises(ArgumentError):
        connection.get_range_from_list("history", -1, 2)


def test_get_list_count(connection, history):
    assert connection.get_list_count("history") == 4
    assert connection.get_list_count("missing") == 0


# Counters

def test_get_counter_is_zero_without_rows(connection):
    assert connection.get_counter("stats:succeeded") == 0


def test_get_counter_sums_raw_deltas(connection):
    def build(t):
        t.increment_counter("stats:succeeded")
        t.increment_counter("stats:succeeded")
        t.increment_counter("stats:succeeded")
        t.decrement_counter("stats:succeeded")
    _commit(connection, build)

    assert connection.get_counter("stats:succeeded") == 2


def test_get_counter_reads_aggregated_value(connection, session):
    session.add(AggregatedCounter(key="stats:succeeded", value=40))
    session.commit()

    assert connection.get_counter("stats:succeeded") == 40


def test_get_counter_combines_both_tables(connection, session):
    session.add_all([
        AggregatedCounter(key="stats:failed", value=7),
        Counter(key="stats:failed", value=1),
        Counter(key="stats:failed", value=1),
        Counter(key="stats:other", value=100),
    ])
    session.commit()

    assert connection.get_counter("stats:failed") == 9


# TTL

@pytest.mark.parametrize("read_ttl", ["get_set_ttl", "get_hash_ttl", "get_list_ttl"])
def test_ttl_without_rows_is_no_expiration(connection, read_ttl):
    assert getattr(connection, read_ttl)("missing") == NO_EXPIRATION == timedelta(seconds=-1)


def test_ttl_without_expiring_rows_is_no_expiration(connection):
    _commit(connection, lambda t: t.add_to_set("s", "v"))
    connection.set_range_in_hash("h", {"f": "v"})
    _commit(connection, lambda t: t.insert_to_list("l", "v"))

    assert connection.get_set_ttl("s") == NO_EXPIRATION
    assert connection.get_hash_ttl("h") == NO_EXPIRATION
    assert connection.get_list_ttl("l") == NO_EXPIRATION


def test_ttl_uses_earliest_expiration(connection):
    with freeze_time("2026-05-01 12:00:00") as frozen:
        _commit(connection, lambda t: (t.insert_to_list("l", "a"), t.expire_list("l", timedelta(hours=1))))
        _commit(connection, lambda t: t.insert_to_list("l", "b"))

        assert connection.get_list_ttl("l") == timedelta(hours=1)

        frozen.tick(timedelta(minutes=10))
        assert connection.get_list_ttl("l") == timedelta(minutes=50)


def test_ttl_decreases_as_time_passes(connection):
    with freeze_time("2026-05-01 12:00:00") as frozen:
        _commit(connection, lambda t: (t.add_to_set("s", "v"), t.expire_set("s", timedelta(minutes=5))))
        first = connection.get_set_ttl("s")

        frozen.tick(timedelta(seconds=30))
        second = connection.get_set_ttl("s")

    assert first == timedelta(minutes=5)
    assert second == timedelta(minutes=4, seconds=30)
    assert second < first


def test_hash_ttl_after_expire(connection):
    with freeze_time("2026-05-01 12:00:00"):
        connection.set_range_in_hash("h", {"f": "v"})
        _commit(connection, lambda t: t.expire_hash("h", timedelta(days=1)))

        assert connection.get_hash_ttl("h") == timedelta(days=1)
