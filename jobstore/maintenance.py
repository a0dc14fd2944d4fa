"""Maintenance jobs: deleting expired rows and compacting counters."""

from datetime import timedelta
from typing import Dict

import structlog
from sqlalchemy import case, func

from jobstore.dialects import upsert
from jobstore.models import (
    AggregatedCounter,
    Counter,
    HashEntry,
    Job,
    ListEntry,
    SetEntry,
    utcnow,
)
from jobstore.storage import SqlJobStorage

logger = structlog.get_logger()

EXPIRATION_LOCK = "jobstore:expiration-manager"
AGGREGATION_LOCK = "jobstore:counters-aggregator"

_EXPIRABLE = (Counter, AggregatedCounter, Job, ListEntry, SetEntry, HashEntry)


class ExpirationManager:
    """Deletes rows whose expire_at has passed, in batches."""

    def __init__(self, storage: SqlJobStorage, lock_timeout: timedelta = timedelta(minutes=1)):
        self.storage = storage
        self.batch_size = storage.settings.maintenance_batch_size
        self.lock_timeout = lock_timeout

    def remove_expired(self) -> Dict[str, int]:
        """Remove expired rows table by table; returns the number removed per table.

        The lock lease is renewed after every full batch. Once the lease is lost
        to another owner the pass stops and the remaining tables are left alone.
        """
        removed = {}
        with self.storage.get_connection() as connection:
            with connection.acquire_distributed_lock(EXPIRATION_LOCK, self.lock_timeout) as lock:
                for model in _EXPIRABLE:
                    removed[model.__tablename__] = self._remove_from(connection.session, model, lock)
                    if not lock.acquired:
                        logger.warning("Expiration stopped, lock lost", table=model.__tablename__)
                        break

        for table, count in removed.items():
            if count:
                self.storage.metrics.record_expired_rows(table, count)
        logger.info("Expired rows removed", **removed)
        return removed

    def _remove_from(self, session, model, lock) -> int:
        total = 0
        while True:
            with session.begin():
                ids = [
                    row.id for row in session.query(model.id)
                    .filter(model.expire_at < utcnow())
                    .limit(self.batch_size)
                ]
                if ids:
                    session.query(model).filter(model.id.in_(ids)).delete(synchronize_session=False)
            total += len(ids)
            if len(ids) < self.batch_size or not lock.renew():
                return total


def _later(existing, proposed):
    """The later of two expiries; a missing one defers to the other."""
    return case(
        (proposed.is_(None), existing),
        (existing.is_(None), proposed),
        (existing > proposed, existing),
        else_=proposed,
    )


class CountersAggregator:
    """Folds counter deltas into one aggregated row per key."""

    def __init__(self, storage: SqlJobStorage, lock_timeout: timedelta = timedelta(minutes=1)):
        self.storage = storage
        self.batch_size = storage.settings.maintenance_batch_size
        self.lock_timeout = lock_timeout

    def aggregate(self) -> int:
        """Compact up to one batch of counter rows; returns how many were folded in."""
        with self.storage.get_connection() as connection:
            with connection.acquire_distributed_lock(AGGREGATION_LOCK, self.lock_timeout):
                session = connection.session
                with session.begin():
                    ids = [
                        row.id for row in session.query(Counter.id)
                        .order_by(Counter.id)
                        .limit(self.batch_size)
                    ]
                    if not ids:
                        return 0

                    totals = (
                        session.query(
                            Counter.key,
                            func.sum(Counter.value).label("value"),
                            func.max(Counter.expire_at).label("expire_at"),
                        )
                        .filter(Counter.id.in_(ids))
                        .group_by(Counter.key)
                        .all()
                    )
                    for total in totals:
                        upsert(
                            session, AggregatedCounter,
                            {"key": total.key, "value": int(total.value), "expire_at": total.expire_at},
                            index_elements=["key"],
                            update=lambda proposed: {
                                "value": AggregatedCounter.value + proposed["value"],
                                "expire_at": _later(AggregatedCounter.expire_at, proposed["expire_at"]),
                            },
                        )

                    session.query(Counter).filter(Counter.id.in_(ids)).delete(synchronize_session=False)

        self.storage.metrics.record_counters_aggregated(len(ids))
        logger.info("Counters aggregated", rows=len(ids), keys=len(totals))
        return len(ids)
