"""Storage connection: the façade through which the framework reads and writes job data."""

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional, Sequence, Set

import structlog
from requests.structures import CaseInsensitiveDict
from sqlalchemy import func
from sqlalchemy.orm import Session

from jobstore.common import InvocationData, Job
from jobstore.config import Settings
from jobstore.dialects import upsert
from jobstore.errors import ArgumentError, ConfigurationError, JobLoadError
from jobstore.lock import SqlDistributedLock
from jobstore.models import (
    AggregatedCounter,
    Counter,
    HashEntry,
    Job as JobRecord,
    JobParameter,
    JobState,
    ListEntry,
    Server,
    SetEntry,
    utcnow,
)
from jobstore.monitoring.metrics import MetricsCollector
from jobstore.queues.base import FetchedJob
from jobstore.queues.registry import QueueProviderRegistry
from jobstore.schemas import JobData, ServerContext, ServerData, StateData
from jobstore.transaction import SqlWriteOnlyTransaction
from jobstore.validation import HashPairs, hash_pairs, job_pk, require

logger = structlog.get_logger()

# Returned by the *_ttl operations when nothing under the key expires.
NO_EXPIRATION = timedelta(seconds=-1)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlStorageConnection:
    """One session's worth of access to the job store.

    Every operation runs in its own transaction on the connection's session,
    committed on success and rolled back on any exception. Connections are
    not thread-safe; give each worker thread its own.
    """

    def __init__(
        self,
        session: Session,
        queue_providers: QueueProviderRegistry,
        settings: Settings,
        metrics: MetricsCollector,
    ):
        require("session", session)
        require("queue_providers", queue_providers)

        self._session = session
        self._queue_providers = queue_providers
        self._settings = settings
        self._metrics = metrics

    @property
    def session(self) -> Session:
        return self._session

    def close(self):
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @contextmanager
    def _transaction(self):
        with self._session.begin():
            yield self._session

    # Transactions and locks

    def create_write_transaction(self) -> SqlWriteOnlyTransaction:
        return SqlWriteOnlyTransaction(self._session, self._queue_providers)

    def acquire_distributed_lock(self, resource: str, timeout: timedelta) -> SqlDistributedLock:
        """Acquire a lock on resource, waiting at most timeout.

        The returned handle is already held; use it as a context manager so
        the lock is released on every exit path.
        """
        lock = SqlDistributedLock(
            self._session,
            resource,
            timeout,
            lease=timedelta(seconds=self._settings.lock_lease_seconds),
            poll_interval=self._settings.lock_poll_interval_seconds,
            metrics=self._metrics,
        )
        return lock.acquire()

    # Queues

    def fetch_next_job(
        self, queues: Sequence[str], cancellation: Optional[threading.Event] = None
    ) -> FetchedJob:
        """Dequeue the next job from any of the queues, blocking until one is available.

        All queues must be served by the same provider.
        """
        if not queues:
            raise ArgumentError("queues", "At least one queue must be given")

        providers = []
        for queue in queues:
            provider = self._queue_providers.get_provider(queue)
            if not any(provider is seen for seen in providers):
                providers.append(provider)

        if len(providers) != 1:
            raise ConfigurationError(
                "Multiple provider instances registered for queues: {}. You should choose "
                "only one type of persistent queues per server instance.".format(", ".join(queues))
            )

        provider = providers[0]
        fetched = provider.get_job_queue(self._session).dequeue(list(queues), cancellation)
        self._metrics.record_job_fetched(provider.name)
        return fetched

    # Jobs

    def create_job(
        self,
        job: Job,
        parameters: Mapping[str, str],
        created_at: datetime,
        expire_in: timedelta,
    ) -> str:
        """Store a job with its parameters; returns the new job id."""
        require("job", job)
        require("parameters", parameters)
        require("created_at", created_at)
        require("expire_in", expire_in)

        invocation_data = InvocationData.serialize(job)
        created_at = _as_utc(created_at)

        with self._transaction() as session:
            record = JobRecord(
                invocation_data=invocation_data.to_json(),
                arguments=invocation_data.arguments,
                created_at=created_at,
                expire_at=created_at + expire_in,
            )
            session.add(record)
            session.flush()

            session.add_all(
                JobParameter(job_id=record.id, name=name, value=value)
                for name, value in parameters.items()
            )
            job_id = str(record.id)

        self._metrics.record_job_created()
        logger.info("Job created", job_id=job_id, job=repr(job), parameters=len(parameters))
        return job_id

    def get_job_data(self, job_id: str) -> Optional[JobData]:
        """Read a job back. Unloadable jobs come back with job=None and load_exception set."""
        pk = job_pk(job_id)

        with self._transaction() as session:
            row = (
                session.query(
                    JobRecord.invocation_data,
                    JobRecord.arguments,
                    JobRecord.state_name,
                    JobRecord.created_at,
                )
                .filter(JobRecord.id == pk)
                .one_or_none()
            )

        if row is None:
            return None

        job = None
        load_exception = None
        try:
            invocation_data = InvocationData.from_json(row.invocation_data)
            invocation_data.arguments = row.arguments
            job = invocation_data.deserialize()
        except JobLoadError as e:
            load_exception = e
            self._metrics.record_job_load_failure()
            logger.warning("Job could not be loaded", job_id=job_id, error=str(e))

        return JobData(
            job=job,
            state=row.state_name,
            created_at=row.created_at,
            load_exception=load_exception,
        )

    def get_state_data(self, job_id: str) -> Optional[StateData]:
        """Current state of a job, or None if no state has been applied yet."""
        pk = job_pk(job_id)

        with self._transaction() as session:
            row = (
                session.query(JobState.name, JobState.reason, JobState.data)
                .join(JobRecord, JobRecord.state_id == JobState.id)
                .filter(JobRecord.id == pk)
                .one_or_none()
            )

        if row is None:
            return None

        return StateData(
            name=row.name,
            reason=row.reason,
            data=CaseInsensitiveDict(json.loads(row.data) if row.data else {}),
        )

    def set_job_parameter(self, job_id: str, name: str, value: Optional[str]):
        pk = job_pk(job_id)
        require("name", name)

        with self._transaction() as session:
            upsert(
                session, JobParameter,
                {"job_id": pk, "name": name, "value": value},
                index_elements=["job_id", "name"],
                update=["value"],
            )

    def get_job_parameter(self, job_id: str, name: str) -> Optional[str]:
        pk = job_pk(job_id)
        require("name", name)

        with self._transaction() as session:
            return (
                session.query(JobParameter.value)
                .filter(JobParameter.job_id == pk, JobParameter.name == name)
                .scalar()
            )

    # Sets

    def get_all_items_from_set(self, key: str) -> Set[str]:
        require("key", key)

        with self._transaction() as session:
            return {row.value for row in session.query(SetEntry.value).filter(SetEntry.key == key)}

    def get_range_from_set(self, key: str, starting_from: int, ending_at: int) -> List[str]:
        """Values at positions starting_from..ending_at (inclusive) in insertion order."""
        require("key", key)
        if starting_from < 0:
            raise ArgumentError("starting_from", "The starting_from value must not be negative")
        if ending_at < starting_from:
            return []

        with self._transaction() as session:
            rows = (
                session.query(SetEntry.value)
                .filter(SetEntry.key == key)
                .order_by(SetEntry.id)
                .offset(starting_from)
                .limit(ending_at - starting_from + 1)
            )
            return [row.value for row in rows]

    def get_first_by_lowest_score_from_set(
        self, key: str, from_score: float, to_score: float
    ) -> Optional[str]:
        require("key", key)
        if to_score < from_score:
            raise ArgumentError(
                "to_score", "The to_score value must be higher or equal to the from_score value."
            )

        with self._transaction() as session:
            return (
                session.query(SetEntry.value)
                .filter(SetEntry.key == key, SetEntry.score.between(from_score, to_score))
                .order_by(SetEntry.score, SetEntry.id)
                .limit(1)
                .scalar()
            )

    def get_set_count(self, key: str) -> int:
        require("key", key)

        with self._transaction() as session:
            return session.query(func.count(SetEntry.id)).filter(SetEntry.key == key).scalar()

    def get_set_ttl(self, key: str) -> timedelta:
        return self._ttl(SetEntry, key)

    # Hashes

    def set_range_in_hash(self, key: str, pairs: HashPairs):
        """Upsert every field of the hash; all fields are written or none are."""
        require("key", key)
        items = hash_pairs(pairs)

        with self._transaction() as session:
            for field, value in items:
                upsert(
                    session, HashEntry,
                    {"key": key, "field": field, "value": value},
                    index_elements=["key", "field"],
                    update=["value"],
                )

    def get_all_entries_from_hash(self, key: str) -> Optional[Dict[str, str]]:
        """All fields of the hash, or None if it has none."""
        require("key", key)

        with self._transaction() as session:
            result = {
                row.field: row.value
                for row in session.query(HashEntry.field, HashEntry.value).filter(HashEntry.key == key)
            }
        return result or None

    def get_value_from_hash(self, key: str, name: str) -> Optional[str]:
        require("key", key)
        require("name", name)

        with self._transaction() as session:
            return (
                session.query(HashEntry.value)
                .filter(HashEntry.key == key, HashEntry.field == name)
                .scalar()
            )

    def get_hash_count(self, key: str) -> int:
        require("key", key)

        with self._transaction() as session:
            return session.query(func.count(HashEntry.id)).filter(HashEntry.key == key).scalar()

    def get_hash_ttl(self, key: str) -> timedelta:
        return self._ttl(HashEntry, key)

    # Lists

    def get_all_items_from_list(self, key: str) -> List[str]:
        """Every item of the list, newest first."""
        require("key", key)

        with self._transaction() as session:
            rows = session.query(ListEntry.value).filter(ListEntry.key == key).order_by(ListEntry.id.desc())
            return [row.value for row in rows]

    def get_range_from_list(self, key: str, starting_from: int, ending_at: int) -> List[str]:
        """Items at positions starting_from..ending_at (inclusive), newest first."""
        require("key", key)
        if starting_from < 0:
            raise ArgumentError("starting_from", "The starting_from value must not be negative")
        if ending_at < starting_from:
            return []

        with self._transaction() as session:
            rows = (
                session.query(ListEntry.value)
                .filter(ListEntry.key == key)
                .order_by(ListEntry.id.desc())
                .offset(starting_from)
                .limit(ending_at - starting_from + 1)
            )
            return [row.value for row in rows]

    def get_list_count(self, key: str) -> int:
        require("key", key)

        with self._transaction() as session:
            return session.query(func.count(ListEntry.id)).filter(ListEntry.key == key).scalar()

    def get_list_ttl(self, key: str) -> timedelta:
        return self._ttl(ListEntry, key)

    # Counters

    def get_counter(self, key: str) -> int:
        """Sum of the raw deltas plus the aggregated total for key."""
        require("key", key)

        with self._transaction() as session:
            raw = session.query(func.sum(Counter.value)).filter(Counter.key == key).scalar()
            aggregated = (
                session.query(func.sum(AggregatedCounter.value))
                .filter(AggregatedCounter.key == key)
                .scalar()
            )
        return int(raw or 0) + int(aggregated or 0)

    def _ttl(self, model, key: str) -> timedelta:
        require("key", key)

        with self._transaction() as session:
            expire_at = session.query(func.min(model.expire_at)).filter(model.key == key).scalar()

        if expire_at is None:
            return NO_EXPIRATION
        return _as_utc(expire_at) - utcnow()

    # Servers

    def announce_server(self, server_id: str, context: ServerContext):
        """Create or refresh the record of a server."""
        require("server_id", server_id)
        require("context", context)

        now = utcnow()
        data = ServerData(
            worker_count=context.worker_count,
            queues=context.queues,
            started_at=now,
        ).model_dump_json()

        with self._transaction() as session:
            upsert(
                session, Server,
                {"id": server_id, "data": data, "last_heartbeat": now},
                index_elements=["id"],
                update=["data", "last_heartbeat"],
            )

        self._metrics.record_server_announced()
        logger.info("Server announced", server_id=server_id,
                    worker_count=context.worker_count, queues=context.queues)

    def heartbeat(self, server_id: str):
        require("server_id", server_id)

        with self._transaction() as session:
            session.query(Server).filter(Server.id == server_id).update(
                {Server.last_heartbeat: utcnow()}, synchronize_session=False)

    def remove_server(self, server_id: str):
        require("server_id", server_id)

        with self._transaction() as session:
            session.query(Server).filter(Server.id == server_id).delete(synchronize_session=False)
        logger.info("Server removed", server_id=server_id)

    def remove_timed_out_servers(self, timeout: timedelta) -> int:
        """Delete servers whose last heartbeat is older than timeout; returns how many."""
        require("timeout", timeout)
        if timeout <= timedelta(0):
            raise ArgumentError("timeout", "The timeout value must be positive.")

        with self._transaction() as session:
            removed = (
                session.query(Server)
                .filter(Server.last_heartbeat < utcnow() - timeout)
                .delete(synchronize_session=False)
            )

        if removed:
            self._metrics.record_servers_timed_out(removed)
            logger.warning("Timed out servers removed", count=removed,
                           timeout=timeout.total_seconds())
        return removed
