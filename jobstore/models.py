"""Database models for job storage."""

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def utcnow() -> datetime:
    """Current instant as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC.

    Naive datetimes handed in are taken to be UTC already.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return value.replace(tzinfo=timezone.utc)


class Job(Base):
    """A stored job invocation."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    state_id = Column(Integer, nullable=True)
    state_name = Column(String(50), nullable=True)
    invocation_data = Column(Text, nullable=False)
    arguments = Column(Text, nullable=False)
    created_at = Column(UTCDateTime, nullable=False)
    expire_at = Column(UTCDateTime, nullable=True, index=True)


class JobParameter(Base):
    """Named per-job value, unique per (job_id, name)."""

    __tablename__ = "job_parameters"
    __table_args__ = (UniqueConstraint("job_id", "name", name="ux_job_parameters_job_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(40), nullable=False)
    value = Column(Text, nullable=True)


class JobState(Base):
    """Append-only state history of a job."""

    __tablename__ = "job_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(20), nullable=False)
    reason = Column(String(100), nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    data = Column(Text, nullable=True)


class JobQueueEntry(Base):
    """Row of the relational job queue."""

    __tablename__ = "job_queue"
    __table_args__ = (Index("ix_job_queue_queue_fetched_at", "queue", "fetched_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, nullable=False)
    queue = Column(String(50), nullable=False)
    fetched_at = Column(UTCDateTime, nullable=True)


class SetEntry(Base):
    """Member of a scored set."""

    __tablename__ = "sets"
    __table_args__ = (UniqueConstraint("key", "value", name="ux_sets_key_value"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False)
    value = Column(String(256), nullable=False)
    score = Column(Float, nullable=False, default=0.0)
    expire_at = Column(UTCDateTime, nullable=True, index=True)


class HashEntry(Base):
    """Field of a hash."""

    __tablename__ = "hashes"
    __table_args__ = (UniqueConstraint("key", "field", name="ux_hashes_key_field"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False)
    field = Column(String(100), nullable=False)
    value = Column(Text, nullable=True)
    expire_at = Column(UTCDateTime, nullable=True, index=True)


class ListEntry(Base):
    """Element of an append-only list."""

    __tablename__ = "lists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, index=True)
    value = Column(Text, nullable=True)
    expire_at = Column(UTCDateTime, nullable=True, index=True)


class Counter(Base):
    """Counter delta; never updated in place."""

    __tablename__ = "counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, index=True)
    value = Column(Integer, nullable=False)
    expire_at = Column(UTCDateTime, nullable=True)


class AggregatedCounter(Base):
    """Compacted total of counter deltas for a key."""

    __tablename__ = "aggregated_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, unique=True)
    value = Column(Integer, nullable=False)
    expire_at = Column(UTCDateTime, nullable=True, index=True)


class Server(Base):
    """Liveness record of a worker process."""

    __tablename__ = "servers"

    id = Column(String(100), primary_key=True)
    data = Column(Text, nullable=True)
    last_heartbeat = Column(UTCDateTime, nullable=False)


class DistributedLockRecord(Base):
    """Lease held on a named resource."""

    __tablename__ = "distributed_locks"

    resource = Column(String(100), primary_key=True)
    owner = Column(String(36), nullable=False)
    acquired_at = Column(UTCDateTime, nullable=False)
    expire_at = Column(UTCDateTime, nullable=False)
