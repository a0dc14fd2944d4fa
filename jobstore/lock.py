"""Distributed lock backed by a lease row in the distributed_locks table."""

import time
import uuid
from datetime import timedelta

import structlog
from sqlalchemy.orm import Session

from jobstore.dialects import insert_ignore
from jobstore.errors import ArgumentError, LockTimeoutError
from jobstore.models import DistributedLockRecord, utcnow
from jobstore.monitoring.metrics import MetricsCollector

logger = structlog.get_logger()


class SqlDistributedLock:
    """Mutual exclusion on a named resource across processes and machines.

    Ownership is a row keyed by resource name carrying a random owner token
    and a lease expiry. A holder that dies stops renewing, and once its lease
    has expired the next acquirer deletes the stale row and takes over.
    The lock is not reentrant: acquiring a resource already held through
    another handle waits like any other contender.
    """

    def __init__(
        self,
        session: Session,
        resource: str,
        timeout: timedelta,
        lease: timedelta,
        poll_interval: float,
        metrics: MetricsCollector,
    ):
        if resource is None:
            raise ArgumentError("resource")
        if timeout is None or timeout < timedelta(0):
            raise ArgumentError("timeout", "The timeout value must not be negative")
        if lease <= timedelta(0):
            raise ArgumentError("lease", "The lease must be positive")

        self._session = session
        self.resource = resource
        self.timeout = timeout
        self.lease = lease
        self.poll_interval = poll_interval
        self.owner = str(uuid.uuid4())
        self._metrics = metrics
        self._acquired = False

    @property
    def acquired(self) -> bool:
        return self._acquired

    def acquire(self) -> "SqlDistributedLock":
        """Block until the lock is held or the timeout elapses."""
        started = time.monotonic()
        deadline = started + self.timeout.total_seconds()

        while True:
            if self._try_acquire():
                self._acquired = True
                self._metrics.record_lock_acquired(time.monotonic() - started)
                logger.debug("Distributed lock acquired", resource=self.resource, owner=self.owner)
                return self

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._metrics.record_lock_timeout(time.monotonic() - started)
                logger.warning("Distributed lock timed out", resource=self.resource,
                               timeout=self.timeout.total_seconds())
                raise LockTimeoutError(self.resource, self.timeout.total_seconds())

            time.sleep(min(self.poll_interval, remaining))

    def _try_acquire(self) -> bool:
        with self._session.begin():
            now = utcnow()
            self._session.query(DistributedLockRecord).filter(
                DistributedLockRecord.resource == self.resource,
                DistributedLockRecord.expire_at < now,
            ).delete(synchronize_session=False)

            return insert_ignore(
                self._session,
                DistributedLockRecord,
                {
                    "resource": self.resource,
                    "owner": self.owner,
                    "acquired_at": now,
                    "expire_at": now + self.lease,
                },
                index_elements=["resource"],
            )

    def renew(self) -> bool:
        """Extend the lease; False if the lease was lost to another owner."""
        if not self._acquired:
            return False

        with self._session.begin():
            renewed = self._session.query(DistributedLockRecord).filter(
                DistributedLockRecord.resource == self.resource,
                DistributedLockRecord.owner == self.owner,
            ).update({DistributedLockRecord.expire_at: utcnow() + self.lease}, synchronize_session=False)

        if renewed != 1:
            self._acquired = False
            logger.warning("Distributed lock lease lost", resource=self.resource, owner=self.owner)
            return False
        return True

    def release(self):
        """Give the lock up. Releasing twice is a no-op."""
        if not self._acquired:
            return

        self._acquired = False
        with self._session.begin():
            self._session.query(DistributedLockRecord).filter(
                DistributedLockRecord.resource == self.resource,
                DistributedLockRecord.owner == self.owner,
            ).delete(synchronize_session=False)
        logger.debug("Distributed lock released", resource=self.resource, owner=self.owner)

    def __enter__(self):
        if not self._acquired:
            self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
