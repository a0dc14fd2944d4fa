"""Redis-based job queue implementation."""

import threading
from typing import Optional, Sequence

import redis
import structlog

from jobstore.config import Settings, settings as default_settings
from jobstore.errors import ArgumentError, OperationCancelledError
from jobstore.queues.base import FetchedJobBase

logger = structlog.get_logger()


class RedisFetchedJob(FetchedJobBase):
    """A job id parked in the queue's fetched list."""

    def __init__(self, queue_impl: "RedisJobQueue", job_id: str, queue: str):
        super().__init__(job_id, queue)
        self._queue_impl = queue_impl

    def _remove(self):
        client = self._queue_impl.redis_client
        client.lrem(self._queue_impl.fetched_key(self.queue), 1, self.job_id)
        logger.debug("Job removed from queue", job_id=self.job_id, queue=self.queue)

    def _requeue(self):
        client = self._queue_impl.redis_client
        pipe = client.pipeline(transaction=True)
        pipe.lrem(self._queue_impl.fetched_key(self.queue), 1, self.job_id)
        pipe.rpush(self._queue_impl.queue_key(self.queue), self.job_id)
        pipe.execute()
        logger.info("Job requeued", job_id=self.job_id, queue=self.queue)


class RedisJobQueue:
    """Redis list queue with a fetched list per queue for in-flight jobs.

    Jobs are pushed on the left and taken from the right, so each queue is
    FIFO; a requeued job goes back to the right end and is taken next.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str, poll_interval: float):
        self.redis_client = redis_client
        self.prefix = prefix
        self.poll_interval = poll_interval

    def queue_key(self, queue: str) -> str:
        return f"{self.prefix}queue:{queue}"

    def fetched_key(self, queue: str) -> str:
        return f"{self.prefix}queue:{queue}:fetched"

    def enqueue(self, queue: str, job_id: str):
        """Push a job id to the queue."""
        self.redis_client.lpush(self.queue_key(queue), job_id)
        logger.info("Job enqueued", job_id=job_id, queue=queue)

    def dequeue(
        self, queues: Sequence[str], cancellation: Optional[threading.Event] = None
    ) -> RedisFetchedJob:
        """Move the next job id to its fetched list, polling until one appears."""
        if not queues:
            raise ArgumentError("queues", "At least one queue must be given")
        cancellation = cancellation or threading.Event()

        while True:
            if cancellation.is_set():
                raise OperationCancelledError("Dequeue cancelled")

            for queue in queues:
                job_id = self.redis_client.lmove(
                    self.queue_key(queue), self.fetched_key(queue), "RIGHT", "LEFT"
                )
                if job_id is not None:
                    logger.info("Job dequeued", job_id=job_id, queue=queue)
                    return RedisFetchedJob(self, job_id, queue)

            cancellation.wait(self.poll_interval)


class RedisJobQueueProvider:
    """Serves queues from Redis while jobs themselves stay in the database."""

    name = "redis"
    transactional = False

    def __init__(self, settings: Settings = None, redis_client: redis.Redis = None):
        self.settings = settings or default_settings
        self.redis_client = redis_client or redis.Redis(
            host=self.settings.redis_host,
            port=self.settings.redis_port,
            db=self.settings.redis_db,
            password=self.settings.redis_password,
            decode_responses=True
        )

    def get_job_queue(self, session) -> RedisJobQueue:
        return RedisJobQueue(
            self.redis_client,
            self.settings.redis_prefix,
            self.settings.queue_poll_interval_seconds,
        )
