"""Prometheus metrics collection for the job storage backend."""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry, generate_latest
import structlog

logger = structlog.get_logger()


class MetricsCollector:
    """Collects and exposes Prometheus metrics for the job storage backend."""

    def __init__(self):
        """Initialize metrics collector."""
        self.registry = CollectorRegistry()

        # Job metrics
        self.jobs_created = Counter(
            'jobstore_jobs_created_total',
            'Total number of jobs created',
            registry=self.registry
        )

        self.job_load_failures = Counter(
            'jobstore_job_load_failures_total',
            'Total number of stored jobs that failed to deserialize',
            registry=self.registry
        )

        # Queue metrics
        self.jobs_fetched = Counter(
            'jobstore_jobs_fetched_total',
            'Total number of jobs fetched from queues',
            ['provider'],
            registry=self.registry
        )

        # Server metrics
        self.servers_announced = Counter(
            'jobstore_servers_announced_total',
            'Total number of server announcements',
            registry=self.registry
        )

        self.servers_timed_out = Counter(
            'jobstore_servers_timed_out_total',
            'Total number of servers removed after a heartbeat timeout',
            registry=self.registry
        )

        # Lock metrics
        self.lock_acquisitions = Counter(
            'jobstore_lock_acquisitions_total',
            'Distributed lock acquisition attempts by outcome',
            ['outcome'],
            registry=self.registry
        )

        self.lock_wait_time = Histogram(
            'jobstore_lock_wait_seconds',
            'Time spent waiting for a distributed lock',
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, float('inf')],
            registry=self.registry
        )

        # Maintenance metrics
        self.expired_rows_removed = Counter(
            'jobstore_expired_rows_removed_total',
            'Total number of expired rows removed',
            ['table'],
            registry=self.registry
        )

        self.counters_aggregated = Counter(
            'jobstore_counters_aggregated_total',
            'Total number of counter rows compacted into aggregated counters',
            registry=self.registry
        )

        # System metrics
        self.system_info = Info(
            'jobstore_system',
            'System information',
            registry=self.registry
        )

        self.system_info.info({
            'version': '1.0.0',
            'component': 'jobstore'
        })

    def record_job_created(self):
        """Record a job creation."""
        self.jobs_created.inc()

    def record_job_load_failure(self):
        """Record a job whose invocation could not be loaded."""
        self.job_load_failures.inc()

    def record_job_fetched(self, provider: str):
        """Record a job handed out by a queue provider."""
        self.jobs_fetched.labels(provider=provider).inc()
        logger.debug("Job fetch recorded", provider=provider)

    def record_server_announced(self):
        """Record a server announcement."""
        self.servers_announced.inc()

    def record_servers_timed_out(self, count: int):
        """Record servers reaped by the watchdog."""
        self.servers_timed_out.inc(count)

    def record_lock_acquired(self, wait_seconds: float):
        """Record a successful lock acquisition."""
        self.lock_acquisitions.labels(outcome="acquired").inc()
        self.lock_wait_time.observe(wait_seconds)

    def record_lock_timeout(self, wait_seconds: float):
        """Record a lock acquisition that timed out."""
        self.lock_acquisitions.labels(outcome="timeout").inc()
        self.lock_wait_time.observe(wait_seconds)

    def record_expired_rows(self, table: str, count: int):
        """Record rows removed by the expiration manager."""
        self.expired_rows_removed.labels(table=table).inc(count)

    def record_counters_aggregated(self, count: int):
        """Record counter rows compacted."""
        self.counters_aggregated.inc(count)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus format."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
metrics = MetricsCollector()
