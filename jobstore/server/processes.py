"""Background processes that keep server records and maintenance tables current."""

import asyncio
import socket
import uuid
from datetime import timedelta
from typing import List, Optional

import structlog

from jobstore.maintenance import CountersAggregator, ExpirationManager
from jobstore.schemas import ServerContext
from jobstore.storage import SqlJobStorage

logger = structlog.get_logger()


def new_server_id() -> str:
    """Process-unique server id: host name plus a random suffix."""
    return f"{socket.gethostname().lower()}:{uuid.uuid4().hex[:8]}"


class PeriodicProcess:
    """Runs a step every interval seconds until stopped."""

    name = "periodic"

    def __init__(self, interval: float):
        self.interval = interval
        self.running = False
        self._stopped = asyncio.Event()

    async def start(self):
        """Start the process loop."""
        self.running = True
        self._stopped.clear()
        logger.info("Background process started", process=self.name)

        while self.running:
            try:
                await asyncio.to_thread(self.execute)
            except Exception as e:
                logger.error("Background process error", process=self.name, error=str(e))

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self):
        """Stop the process loop."""
        self.running = False
        self._stopped.set()
        logger.info("Background process stopped", process=self.name)

    def execute(self):
        raise NotImplementedError


class ServerHeartbeat(PeriodicProcess):
    """Announces the server on start, heartbeats while running, removes it on stop."""

    name = "server_heartbeat"

    def __init__(self, storage: SqlJobStorage, server_id: str, context: ServerContext):
        super().__init__(storage.settings.server_heartbeat_interval_seconds)
        self.storage = storage
        self.server_id = server_id
        self.context = context

    async def start(self):
        await asyncio.to_thread(self._announce)
        await super().start()

    async def stop(self):
        await super().stop()
        await asyncio.to_thread(self._remove)

    def _announce(self):
        with self.storage.get_connection() as connection:
            connection.announce_server(self.server_id, self.context)

    def _remove(self):
        with self.storage.get_connection() as connection:
            connection.remove_server(self.server_id)

    def execute(self):
        with self.storage.get_connection() as connection:
            connection.heartbeat(self.server_id)
        logger.debug("Server heartbeat sent", server_id=self.server_id)


class ServerWatchdog(PeriodicProcess):
    """Removes servers that stopped heartbeating."""

    name = "server_watchdog"

    def __init__(self, storage: SqlJobStorage):
        super().__init__(storage.settings.server_check_interval_seconds)
        self.storage = storage
        self.server_timeout = timedelta(seconds=storage.settings.server_timeout_seconds)

    def execute(self):
        with self.storage.get_connection() as connection:
            connection.remove_timed_out_servers(self.server_timeout)


class ExpirationProcess(PeriodicProcess):
    """Runs the expiration manager periodically."""

    name = "expiration_manager"

    def __init__(self, storage: SqlJobStorage):
        super().__init__(storage.settings.job_expiration_check_interval_seconds)
        self.manager = ExpirationManager(storage)

    def execute(self):
        self.manager.remove_expired()


class CountersAggregationProcess(PeriodicProcess):
    """Runs the counters aggregator periodically."""

    name = "counters_aggregator"

    def __init__(self, storage: SqlJobStorage):
        super().__init__(storage.settings.counters_aggregate_interval_seconds)
        self.aggregator = CountersAggregator(storage)

    def execute(self):
        self.aggregator.aggregate()


class BackgroundProcessPool:
    """Pool of background processes for one server instance."""

    def __init__(
        self,
        storage: SqlJobStorage,
        server_id: Optional[str] = None,
        queues: Optional[List[str]] = None,
        processes: Optional[List[PeriodicProcess]] = None,
    ):
        """Initialize the pool; the default set covers liveness and maintenance."""
        self.storage = storage
        self.server_id = server_id or new_server_id()
        context = ServerContext(
            worker_count=storage.settings.worker_count,
            queues=queues or storage.settings.default_queues,
        )
        self.processes = processes if processes is not None else [
            ServerHeartbeat(storage, self.server_id, context),
            ServerWatchdog(storage),
            ExpirationProcess(storage),
            CountersAggregationProcess(storage),
        ]
        self.running = False

    async def start(self):
        """Start every process and wait for them to finish."""
        self.running = True
        logger.info("Starting background process pool", server_id=self.server_id,
                    processes=[process.name for process in self.processes])

        tasks = [process.start() for process in self.processes]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Background process pool tasks cancelled")

    async def stop(self):
        """Stop every process gracefully."""
        if not self.running:
            return
        self.running = False
        logger.info("Stopping background process pool", server_id=self.server_id)

        for process in self.processes:
            await process.stop()

        logger.info("Background process pool stopped", server_id=self.server_id)
