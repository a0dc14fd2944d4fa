import asyncio
import time
from datetime import datetime, timedelta, timezone

import structlog
from freezegun import freeze_time

from jobstore.main import configure_logging
from jobstore.models import Server
from jobstore.schemas import ServerContext
from jobstore.server.processes import (
    BackgroundProcessPool,
    PeriodicProcess,
    ServerHeartbeat,
    ServerWatchdog,
    new_server_id,
)


class CountingProcess(PeriodicProcess):
    name = "counting"

    def __init__(self, interval=0.01, fail=False):
        super().__init__(interval)
        self.calls = 0
        self.fail = fail

    def execute(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("step failed")


class BlockingProcess(PeriodicProcess):
    name = "blocking"

    def __init__(self, seconds):
        super().__init__(10.0)
        self.seconds = seconds

    def execute(self):
        time.sleep(self.seconds)


def _server_ids(session):
    session.expire_all()
    return [server.id for server in session.query(Server)]


def test_new_server_id_is_unique():
    assert new_server_id() != new_server_id()
    assert ":" in new_server_id()


def test_periodic_process_runs_until_stopped():
    process = CountingProcess()

    async def scenario():
        task = asyncio.ensure_future(process.start())
        await asyncio.sleep(0.05)
        await process.stop()
        await task

    asyncio.run(scenario())
    assert process.calls >= 2
    assert not process.running


def test_periodic_process_survives_step_errors():
    process = CountingProcess(fail=True)

    async def scenario():
        task = asyncio.ensure_future(process.start())
        await asyncio.sleep(0.05)
        await process.stop()
        await task

    asyncio.run(scenario())
    assert process.calls >= 2


def test_server_heartbeat_announces_and_removes_server(storage, session):
    heartbeat = ServerHeartbeat(storage, "s1", ServerContext(worker_count=4, queues=["default"]))
    seen_while_running = []

    async def scenario():
        task = asyncio.ensure_future(heartbeat.start())
        await asyncio.sleep(0.05)
        seen_while_running.extend(_server_ids(session))
        await heartbeat.stop()
        await task

    asyncio.run(scenario())
    assert seen_while_running == ["s1"]
    assert _server_ids(session) == []


def test_server_watchdog_removes_stale_servers(storage, connection, session):
    start = datetime(2026, 9, 1, 8, 0, tzinfo=timezone.utc)
    with freeze_time(start):
        connection.announce_server("stale", ServerContext(worker_count=1))
    with freeze_time(start + timedelta(minutes=10)):
        connection.announce_server("live", ServerContext(worker_count=1))
        ServerWatchdog(storage).execute()

    assert _server_ids(session) == ["live"]


def test_pool_starts_and_stops_every_process(storage):
    processes = [CountingProcess(), CountingProcess()]
    pool = BackgroundProcessPool(storage, server_id="s1", processes=processes)

    async def scenario():
        task = asyncio.ensure_future(pool.start())
        await asyncio.sleep(0.05)
        await pool.stop()
        await task

    asyncio.run(scenario())
    assert all(process.calls >= 1 for process in processes)
    assert not any(process.running for process in processes)


def test_pool_default_processes(storage):
    pool = BackgroundProcessPool(storage, queues=["critical"])

    names = [process.name for process in pool.processes]
    assert names == ["server_heartbeat", "server_watchdog", "expiration_manager", "counters_aggregator"]
    assert pool.processes[0].context.queues == ["critical"]


def test_configure_logging_installs_structlog_chain():
    try:
        configure_logging("warning")
        assert structlog.is_configured()
        assert structlog.get_config()["logger_factory"].__class__ is structlog.stdlib.LoggerFactory
        structlog.get_logger().info("suppressed")
    finally:
        structlog.reset_defaults()


def test_blocking_step_does_not_stall_other_processes(storage):
    ticker = CountingProcess()
    pool = BackgroundProcessPool(storage, server_id="s1", processes=[BlockingProcess(0.5), ticker])

    async def scenario():
        task = asyncio.ensure_future(pool.start())
        await asyncio.sleep(0.3)
        calls_while_blocked = ticker.calls
        await pool.stop()
        await task
        return calls_while_blocked

    assert asyncio.run(scenario()) >= 5
