"""Job storage: engine, session factory and queue providers shared by all connections."""

from sqlalchemy.engine import Engine
import structlog

from jobstore.config import Settings, settings as default_settings
from jobstore.connection import SqlStorageConnection
from jobstore.database import create_session_factory, create_storage_engine, create_tables
from jobstore.monitoring.metrics import MetricsCollector, metrics as default_metrics
from jobstore.queues.registry import QueueProviderRegistry
from jobstore.queues.sql import SqlJobQueueProvider

logger = structlog.get_logger()


class SqlJobStorage:
    """Entry point of the storage: hands out connections to the job store."""

    def __init__(
        self,
        settings: Settings = None,
        engine: Engine = None,
        queue_providers: QueueProviderRegistry = None,
        metrics: MetricsCollector = None,
    ):
        self.settings = settings or default_settings
        self.engine = engine or create_storage_engine(self.settings)
        self.session_factory = create_session_factory(self.engine)
        self.queue_providers = queue_providers or QueueProviderRegistry(
            SqlJobQueueProvider(self.settings)
        )
        self.metrics = metrics or default_metrics

    def create_tables(self):
        """Create the schema if it does not exist yet."""
        create_tables(self.engine)

    def get_connection(self) -> SqlStorageConnection:
        """Open a connection with its own session; close it when done."""
        return SqlStorageConnection(
            self.session_factory(),
            self.queue_providers,
            self.settings,
            self.metrics,
        )

    def dispose(self):
        """Release every pooled database connection."""
        self.engine.dispose()
        logger.info("Job storage disposed")

    def __repr__(self):
        return f"SqlJobStorage({self.engine.url.render_as_string(hide_password=True)})"
