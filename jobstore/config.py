"""Configuration settings for the job storage backend."""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings."""

    # Database Configuration
    database_url: str = "sqlite:///./jobstore.db"
    database_isolation_level: Optional[str] = None
    database_echo: bool = False

    # Redis Configuration (only used by the Redis queue backend)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_prefix: str = "jobstore:"

    # Queue Configuration
    default_queues: List[str] = ["default"]
    queue_poll_interval_seconds: float = 15.0
    invisibility_timeout_seconds: int = 1800  # 30 minutes

    # Distributed Lock Configuration
    lock_lease_seconds: int = 300
    lock_poll_interval_seconds: float = 0.1

    # Server Configuration
    worker_count: int = 20
    server_heartbeat_interval_seconds: float = 30.0
    server_check_interval_seconds: float = 60.0
    server_timeout_seconds: int = 300

    # Maintenance Configuration
    job_expiration_check_interval_seconds: float = 3600.0
    counters_aggregate_interval_seconds: float = 300.0
    maintenance_batch_size: int = 1000

    # Monitoring
    metrics_port: int = 9090
    metrics_enabled: bool = True
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "JOBSTORE_"
        case_sensitive = False


settings = Settings()
