"""Queue name to queue provider registry."""

from typing import Dict, Iterable

import structlog

from jobstore.errors import ArgumentError
from jobstore.queues.base import JobQueueProvider

logger = structlog.get_logger()


class QueueProviderRegistry:
    """Maps queue names to providers, falling back to a default provider."""

    def __init__(self, default_provider: JobQueueProvider):
        if default_provider is None:
            raise ArgumentError("default_provider")
        self._default_provider = default_provider
        self._providers: Dict[str, JobQueueProvider] = {}

    @property
    def default_provider(self) -> JobQueueProvider:
        return self._default_provider

    def add(self, provider: JobQueueProvider, queues: Iterable[str]):
        """Route the given queues to a provider."""
        if provider is None:
            raise ArgumentError("provider")
        if queues is None:
            raise ArgumentError("queues")

        queues = list(queues)
        for queue in queues:
            self._providers[queue] = provider
        logger.info("Queue provider registered", provider=provider.name, queues=queues)

    def get_provider(self, queue: str) -> JobQueueProvider:
        return self._providers.get(queue, self._default_provider)
