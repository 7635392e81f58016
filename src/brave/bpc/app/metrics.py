"""
Metrics for the BPC Service

Request handlers and background tasks record metrics through the MetricsClient interface, so the backend can
be switched by configuration alone.

Key Components:
- MetricsClient: Interface for counters, gauges and timers
- TelegrafCompatibilityClient: Sends metrics to Telegraf over StatsD with tags
- NoOpMetricsClient: Discards everything, for development and tests
- create_metrics_client: Factory selecting the backend named by METRICS_BACKEND

Metric names used by the service:
- bpc.server.request.count / bpc.server.request.time / bpc.server.request.exception
- bpc.reconcile.run.count / bpc.reconcile.run.time / bpc.reconcile.run.skipped / bpc.reconcile.events
- bpc.reconcile.no_coverage
- bpc.task.reconcile.* for queue depth, processing time and failures
- bpc.task.retry_scheduled / bpc.task.max_retries_exceeded
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
import logging
from time import time
from typing import Any, Dict, Iterator, Optional, Union

from aio_statsd import TelegrafStatsdClient

logger = logging.getLogger(__name__)

Number = Union[int, float]
Tags = Optional[Dict[str, Any]]


class MetricsClient(ABC):
    """
    Backend-agnostic metrics client.

    Tags are passed as a plain dictionary and translated by each backend.
    """

    @abstractmethod
    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        """Increment a counter, such as a request or failure count."""

    @abstractmethod
    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        """Set a point-in-time value, such as the reconcile queue depth."""

    @abstractmethod
    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        """Record a duration in seconds."""

    @abstractmethod
    async def close(self) -> None:
        """Flush pending metrics and release the connection."""

    @contextmanager
    def timed(self, name: str, tag_dict: Tags = None) -> Iterator[None]:
        """
        Record the duration of the block as ``<name>.time`` and count it as ``<name>.count``, also when the
        block raises.
        """
        start_time = time()
        try:
            yield
        finally:
            self.timer(f"{name}.time", time() - start_time, tag_dict=tag_dict)
            self.increment(f"{name}.count", 1, tag_dict=tag_dict)


class TelegrafCompatibilityClient(MetricsClient):
    """Delegates to an aio-statsd TelegrafStatsdClient, which must be connected before use."""

    def __init__(self, telegraf_client: TelegrafStatsdClient):
        self.client = telegraf_client

    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        self.client.increment(name, value, tag_dict=tag_dict or {})

    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        self.client.gauge(name, value, tag_dict=tag_dict or {})

    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        self.client.timer(name, value, tag_dict=tag_dict or {})

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        try:
            await self.client.close()
        except Exception as e:
            logger.warning("Error closing Telegraf client: %s", e)


class NoOpMetricsClient(MetricsClient):
    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        pass

    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        pass

    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        pass

    async def close(self) -> None:
        pass


def create_metrics_client(
    backend: str,
    host: str = "localhost",
    port: int = 8125,
    telegraf_client: Optional[TelegrafStatsdClient] = None,
    debug: bool = False,
) -> MetricsClient:
    """
    Create the metrics client for ``backend``.

    Args:
        backend: 'telegraf' or 'none', case-insensitive
        host: Telegraf StatsD host
        port: Telegraf StatsD port
        telegraf_client: Pre-configured client to wrap instead of creating one
        debug: Enable debug logging in the StatsD client

    Raises:
        ValueError: If the backend is not supported
    """
    backend = backend.lower()
    logger.debug(f"Creating metrics client with backend: {backend}")

    if backend == "telegraf":
        if telegraf_client is None:
            telegraf_client = TelegrafStatsdClient(host=host, port=port, debug=debug)
        return TelegrafCompatibilityClient(telegraf_client)

    elif backend == "none":
        logger.info("Metrics collection disabled (no-op client)")
        return NoOpMetricsClient()

    raise ValueError(
        f"Invalid metrics backend: {backend}. Supported backends: 'telegraf', 'none'"
    )
