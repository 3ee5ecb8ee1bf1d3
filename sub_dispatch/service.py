"""
Service wiring.

Builds the store, sink, health server and dispatcher described by a
``DispatchConfig`` and manages their lifecycle: startup and shutdown.
"""

from __future__ import annotations

from typing import Any

import structlog

from .config import DispatchConfig, SinkConfig, StoreConfig
from .dispatcher import Dispatcher
from .executor import Executor
from .health import HealthServer
from .metrics import MetricsCollector
from .sinks import DeliverySink, MemorySink, WebhookSink
from .state import SqliteSubscriptionStore
from .store import MemorySubscriptionStore, SubscriptionStore

log = structlog.get_logger()


def build_store(config: StoreConfig) -> SubscriptionStore:
    if config.backend == "sqlite":
        return SqliteSubscriptionStore(config.db_path)
    return MemorySubscriptionStore()


def build_sink(config: SinkConfig, metrics: MetricsCollector | None = None) -> DeliverySink:
    if config.kind == "webhook":
        headers = {}
        token = config.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return WebhookSink(
            config.url,
            verify_tls=config.verify_tls,
            request_timeout=config.request_timeout_seconds,
            headers=headers,
            metrics=metrics,
        )
    return MemorySink()


class DispatchService:
    """
    Owns a dispatcher and the resources behind it.

    Usable as ``async with DispatchService(config, executor) as service:``.
    A sink passed in by the caller is used as-is and not opened or closed.
    """

    def __init__(
        self,
        config: DispatchConfig,
        executor: Executor,
        sink: DeliverySink | None = None,
    ):
        self._config = config
        self._metrics = MetricsCollector()
        self._store = build_store(config.store)
        self._owns_sink = sink is None
        self._sink = sink if sink is not None else build_sink(config.sink, self._metrics)
        self.dispatcher = Dispatcher(
            config.subscription_schema,
            self._store,
            executor,
            self._sink,
            fault_policy=config.dispatch.fault_policy,
            trigger_timeout=config.dispatch.trigger_timeout_seconds,
            metrics=self._metrics,
        )
        self._health = HealthServer(
            host=config.metrics.host,
            port=config.metrics.port,
            metrics=self._metrics,
            status_provider=self._status,
        )
        self._running = False

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def store(self) -> SubscriptionStore:
        return self._store

    @property
    def sink(self) -> DeliverySink:
        return self._sink

    async def start(self) -> None:
        """Open the store and sink, then the health server if enabled."""
        log.info(
            "service.starting",
            store=self._config.store.backend,
            sink=self._config.sink.kind,
            events=len(self._config.subscription_schema.events),
        )
        await self._store.open()
        if self._owns_sink and isinstance(self._sink, WebhookSink):
            await self._sink.open()

        if self._config.metrics.enabled:
            try:
                await self._health.start()
                log.info(
                    "service.health_started",
                    host=self._config.metrics.host,
                    port=self._config.metrics.port,
                )
            except OSError as exc:
                log.warning("service.health_start_failed", error=str(exc))

        self._running = True
        log.info("service.started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        log.info("service.stopping")

        await self._health.stop()
        if self._owns_sink and isinstance(self._sink, WebhookSink):
            await self._sink.close()
        await self._store.close()

        log.info("service.stopped")

    async def __aenter__(self) -> DispatchService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _status(self) -> dict[str, Any]:
        return {
            "store": self._config.store.backend,
            **await self.dispatcher.stats(),
        }
