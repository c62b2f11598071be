"""
Listener service (consumer side).

- Consumes ``mail-service`` (``mail.*``), ``kb-jobs`` (``kb.*``, ``llm.*``,
  ``analytics.*``) and, unless disabled, ``logger-service`` (``log.*``)
- Dispatches each delivery to the mail service or the KB proxy over HTTP
- Exposes Prometheus metrics on ``METRICS_PORT`` (default 9464)

Run:
    python -m helpdesk_services.listener
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from helpdesk_jobs.adapters import KnowledgeBaseAdapter, MailServiceAdapter, ServiceClient
from helpdesk_jobs.config import Settings
from helpdesk_jobs.dispatch import JobConsumer, JobRoute, KnowledgeBaseJobRoute, LogEventRoute, MailJobRoute
from helpdesk_jobs.errors import ConnectionExhausted
from helpdesk_jobs.log_events import setup_logging
from helpdesk_jobs.metrics import ListenerMetrics, start_metrics_server
from helpdesk_jobs.rabbit import BrokerConnection
from helpdesk_jobs.topology import log_queue
from helpdesk_jobs.tracing import start_tracing

logger = logging.getLogger(__name__)


class Listener:
    """Owns the broker connection, the downstream clients and the job consumer.

    Concurrency is bounded by ``WORKER_PREFETCH`` (AMQP QoS) and
    ``WORKER_CONCURRENCY`` (in-flight handlers); the effective limit is the
    smaller of the two.
    """

    def __init__(
        self,
        settings: Settings,
        connection: Optional[BrokerConnection] = None,
        metrics: Optional[ListenerMetrics] = None,
    ) -> None:
        self.settings = settings
        self.connection = connection or BrokerConnection(settings)
        self.metrics = metrics or ListenerMetrics(
            prefix=settings.metrics_prefix or "listener_",
            buckets=settings.metrics_buckets,
            enabled=settings.metrics_enabled,
        )
        self.consumer: Optional[JobConsumer] = None
        self._clients: list[ServiceClient] = []
        self._stopping = asyncio.Event()

    def build_routes(self) -> list[JobRoute]:
        settings = self.settings
        mail_client = ServiceClient(
            "mail-service", settings.mail_service_url, settings.worker_token, settings.downstream_timeout_s
        )
        kb_client = ServiceClient(
            "flowise-proxy", settings.flowise_proxy_url, settings.worker_token, settings.downstream_timeout_s
        )
        self._clients = [mail_client, kb_client]
        routes: list[JobRoute] = [
            MailJobRoute(MailServiceAdapter(mail_client), settings),
            KnowledgeBaseJobRoute(KnowledgeBaseAdapter(kb_client)),
        ]
        if settings.consume_logs:
            routes.append(LogEventRoute(log_queue(settings.log_queue, settings.log_routing_key)))
        return routes

    async def run(self) -> None:
        """Connect, start consuming every queue and wait for ``stop()``."""
        if self.metrics.enabled:
            try:
                start_metrics_server(self.settings.metrics_port, self.metrics.registry)
                logger.info("[metrics] listener metrics on %s", self.settings.metrics_port)
            except OSError as exc:
                logger.warning(
                    "[metrics] could not bind port %s: %s",
                    self.settings.metrics_port,
                    exc,
                    extra={"event": "metrics_bind_failed", "port": self.settings.metrics_port},
                )
        tracer = start_tracing("helpdesk-listener")

        await self.connection.open(prefetch_count=self.settings.prefetch_count)
        self.consumer = JobConsumer(self.build_routes(), self.metrics, self.settings.worker_concurrency, tracer)
        try:
            await self.consumer.start(self.connection)
            logger.info("Listener running. Waiting for messages...")
            await self._stopping.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        if self.consumer is not None:
            await self.consumer.stop()
        for client in self._clients:
            await client.aclose()
        await self.connection.close()

    def stop(self) -> None:
        self._stopping.set()


async def main() -> None:
    settings = Settings()
    setup_logging(settings.log_level)
    listener = Listener(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, listener.stop)

    try:
        await listener.run()
    except ConnectionExhausted as exc:
        logger.critical("Failed to initialize AMQP: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
