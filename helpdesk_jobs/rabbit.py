"""RabbitMQ connection management.

This module wraps ``aio_pika`` to provide:
- ``connect_with_retry``: connect with a fixed delay between attempts and an
  optional attempt budget (``-1`` retries forever)
- ``BrokerConnection``: the one connection, channel and ``jobs`` exchange a
  process owns, handed explicitly to publishers and consumers

Example:
    >>> conn = BrokerConnection(Settings())
    >>> await conn.open()
    >>> publisher = JobPublisher(conn)
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractRobustConnection

from helpdesk_jobs.config import Settings
from helpdesk_jobs.errors import ChannelNotReady, ConnectionExhausted
from helpdesk_jobs.topology import declare_exchange

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[AbstractRobustConnection]]
Sleeper = Callable[[float], Awaitable[Any]]


def build_ssl_context(settings: Settings) -> Optional[ssl.SSLContext]:
    """Return an ``ssl.SSLContext`` for TLS/mTLS if configured, else ``None``.

    TLS is used for ``amqps://`` URLs or when any ``RABBITMQ_SSL_*`` path is
    set. With verification disabled (dev/local) hostname checks and
    certificate verification are relaxed.
    """
    scheme = urlsplit(settings.rabbitmq_url).scheme.lower()
    wants_tls = scheme == "amqps" or any(
        [
            bool(settings.rabbitmq_ssl_ca_path),
            bool(settings.rabbitmq_ssl_cert_path),
            bool(settings.rabbitmq_ssl_key_path),
        ]
    )
    if not wants_tls:
        return None

    context = ssl.create_default_context(cafile=settings.rabbitmq_ssl_ca_path or None)
    if settings.rabbitmq_ssl_cert_path and settings.rabbitmq_ssl_key_path:
        context.load_cert_chain(settings.rabbitmq_ssl_cert_path, settings.rabbitmq_ssl_key_path)

    if not settings.rabbitmq_ssl_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    else:
        context.check_hostname = bool(settings.rabbitmq_ssl_check_hostname)
        context.verify_mode = ssl.CERT_REQUIRED
    return context


def _remaining(max_retries: int, attempt: int) -> int | str:
    return "unbounded" if max_retries < 0 else max_retries - attempt


async def connect_with_retry(
    url: str,
    retry_delay_ms: int = 5000,
    max_retries: int = -1,
    *,
    ssl_context: Optional[ssl.SSLContext] = None,
    connector: Connector = aio_pika.connect_robust,
    sleep: Sleeper = asyncio.sleep,
) -> AbstractRobustConnection:
    """Connect to RabbitMQ, retrying with a constant delay.

    RabbitMQ often starts after the services in docker-compose, so every
    failure is logged with the attempt number and the remaining budget and
    retried after ``retry_delay_ms``. With ``max_retries < 0`` the loop never
    gives up; otherwise ``ConnectionExhausted`` is raised once ``max_retries``
    attempts have failed.

    ``connector`` and ``sleep`` are injectable for tests.
    """
    attempt = 0
    last_exc: BaseException | None = None
    while max_retries < 0 or attempt < max_retries:
        attempt += 1
        logger.info(
            "AMQP: attempting connection (attempt %d)",
            attempt,
            extra={"event": "amqp_connect_attempt", "attempt": attempt, "remaining": _remaining(max_retries, attempt)},
        )
        try:
            if ssl_context is not None:
                connection = await connector(url, ssl=True, ssl_context=ssl_context)
            else:
                connection = await connector(url)
        except Exception as exc:  # noqa: BLE001
            last_exc = exc
            remaining = _remaining(max_retries, attempt)
            logger.warning(
                "AMQP: connection failed (attempt %d): %s",
                attempt,
                exc,
                extra={"event": "amqp_connect_failed", "attempt": attempt, "remaining": remaining},
            )
            if remaining == 0:
                break
            logger.info("AMQP: retrying in %dms", retry_delay_ms)
            await sleep(retry_delay_ms / 1000.0)
            continue
        logger.info("AMQP: connected", extra={"event": "amqp_connected", "attempt": attempt})
        return connection
    raise ConnectionExhausted(attempt, last_exc)


class BrokerConnection:
    """The AMQP connection, channel and exchange owned by one process.

    Publishers and consumers receive this object instead of reaching for
    module globals. ``connect_robust`` re-opens the channel on a fresh
    connection after a broker restart; unacked deliveries go back to their
    queue per broker redelivery rules.
    """

    def __init__(self, settings: Settings, connector: Connector = aio_pika.connect_robust, sleep: Sleeper = asyncio.sleep):
        self.settings = settings
        self._connector = connector
        self._sleep = sleep
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None

    @property
    def is_open(self) -> bool:
        return self._exchange is not None

    @property
    def channel(self) -> AbstractChannel:
        if self._channel is None:
            raise ChannelNotReady()
        return self._channel

    @property
    def exchange(self) -> AbstractExchange:
        if self._exchange is None:
            raise ChannelNotReady()
        return self._exchange

    async def open(self, prefetch_count: Optional[int] = None) -> AbstractChannel:
        """Connect with retry, open the channel, apply QoS and declare the exchange."""
        self._connection = await connect_with_retry(
            self.settings.rabbitmq_url,
            self.settings.amqp_retry_delay_ms,
            self.settings.amqp_max_retries,
            ssl_context=build_ssl_context(self.settings),
            connector=self._connector,
            sleep=self._sleep,
        )
        # Publishes are fire-and-forget; no publisher confirms
        channel = await self._connection.channel(publisher_confirms=False)
        if prefetch_count:
            await channel.set_qos(prefetch_count=prefetch_count)
        self._exchange = await declare_exchange(channel)
        self._channel = channel
        return channel

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        self._channel = None
        self._exchange = None
        if connection is not None and not connection.is_closed:
            await connection.close()
