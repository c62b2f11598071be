"""Exchange and queue topology for the ``jobs`` exchange.

- One durable topic exchange, declared idempotently on every connect
- One durable queue per job family, bound by routing-key patterns, so a
  failing family (say, KB ingestion) cannot stall another (OTP email)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

from helpdesk_jobs.constants import (
    EXCHANGE_NAME,
    KB_QUEUE_NAME,
    LOG_QUEUE_NAME,
    MAIL_QUEUE_NAME,
    Settlement,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueSpec:
    """A durable queue, its binding patterns and what to do when a handler fails."""
    name: str
    bindings: tuple[str, ...]
    failure_settlement: Settlement

    def accepts(self, routing_key: str) -> bool:
        return any(binding_matches(pattern, routing_key) for pattern in self.bindings)


# Mail failures are usually transient (SMTP hiccups): requeue
MAIL_QUEUE = QueueSpec(MAIL_QUEUE_NAME, ("mail.*",), Settlement.REQUEUE)

# KB writes are not idempotent against the vector store: drop after reporting.
# llm.* and analytics.* land here until they get queues of their own.
KB_QUEUE = QueueSpec(KB_QUEUE_NAME, ("kb.*", "llm.*", "analytics.*"), Settlement.ACK)


def log_queue(name: str = LOG_QUEUE_NAME, routing_key: str = "log.*") -> QueueSpec:
    return QueueSpec(name, (routing_key,), Settlement.REJECT)


def bound_queues(routing_key: str, specs: Sequence[QueueSpec]) -> list[str]:
    """Names of the queues whose bindings would receive ``routing_key``."""
    return [spec.name for spec in specs if spec.accepts(routing_key)]


def binding_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic matching: ``*`` is exactly one word, ``#`` zero or more.

    >>> binding_matches("kb.*", "kb.ingest")
    True
    >>> binding_matches("kb.*", "kb.ingest.retry")
    False
    >>> binding_matches("log.#", "log")
    True
    """
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


async def declare_exchange(channel: AbstractChannel) -> AbstractExchange:
    return await channel.declare_exchange(EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)


async def declare_queue(channel: AbstractChannel, exchange: AbstractExchange, spec: QueueSpec) -> AbstractQueue:
    """Declare a durable queue and bind every pattern in ``spec`` to the exchange."""
    queue = await channel.declare_queue(spec.name, durable=True)
    for pattern in spec.bindings:
        await queue.bind(exchange, routing_key=pattern)
    logger.info(
        "queue declared",
        extra={"event": "queue_declared", "queue": spec.name, "exchange": EXCHANGE_NAME, "bindings": ",".join(spec.bindings)},
    )
    return queue
