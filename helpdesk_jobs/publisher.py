"""Publishing side of the pipeline: one primitive, ``publish(routing_key, message)``."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Mapping, Optional

from aio_pika import DeliveryMode, Message

from helpdesk_jobs.errors import ChannelNotReady
from helpdesk_jobs.metrics import BrokerMetrics
from helpdesk_jobs.rabbit import BrokerConnection
from helpdesk_jobs.tracing import inject_headers

logger = logging.getLogger(__name__)


def build_message(message: Mapping[str, Any], headers: Optional[dict[str, Any]] = None) -> Message:
    body = json.dumps(message, separators=(",", ":")).encode("utf-8")
    return Message(
        body=body,
        content_type="application/json",
        delivery_mode=DeliveryMode.PERSISTENT,
        message_id=str(uuid.uuid4()),
        headers=inject_headers(headers),
    )


class JobPublisher:
    """Publishes persistent JSON messages to the ``jobs`` exchange.

    Publishing is fire-and-forget: no broker confirm is awaited, so callers
    that need delivery guarantees must add their own outbox.
    """

    def __init__(self, connection: BrokerConnection, metrics: Optional[BrokerMetrics] = None) -> None:
        self.connection = connection
        self.metrics = metrics

    async def publish(self, routing_key: str, message: Mapping[str, Any]) -> None:
        if not self.connection.is_open:
            raise ChannelNotReady()
        amqp_message = build_message(message)
        await self.connection.exchange.publish(amqp_message, routing_key=routing_key)
        if self.metrics is not None:
            self.metrics.record_publish(routing_key)
        logger.debug(
            "published message",
            extra={"event": "job_published", "routing_key": routing_key, "message_id": amqp_message.message_id},
        )
