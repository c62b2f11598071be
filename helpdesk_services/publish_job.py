"""
Publish a single job from the command line.

Examples:
    python -m helpdesk_services.publish_job mail.otp '{"type": "SEND_OTP", "to": "a@b.com", "otp": "123456"}'
    python -m helpdesk_services.publish_job kb.refresh '{"jobId": "abc", "storeId": "s1"}'
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional, Sequence

from helpdesk_jobs.config import Settings
from helpdesk_jobs.constants import RoutingKey
from helpdesk_jobs.log_events import setup_logging
from helpdesk_jobs.publisher import JobPublisher
from helpdesk_jobs.rabbit import BrokerConnection
from helpdesk_jobs.topology import KB_QUEUE, MAIL_QUEUE, QueueSpec, bound_queues, log_queue
from helpdesk_jobs.tracing import start_tracing

logger = logging.getLogger(__name__)


def parse_payload(raw: str) -> dict[str, Any]:
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("payload must be a JSON object")
    return payload


def check_routing_key(routing_key: str, allow_unknown: bool, queues: Sequence[QueueSpec]) -> Optional[str]:
    """Return why ``routing_key`` should not be published, or None.

    Without mandatory publishing an unbound key is silently dropped by the
    exchange, so it is refused even with ``--allow-unknown``.
    """
    if RoutingKey.lookup(routing_key) is None and not allow_unknown:
        return f"unknown routing key: {routing_key}"
    if not bound_queues(routing_key, queues):
        return f"no queue is bound to {routing_key}; the message would be dropped"
    return None


async def main(routing_key: str, payload: dict[str, Any], settings: Settings) -> None:
    tracer = start_tracing("helpdesk-publish-job")
    connection = BrokerConnection(settings)
    await connection.open()
    try:
        with tracer.start_as_current_span("publish") as span:
            span.set_attribute("routing_key", routing_key)
            await JobPublisher(connection).publish(routing_key, payload)
        logger.info("published %s", routing_key, extra={"event": "job_published", "routing_key": routing_key})
    finally:
        await connection.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Publish one JSON job to the jobs exchange")
    parser.add_argument("routing_key", help="e.g. mail.otp, kb.ingest")
    parser.add_argument("payload", help="JSON object")
    parser.add_argument("--allow-unknown", action="store_true", help="Publish routing keys outside the known set")
    args = parser.parse_args()

    settings = Settings()
    queues = (MAIL_QUEUE, KB_QUEUE, log_queue(settings.log_queue, settings.log_routing_key))
    problem = check_routing_key(args.routing_key, args.allow_unknown, queues)
    if problem:
        sys.exit(problem)

    if settings.amqp_max_retries < 0:
        settings.amqp_max_retries = 3
    setup_logging(settings.log_level)
    asyncio.run(main(args.routing_key, parse_payload(args.payload), settings))
