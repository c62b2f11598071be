"""
Topology initializer.

- Declares the durable ``jobs`` topic exchange
- Declares and binds the ``mail-service``, ``kb-jobs`` and logger queues

Supports a best-effort mode via ``--best-effort`` or
``INIT_TOPOLOGY_BEST_EFFORT=1`` which skips errors when RabbitMQ is not
reachable (useful in CI without a broker).

Examples:
    python -m helpdesk_services.init_topology
    python -m helpdesk_services.init_topology --best-effort
"""

import argparse
import asyncio
import logging
import os

from helpdesk_jobs.config import Settings
from helpdesk_jobs.errors import ConnectionExhausted
from helpdesk_jobs.log_events import setup_logging
from helpdesk_jobs.rabbit import BrokerConnection
from helpdesk_jobs.topology import KB_QUEUE, MAIL_QUEUE, declare_queue, log_queue

logger = logging.getLogger(__name__)


async def main(settings: Settings, best_effort: bool) -> None:
    """Declare the exchange and every queue, optionally tolerating failures."""
    connection = BrokerConnection(settings)
    try:
        await connection.open()
    except ConnectionExhausted as exc:
        if best_effort:
            logger.warning("[init_topology] Skipping: RabbitMQ not reachable (%s)", exc)
            return
        raise

    try:
        for spec in (MAIL_QUEUE, KB_QUEUE, log_queue(settings.log_queue, settings.log_routing_key)):
            await declare_queue(connection.channel, connection.exchange, spec)
    except Exception as exc:  # noqa: BLE001
        if not best_effort:
            raise
        logger.warning("[init_topology] Skipping declarations due to error: %s", exc)
    finally:
        await connection.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Declare the RabbitMQ topology for the job pipeline")
    parser.add_argument("--best-effort", action="store_true", help="Do not fail if RabbitMQ is unreachable")
    parser.add_argument("--max-retries", type=int, default=None, help="Override AMQP_MAX_RETRIES")
    args = parser.parse_args()

    best_effort_env = os.getenv("INIT_TOPOLOGY_BEST_EFFORT", "false").lower() in {"1", "true", "yes"}
    settings = Settings()
    if args.max_retries is not None:
        settings.amqp_max_retries = args.max_retries
    elif settings.amqp_max_retries < 0:
        # A one-shot script should not wait forever
        settings.amqp_max_retries = 3
    setup_logging(settings.log_level)
    asyncio.run(main(settings, bool(args.best_effort or best_effort_env)))
