"""
Job consumer and per-queue dispatch routes.

Lifecycle of one delivery:

    received -> parsed -> dispatched -> ack | requeue | reject

- Bodies that are not a JSON object, or that fail a handler's schema, are
  rejected (nack without requeue) on every queue: they can never succeed.
- Handler failures follow the queue's ``failure_settlement``: the mail queue
  requeues, the KB queue acks (drops) after reporting, the log queue rejects.
- Every delivery is settled exactly once and produces one structured log
  line plus a ``jobs_total``/``job_duration_seconds`` sample labeled by queue,
  job type and status.

Concurrency is bounded twice: the channel's AMQP prefetch limits unacked
deliveries, and a semaphore limits in-flight handlers. Completion (and so
ack) order may differ from delivery order.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Sequence

from aio_pika.abc import AbstractIncomingMessage, AbstractQueue
from opentelemetry.trace import Tracer  # type: ignore

from helpdesk_jobs.adapters import KnowledgeBaseAdapter, MailServiceAdapter
from helpdesk_jobs.config import Settings
from helpdesk_jobs.constants import (
    HANDLER_NOT_IMPLEMENTED,
    KB_STATUS_FAILED,
    MAIL_TYPE_SEND_OTP,
    JobStatus,
    RoutingKey,
    Settlement,
)
from helpdesk_jobs.errors import DownstreamError, HandlerNotImplemented, MalformedPayload
from helpdesk_jobs.log_events import clean_payload, normalize_level, python_level
from helpdesk_jobs.metrics import ListenerMetrics
from helpdesk_jobs.rabbit import BrokerConnection
from helpdesk_jobs.templates import render_otp_email
from helpdesk_jobs.topology import KB_QUEUE, MAIL_QUEUE, QueueSpec, declare_queue
from helpdesk_jobs.tracing import get_tracer, job_span
from helpdesk_jobs.validation import LogEventJob, OtpMailJob, parse_job_body, validate_job

logger = logging.getLogger(__name__)
ingest_logger = logging.getLogger("helpdesk.ingest")

Handler = Callable[[str, dict[str, Any]], Awaitable[JobStatus]]


class JobRoute(ABC):
    """Dispatch rules for one queue."""

    queue: QueueSpec

    @abstractmethod
    def job_type(self, routing_key: str, payload: dict[str, Any]) -> str:
        """Return the metric/log label for a parsed payload."""

    @abstractmethod
    async def handle(self, routing_key: str, payload: dict[str, Any]) -> JobStatus:
        """Perform the job. Raise to signal failure."""


class MailJobRoute(JobRoute):
    """Mail queue: dispatch on the payload's ``type``; unknown types are skipped."""

    queue = MAIL_QUEUE

    def __init__(self, mail: MailServiceAdapter, settings: Settings) -> None:
        self.mail = mail
        self.settings = settings
        self.handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            MAIL_TYPE_SEND_OTP: self.send_otp,
        }

    def job_type(self, routing_key: str, payload: dict[str, Any]) -> str:
        mail_type = payload.get("type")
        return mail_type if isinstance(mail_type, str) and mail_type else "unknown"

    async def handle(self, routing_key: str, payload: dict[str, Any]) -> JobStatus:
        mail_type = payload.get("type")
        if mail_type is not None and not isinstance(mail_type, str):
            raise MalformedPayload(f"mail job type must be a string, got {type(mail_type).__name__}")
        handler = self.handlers.get(mail_type) if mail_type else None
        if handler is None:
            return JobStatus.SKIPPED
        await handler(payload)
        return JobStatus.SUCCESS

    async def send_otp(self, payload: dict[str, Any]) -> None:
        job: OtpMailJob = validate_job(OtpMailJob, payload)
        email = render_otp_email(
            job.otp,
            job.display_name,
            purpose=job.purpose,
            logo_url=self.settings.mail_logo_url,
            show_logo=self.settings.mail_show_logo,
            brand_name=self.settings.mail_brand_name,
        )
        await self.mail.send(job.to, email.subject, email.text, email.html)


class KnowledgeBaseJobRoute(JobRoute):
    """KB queue: dispatch table keyed by routing key.

    ``kb.*`` jobs are forwarded unchanged to the proxy's internal endpoints.
    ``llm.batch``, ``analytics.rollup`` and unknown keys have no handler: the
    job is reported as failed (when it carries a ``jobId``) and the handler
    raises, which drops the message.
    """

    queue = KB_QUEUE

    def __init__(self, kb: KnowledgeBaseAdapter) -> None:
        self.kb = kb
        self.handlers: dict[RoutingKey, Handler] = {
            RoutingKey.KB_INGEST: partial(self.forward, "ingest"),
            RoutingKey.KB_REPROCESS: partial(self.forward, "reprocess"),
            RoutingKey.KB_UPSERT: partial(self.forward, "upsert"),
            RoutingKey.KB_REFRESH: partial(self.forward, "refresh"),
            RoutingKey.LLM_BATCH: self.not_implemented,
            RoutingKey.ANALYTICS_ROLLUP: self.not_implemented,
        }

    def job_type(self, routing_key: str, payload: dict[str, Any]) -> str:
        return routing_key or "unknown"

    async def handle(self, routing_key: str, payload: dict[str, Any]) -> JobStatus:
        key = RoutingKey.lookup(routing_key)
        handler = self.handlers.get(key, self.not_implemented) if key else self.not_implemented
        return await handler(routing_key, payload)

    async def forward(self, action: str, routing_key: str, payload: dict[str, Any]) -> JobStatus:
        await self.kb.forward(action, payload)
        return JobStatus.SUCCESS

    async def not_implemented(self, routing_key: str, payload: dict[str, Any]) -> JobStatus:
        job_id = payload.get("jobId")
        if job_id is not None:
            try:
                await self.kb.report_status(str(job_id), KB_STATUS_FAILED, routing_key, HANDLER_NOT_IMPLEMENTED)
            except DownstreamError as exc:
                logger.warning(
                    "job status report failed: %s",
                    exc,
                    extra={"event": "job_status_report_failed", "job_id": job_id, "routing_key": routing_key},
                )
        raise HandlerNotImplemented(routing_key)


class LogEventRoute(JobRoute):
    """Log queue: ingest structured events into the ``helpdesk.ingest`` logger."""

    def __init__(self, queue: QueueSpec) -> None:
        self.queue = queue

    def job_type(self, routing_key: str, payload: dict[str, Any]) -> str:
        return routing_key or "unknown"

    async def handle(self, routing_key: str, payload: dict[str, Any]) -> JobStatus:
        event: LogEventJob = validate_job(LogEventJob, payload)
        level = normalize_level(event.level)
        ingest_logger.log(
            python_level(level),
            event.message or event.event or "log event",
            extra={
                "event": event.event,
                "source_service": event.service,
                "request_id": event.request_id,
                "context": clean_payload(event.context or {}),
                "source": "rabbitmq",
                "queue": self.queue.name,
            },
        )
        return JobStatus.SUCCESS


class JobConsumer:
    """Consumes every route's queue and settles each delivery exactly once.

    Example:
        consumer = JobConsumer([MailJobRoute(mail, settings)], ListenerMetrics())
        await consumer.start(connection)
    """

    def __init__(
        self,
        routes: Sequence[JobRoute],
        metrics: ListenerMetrics,
        concurrency: int = 10,
        tracer: Optional[Tracer] = None,
    ) -> None:
        self.routes = list(routes)
        self.metrics = metrics
        self._sem = asyncio.Semaphore(max(concurrency, 1))
        self._tracer = tracer or get_tracer("helpdesk-listener")
        self._consumers: list[tuple[AbstractQueue, str]] = []

    async def start(self, connection: BrokerConnection) -> None:
        """Declare and bind each route's queue, then start consuming with manual acks."""
        for route in self.routes:
            queue = await declare_queue(connection.channel, connection.exchange, route.queue)
            tag = await queue.consume(partial(self.on_message, route), no_ack=False)
            self._consumers.append((queue, tag))
            logger.info("consumer started", extra={"event": "consumer_started", "queue": route.queue.name})

    async def stop(self) -> None:
        consumers, self._consumers = self._consumers, []
        for queue, tag in consumers:
            await queue.cancel(tag)

    async def on_message(self, route: JobRoute, message: AbstractIncomingMessage) -> Settlement:
        async with self._sem:
            return await self.process(route, message)

    async def process(self, route: JobRoute, message: AbstractIncomingMessage) -> Settlement:
        request_id = str(uuid.uuid4())
        start = time.perf_counter()
        routing_key = message.routing_key or ""
        job_type = routing_key or "unknown"
        job_id: Any = None
        error: Optional[BaseException] = None

        try:
            payload = parse_job_body(message.body)
            job_type = route.job_type(routing_key, payload)
            job_id = payload.get("jobId")
            with job_span(
                self._tracer,
                message.headers,
                request_id=request_id,
                queue=route.queue.name,
                routing_key=routing_key,
            ):
                status = await route.handle(routing_key, payload)
            settlement = Settlement.ACK
        except MalformedPayload as exc:
            status, settlement, error = JobStatus.MALFORMED, Settlement.REJECT, exc
        except Exception as exc:  # noqa: BLE001
            status, settlement, error = JobStatus.FAILED, route.queue.failure_settlement, exc

        await self._settle(message, settlement)
        duration = time.perf_counter() - start
        self.metrics.track_job(route.queue.name, job_type, status.value, duration)
        self._log_outcome(route, message, request_id, job_type, job_id, status, settlement, duration, error)
        return settlement

    @staticmethod
    async def _settle(message: AbstractIncomingMessage, settlement: Settlement) -> None:
        if settlement is Settlement.ACK:
            await message.ack()
        elif settlement is Settlement.REQUEUE:
            await message.nack(requeue=True)
        else:
            await message.nack(requeue=False)

    @staticmethod
    def _log_outcome(
        route: JobRoute,
        message: AbstractIncomingMessage,
        request_id: str,
        job_type: str,
        job_id: Any,
        status: JobStatus,
        settlement: Settlement,
        duration: float,
        error: Optional[BaseException],
    ) -> None:
        fields = {
            "event": f"job_{'completed' if status is JobStatus.SUCCESS else status.value}",
            "request_id": request_id,
            "message_id": message.message_id,
            "queue": route.queue.name,
            "routing_key": message.routing_key,
            "job_type": job_type,
            "job_id": job_id,
            "status": status.value,
            "settlement": settlement.value,
            "duration_ms": round(duration * 1000, 2),
        }
        if error is None:
            logger.info("job %s", status.value, extra=fields)
        elif status is JobStatus.MALFORMED:
            logger.warning("job malformed: %s", error, extra=fields)
        else:
            logger.error("job failed: %s", error, extra=fields)
