"""
Broker HTTP service (publisher side).

- ``POST /publish/otp`` publishes the body under ``mail.otp``
- ``POST /publish/log`` publishes the body under ``log.event``
- ``POST /publish/job`` publishes ``payload`` under a known ``routingKey``
  (used by the KB proxy to enqueue ``kb.*`` jobs)
- ``GET /health`` and ``GET /metrics``

Delivery is asynchronous: ``{"ok": true}`` only means the message was handed
to the broker, not that the downstream action happened.

Run:
    python -m helpdesk_services.broker_service
"""

import asyncio
import logging
import sys
import time
import uuid
from typing import Any, Optional

import uvicorn
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from helpdesk_jobs.config import Settings
from helpdesk_jobs.constants import RoutingKey
from helpdesk_jobs.errors import ConnectionExhausted
from helpdesk_jobs.log_events import LogShipper, setup_logging
from helpdesk_jobs.metrics import BrokerMetrics, render_latest
from helpdesk_jobs.publisher import JobPublisher
from helpdesk_jobs.rabbit import BrokerConnection
from helpdesk_jobs.tracing import start_tracing
from helpdesk_jobs.validation import PublishJobRequest

logger = logging.getLogger(__name__)

# Requests to these paths are not shipped as log events
_UNLOGGED_PREFIXES = ("/publish/log", "/health", "/metrics")


def build_metrics(settings: Settings) -> BrokerMetrics:
    return BrokerMetrics(
        prefix=settings.metrics_prefix or "broker_",
        buckets=settings.metrics_buckets,
        enabled=settings.metrics_enabled,
    )


def create_app(
    settings: Settings,
    publisher: JobPublisher,
    metrics: Optional[BrokerMetrics] = None,
    shipper: Optional[LogShipper] = None,
) -> FastAPI:
    """Build the FastAPI application around an already-connected publisher."""
    metrics = metrics or publisher.metrics or build_metrics(settings)
    app = FastAPI(title="broker-service", version="1.0.0")
    app.state.publisher = publisher
    app.state.metrics = metrics
    pending_logs: set[asyncio.Task] = set()

    allow_all = "*" in settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "Accept"],
        expose_headers=["Content-Disposition"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Attach request/correlation ids, time the request and ship a log event."""
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        correlation_id = request.headers.get("x-correlation-id") or request_id
        request.state.request_id = request_id
        request.state.correlation_id = correlation_id

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        route = request.scope.get("route")
        route_path = getattr(route, "path", None) or request.url.path
        metrics.observe_request(request.method, route_path, response.status_code, duration)
        response.headers["X-Request-Id"] = request_id

        if shipper is not None and not request.url.path.startswith(_UNLOGGED_PREFIXES):
            task = asyncio.create_task(
                shipper.emit(
                    level="info",
                    event="http_request",
                    message=f"{request.method} {request.url.path}",
                    request_id=request_id,
                    correlation_id=correlation_id,
                    resource=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2),
                    context={
                        "method": request.method,
                        "path": request.url.path,
                        "ip": request.headers.get("x-forwarded-for", "").split(",")[0].strip()
                        or (request.client.host if request.client else None),
                    },
                )
            )
            pending_logs.add(task)
            task.add_done_callback(pending_logs.discard)
        return response

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = "; ".join(str(err.get("msg", "invalid value")) for err in exc.errors())
        return JSONResponse(status_code=400, content={"error": f"invalid request body: {messages}"})

    async def _publish(routing_key: str, message: dict[str, Any]) -> JSONResponse:
        try:
            await app.state.publisher.publish(routing_key, message)
        except Exception as exc:  # noqa: BLE001
            logger.error("publish failed: %s", exc, extra={"event": "publish_failed", "routing_key": routing_key})
            return JSONResponse(status_code=500, content={"error": str(exc)})
        return JSONResponse(content={"ok": True})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics_endpoint():
        if not metrics.enabled:
            return PlainTextResponse("metrics disabled", status_code=503)
        body, content_type = render_latest(metrics.registry)
        return Response(content=body, media_type=content_type)

    @app.post("/publish/otp")
    async def publish_otp(payload: dict[str, Any] = Body(...)):
        return await _publish(RoutingKey.MAIL_OTP.value, payload)

    @app.post("/publish/log")
    async def publish_log(payload: dict[str, Any] = Body(...)):
        return await _publish(RoutingKey.LOG_EVENT.value, payload)

    @app.post("/publish/job")
    async def publish_job(job: PublishJobRequest):
        if RoutingKey.lookup(job.routing_key) is None:
            return JSONResponse(status_code=400, content={"error": f"unknown routing key: {job.routing_key}"})
        message = dict(job.payload)
        if job.job_id:
            message["jobId"] = job.job_id
        response = await _publish(job.routing_key, message)
        if response.status_code == 200:
            return JSONResponse(content={"ok": True, "jobId": message.get("jobId")})
        return response

    return app


async def main(settings: Optional[Settings] = None, connection: Optional[BrokerConnection] = None) -> None:
    """Connect to RabbitMQ (exit 1 when retries run out), then serve HTTP."""
    settings = settings or Settings()
    setup_logging(settings.log_level)
    start_tracing("helpdesk-broker")

    metrics = build_metrics(settings)
    connection = connection or BrokerConnection(settings)
    try:
        await connection.open()
    except ConnectionExhausted as exc:
        logger.critical("Failed to initialize AMQP: %s", exc)
        sys.exit(1)

    shipper = LogShipper(settings.service_name, settings.log_endpoint, settings.log_sample_rate)
    app = create_app(settings, JobPublisher(connection, metrics), metrics=metrics, shipper=shipper)
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=settings.port, log_config=None))
    logger.info("Broker service listening on %s", settings.port)
    try:
        await server.serve()
    finally:
        await shipper.aclose()
        await connection.close()


if __name__ == "__main__":
    asyncio.run(main())
