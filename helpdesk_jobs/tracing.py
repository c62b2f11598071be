"""OpenTelemetry tracing helpers for the publisher and the listener.

The publisher injects the current W3C trace context into AMQP headers; the
listener extracts it and runs each job inside a ``process_job`` span so a
request can be followed from the HTTP publish call to the downstream action.

Spans are exported to the console when ``OTEL_TRACES_CONSOLE`` is truthy and
otherwise only kept in-process.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping

from opentelemetry import context, trace  # type: ignore
from opentelemetry.propagate import extract, inject, set_global_textmap  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Span, Tracer  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore


def start_tracing(service_name: str = "helpdesk-jobs") -> Tracer:
    """Install a TracerProvider for this process and return a tracer."""
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if os.getenv("OTEL_TRACES_CONSOLE", "false").lower() in {"1", "true", "yes"}:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())
    return trace.get_tracer(service_name)


def get_tracer(service_name: str = "helpdesk-jobs") -> Tracer:
    return trace.get_tracer(service_name)


def inject_headers(headers: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Return a copy of ``headers`` with the current trace context added."""
    carrier: Dict[str, Any] = {} if headers is None else dict(headers)
    inject(carrier)
    return carrier


@contextmanager
def job_span(tracer: Tracer, headers: Mapping[str, Any] | None, **attributes: Any) -> Iterator[Span]:
    """Run a block inside a ``process_job`` span parented by the AMQP headers."""
    carrier = {str(k): v if isinstance(v, str) else str(v) for k, v in (headers or {}).items()}
    token = context.attach(extract(carrier))
    try:
        with tracer.start_as_current_span("process_job") as span:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
            yield span
    finally:
        context.detach(token)
