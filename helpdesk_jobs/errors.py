"""Exception hierarchy for the job pipeline."""
from __future__ import annotations


class JobPipelineError(Exception):
    """Base class for pipeline errors."""


class ConnectionExhausted(JobPipelineError):
    """Raised when the AMQP connect-retry budget runs out."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"AMQP: exceeded max retries after {attempts} attempts{detail}")


class ChannelNotReady(JobPipelineError):
    """Raised when publishing or consuming before the channel is open."""

    def __init__(self, message: str = "AMQP channel not initialized") -> None:
        super().__init__(message)


class MalformedPayload(JobPipelineError):
    """The message body can never be processed; it must not be requeued."""


class HandlerNotImplemented(JobPipelineError):
    """The routing key is recognized (or unknown) but has no handler."""

    def __init__(self, routing_key: str) -> None:
        self.routing_key = routing_key
        super().__init__(f"Handler not implemented for routing key {routing_key!r}")


class DownstreamError(JobPipelineError):
    """A downstream HTTP call failed (transport error or non-2xx response)."""

    def __init__(self, service: str, path: str, status_code: int | None = None, detail: str = "") -> None:
        self.service = service
        self.path = path
        self.status_code = status_code
        self.detail = detail
        status = f"HTTP {status_code}" if status_code is not None else "transport error"
        suffix = f": {detail}" if detail else ""
        super().__init__(f"{service} {path} failed ({status}){suffix}")
