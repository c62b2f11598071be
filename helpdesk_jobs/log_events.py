"""
Logging setup and structured log shipping.

Process logs go through the standard ``logging`` module; structured fields are
passed with ``extra=`` and rendered as ``key=value`` pairs by
``KeyValueFormatter``.

``LogShipper`` sends structured events to the broker's ``/publish/log``
endpoint so they end up on the ``log.event`` routing key. Shipping is
best-effort: sensitive keys are stripped, long strings truncated, low levels
sampled, and delivery failures only produce a local warning.
"""

import logging
import random
import sys
from typing import Any, Optional

import httpx

ALLOWED_LEVELS = ["fatal", "error", "warn", "info", "debug", "trace"]
SENSITIVE_KEYS = ["password", "token", "authorization", "secret", "cookie"]
MAX_STRING_LENGTH = 1024
SHIP_TIMEOUT_S = 1.5

# Attributes present on every LogRecord; anything else came from extra=
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_PY_LEVELS = {
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


class KeyValueFormatter(logging.Formatter):
    """Append ``extra=`` fields to the formatted message as ``key=value``."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = {k: v for k, v in vars(record).items() if k not in _RESERVED and not k.startswith("_")}
        if not fields:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return f"{base} {rendered}"


def setup_logging(level: str = "INFO", format_string: Optional[str] = None) -> None:
    """Configure the root logger with a stdout handler and the key/value formatter."""
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(KeyValueFormatter(format_string))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def normalize_level(level: Any = "info") -> str:
    lowered = str(level or "info").lower()
    if lowered == "warning":
        return "warn"
    return lowered if lowered in ALLOWED_LEVELS else "info"


def python_level(level: str) -> int:
    """Map a normalized shipping level to a ``logging`` level."""
    return _PY_LEVELS.get(normalize_level(level), logging.INFO)


def clean_payload(value: Any) -> Any:
    """Drop sensitive keys and truncate long strings, recursively.

    >>> clean_payload({"user": "a", "password": "x", "nested": {"apiToken": "t"}})
    {'user': 'a', 'nested': {}}
    """
    if value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [clean_payload(item) for item in value]
    if isinstance(value, dict):
        cleaned = {}
        for key, val in value.items():
            lowered = str(key).lower()
            if any(sensitive in lowered for sensitive in SENSITIVE_KEYS):
                continue
            cleaned[key] = clean_payload(val)
        return cleaned
    if isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
        return f"{value[:MAX_STRING_LENGTH]}...[truncated]"
    return value


def should_sample(level: str, sample_rate: float, rand=random.random) -> bool:
    if level in {"fatal", "error", "warn"}:
        return True
    return rand() < sample_rate


def build_log_event(
    service: str,
    *,
    level: str = "info",
    event: Optional[str] = None,
    message: Optional[str] = None,
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    resource: Optional[str] = None,
    status_code: Optional[int] = None,
    duration_ms: Optional[float] = None,
    tags: Optional[list[str]] = None,
    context: Optional[dict[str, Any]] = None,
) -> dict[str, Any] | None:
    """Return the wire shape of a log event, or ``None`` when there is nothing to say."""
    if not event and not message:
        return None
    return {
        "level": normalize_level(level),
        "event": event or message,
        "message": message or event,
        "service": service,
        "requestId": request_id,
        "correlationId": correlation_id,
        "resource": resource,
        "statusCode": status_code,
        "durationMs": duration_ms,
        "tags": tags,
        "context": clean_payload(context or {}),
    }


class LogShipper:
    """Best-effort HTTP shipper for structured log events.

    Example:
        shipper = LogShipper("broker-service", "http://broker:3000/publish/log")
        await shipper.emit(event="mail_sent", message="Email dispatched", request_id=rid)
    """

    def __init__(
        self,
        service: str,
        endpoint: str,
        sample_rate: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.service = service
        self.endpoint = endpoint
        self.sample_rate = sample_rate
        self._client = client
        self._logger = logging.getLogger(__name__)

    async def emit(self, **fields: Any) -> bool:
        """Ship one event. Returns True when the event was delivered."""
        payload = build_log_event(self.service, **fields)
        if payload is None or not self.endpoint:
            return False
        if not should_sample(payload["level"], self.sample_rate):
            return False
        headers = {"X-Request-Id": payload["requestId"] or ""}
        try:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=SHIP_TIMEOUT_S)
            response = await self._client.post(self.endpoint, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self._logger.warning("[%s] log dispatch failed: %s", self.service, exc)
            return False
        return True

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
