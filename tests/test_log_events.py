import json
import logging

import httpx
import pytest

from helpdesk_jobs.log_events import (
    KeyValueFormatter,
    LogShipper,
    build_log_event,
    clean_payload,
    normalize_level,
    should_sample,
)


def test_clean_payload_strips_sensitive_keys_and_truncates():
    cleaned = clean_payload(
        {
            "user": "ana",
            "Authorization": "Bearer x",
            "items": [{"sessionCookie": "c", "ok": 1}],
            "body": "x" * 2000,
        }
    )
    assert cleaned["user"] == "ana"
    assert "Authorization" not in cleaned
    assert cleaned["items"] == [{"ok": 1}]
    assert cleaned["body"].endswith("...[truncated]")
    assert len(cleaned["body"]) == 1024 + len("...[truncated]")


def test_normalize_level():
    assert normalize_level("ERROR") == "error"
    assert normalize_level("warning") == "warn"
    assert normalize_level("verbose") == "info"
    assert normalize_level(None) == "info"


def test_sampling_always_keeps_warnings_and_errors():
    assert should_sample("error", 0.0)
    assert should_sample("warn", 0.0)
    assert not should_sample("info", 0.0, rand=lambda: 0.5)
    assert should_sample("info", 0.6, rand=lambda: 0.5)


def test_build_log_event_requires_event_or_message():
    assert build_log_event("svc") is None
    event = build_log_event("svc", message="hello", context={"token": "t", "a": 1})
    assert event["event"] == "hello"
    assert event["service"] == "svc"
    assert event["context"] == {"a": 1}


def test_key_value_formatter_appends_extra_fields():
    record = logging.makeLogRecord({"msg": "job success", "levelname": "INFO", "queue": "kb-jobs", "status": "success"})
    line = KeyValueFormatter("%(message)s").format(record)
    assert line == "job success queue=kb-jobs status=success"


@pytest.mark.asyncio
async def test_shipper_posts_event():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    shipper = LogShipper(
        "broker-service",
        "http://broker.test/publish/log",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    delivered = await shipper.emit(event="http_request", message="POST /publish/otp", request_id="r-1")
    await shipper.aclose()

    assert delivered is True
    body = json.loads(seen[0].content)
    assert body["service"] == "broker-service"
    assert body["requestId"] == "r-1"
    assert seen[0].headers["X-Request-Id"] == "r-1"


@pytest.mark.asyncio
async def test_shipper_swallows_delivery_errors(caplog):
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    shipper = LogShipper(
        "broker-service",
        "http://broker.test/publish/log",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    assert await shipper.emit(level="error", event="boom") is False
    assert any("log dispatch failed" in r.getMessage() for r in caplog.records)
    await shipper.aclose()
