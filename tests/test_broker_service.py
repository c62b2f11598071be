import pytest
from fastapi.testclient import TestClient

from helpdesk_jobs.errors import ChannelNotReady
from helpdesk_jobs.metrics import BrokerMetrics
from helpdesk_jobs.rabbit import BrokerConnection
from helpdesk_services import broker_service
from helpdesk_services.broker_service import create_app

from conftest import no_sleep


class RecordingPublisher:
    def __init__(self, metrics: BrokerMetrics, error: Exception | None = None):
        self.metrics = metrics
        self.error = error
        self.published: list[tuple[str, dict]] = []

    async def publish(self, routing_key, message):
        if self.error is not None:
            raise self.error
        self.published.append((routing_key, message))
        self.metrics.record_publish(routing_key)


@pytest.fixture
def metrics():
    return BrokerMetrics(enabled=True)


@pytest.fixture
def publisher(metrics):
    return RecordingPublisher(metrics)


@pytest.fixture
def client(settings, publisher, metrics):
    return TestClient(create_app(settings, publisher, metrics=metrics))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-Id"]


def test_publish_otp_uses_mail_routing_key(client, publisher):
    body = {"type": "SEND_OTP", "to": "a@b.com", "otp": "123456", "purpose": "register"}
    response = client.post("/publish/otp", json=body)

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert publisher.published == [("mail.otp", body)]


def test_publish_log_uses_log_routing_key(client, publisher):
    response = client.post("/publish/log", json={"level": "info", "event": "x"})
    assert response.json() == {"ok": True}
    assert publisher.published[0][0] == "log.event"


def test_publish_job_merges_job_id(client, publisher):
    response = client.post(
        "/publish/job", json={"routingKey": "kb.ingest", "payload": {"storeId": "s1"}, "jobId": "j-1"}
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True, "jobId": "j-1"}
    assert publisher.published == [("kb.ingest", {"storeId": "s1", "jobId": "j-1"})]


def test_publish_job_rejects_unknown_routing_key(client, publisher):
    response = client.post("/publish/job", json={"routingKey": "kb.delete", "payload": {}})
    assert response.status_code == 400
    assert "kb.delete" in response.json()["error"]
    assert publisher.published == []


def test_publish_error_returns_500(settings, metrics):
    failing = RecordingPublisher(metrics, error=ChannelNotReady())
    client = TestClient(create_app(settings, failing, metrics=metrics))

    response = client.post("/publish/otp", json={"type": "SEND_OTP"})

    assert response.status_code == 500
    assert response.json() == {"error": "AMQP channel not initialized"}


def test_metrics_exposes_publish_counter(client):
    client.post("/publish/otp", json={"type": "SEND_OTP"})
    response = client.get("/metrics")

    assert response.status_code == 200
    assert 'broker_rabbit_published_total{routing_key="mail.otp"} 1.0' in response.text
    assert "broker_http_request_duration_seconds" in response.text


def test_metrics_disabled_returns_503(settings):
    metrics = BrokerMetrics(enabled=False)
    client = TestClient(create_app(settings, RecordingPublisher(metrics), metrics=metrics))

    response = client.get("/metrics")
    assert response.status_code == 503
    assert response.text == "metrics disabled"


@pytest.mark.parametrize("raw", [b"[1, 2]", b"{not json"])
def test_non_object_body_returns_400_error(client, publisher, raw):
    response = client.post("/publish/otp", content=raw, headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"].startswith("invalid request body")
    assert publisher.published == []


@pytest.mark.asyncio
async def test_main_exits_1_when_broker_never_connects(settings, monkeypatch):
    async def refuse(_url, **_kwargs):
        raise ConnectionError("refused")

    monkeypatch.setattr(broker_service, "setup_logging", lambda *_args, **_kwargs: None)
    settings = settings.model_copy(update={"amqp_max_retries": 2})
    connection = BrokerConnection(settings, connector=refuse, sleep=no_sleep)

    with pytest.raises(SystemExit) as exc_info:
        await broker_service.main(settings, connection)

    assert exc_info.value.code == 1
    assert not connection.is_open
