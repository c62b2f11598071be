import httpx
import pytest

from helpdesk_jobs.adapters import KnowledgeBaseAdapter, MailServiceAdapter, ServiceClient
from helpdesk_jobs.errors import DownstreamError

from conftest import RecordingService


@pytest.mark.asyncio
async def test_mail_send_posts_with_worker_token(mail_service):
    adapter = MailServiceAdapter(mail_service.client("mail-service", "http://mail.test/", token="secret"))

    await adapter.send("a@b.com", "Your OTP Code", "Your OTP is 1", "<p>1</p>")

    request = mail_service.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "http://mail.test/send"
    assert request.headers["x-worker-token"] == "secret"
    assert mail_service.bodies("/send") == [
        {"to": "a@b.com", "subject": "Your OTP Code", "text": "Your OTP is 1", "html": "<p>1</p>"}
    ]


@pytest.mark.asyncio
async def test_non_2xx_raises_downstream_error():
    service = RecordingService(status_code=502)
    adapter = KnowledgeBaseAdapter(service.client("flowise-proxy", "http://kb.test"))

    with pytest.raises(DownstreamError) as excinfo:
        await adapter.forward("ingest", {"jobId": "1"})

    assert excinfo.value.status_code == 502
    assert excinfo.value.path == "/internal/jobs/kb/ingest"


@pytest.mark.asyncio
async def test_transport_error_raises_downstream_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = ServiceClient("flowise-proxy", "http://kb.test", "t", transport=httpx.MockTransport(handler))

    with pytest.raises(DownstreamError) as excinfo:
        await KnowledgeBaseAdapter(client).report_status("j1", "failed", "llm.batch", "nope")

    assert excinfo.value.status_code is None
    assert "timed out" in str(excinfo.value)


@pytest.mark.asyncio
async def test_unknown_kb_action_is_rejected(kb_service):
    adapter = KnowledgeBaseAdapter(kb_service.client("flowise-proxy", "http://kb.test"))
    with pytest.raises(ValueError):
        await adapter.forward("delete", {})
    assert kb_service.requests == []


@pytest.mark.asyncio
async def test_status_report_shape(kb_service):
    adapter = KnowledgeBaseAdapter(kb_service.client("flowise-proxy", "http://kb.test"))

    await adapter.report_status("abc", "failed", "analytics.rollup", "Handler not implemented")

    assert kb_service.bodies("/internal/jobs/status") == [
        {"jobId": "abc", "status": "failed", "type": "analytics.rollup", "error": "Handler not implemented"}
    ]
