"""HTTP adapters for the services the listener hands jobs to.

Every call is an authenticated POST carrying the shared worker token in the
``x-worker-token`` header. Any transport error or non-2xx response raises
``DownstreamError`` so the consumer can apply the queue's failure policy.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from helpdesk_jobs.constants import WORKER_TOKEN_HEADER
from helpdesk_jobs.errors import DownstreamError
from helpdesk_jobs.validation import JobStatusReport

logger = logging.getLogger(__name__)

KB_ACTIONS = ("ingest", "reprocess", "upsert", "refresh")


class ServiceClient:
    """Thin ``httpx.AsyncClient`` wrapper bound to one downstream service."""

    def __init__(
        self,
        name: str,
        base_url: str,
        worker_token: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={WORKER_TOKEN_HEADER: worker_token},
            timeout=timeout,
            transport=transport,
        )

    async def post(self, path: str, payload: Any) -> httpx.Response:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise DownstreamError(self.name, path, detail=str(exc) or exc.__class__.__name__) from exc
        if response.is_error:
            raise DownstreamError(self.name, path, response.status_code, response.text[:200])
        return response

    async def aclose(self) -> None:
        await self._client.aclose()


class MailServiceAdapter:
    def __init__(self, client: ServiceClient) -> None:
        self.client = client

    async def send(self, to: str, subject: str, text: str, html: str) -> None:
        await self.client.post("/send", {"to": to, "subject": subject, "text": text, "html": html})


class KnowledgeBaseAdapter:
    """Forwards KB jobs to the proxy's internal job endpoints."""

    def __init__(self, client: ServiceClient) -> None:
        self.client = client

    async def forward(self, action: str, payload: dict[str, Any]) -> None:
        if action not in KB_ACTIONS:
            raise ValueError(f"unknown KB action: {action}")
        await self.client.post(f"/internal/jobs/kb/{action}", payload)

    async def report_status(self, job_id: str, status: str, job_type: str, error: Optional[str] = None) -> None:
        report = JobStatusReport(jobId=job_id, status=status, type=job_type, error=error)
        await self.client.post("/internal/jobs/status", report.to_wire())
