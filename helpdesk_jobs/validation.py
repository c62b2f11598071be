"""Pydantic models for job payloads and the publish API.

The broker enforces no schema; these models are applied by the consumer's
per-family handlers and by the broker's generic publish endpoint.
"""
from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from helpdesk_jobs.errors import MalformedPayload


class OtpMailJob(BaseModel):
    """``SEND_OTP`` job on the mail queue."""
    model_config = ConfigDict(extra="allow")

    type: str
    to: str = Field(min_length=3)
    otp: str = Field(min_length=1)
    purpose: Optional[str] = None
    username: Optional[str] = None

    @field_validator("otp", mode="before")
    @classmethod
    def _otp_as_text(cls, value: Any) -> Any:
        # Codes such as 012345 must keep their leading zeros, so ints are only stringified
        return str(value) if isinstance(value, int) else value

    @field_validator("to")
    @classmethod
    def _looks_like_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("recipient must be an email address")
        return value

    @property
    def display_name(self) -> str:
        return self.username or self.to.split("@", 1)[0]


class LogEventJob(BaseModel):
    """Structured log event on the logger queue."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    level: str = "info"
    event: Optional[str] = None
    message: Optional[str] = None
    service: Optional[str] = None
    request_id: Optional[str] = Field(default=None, alias="requestId")
    context: Optional[dict[str, Any]] = None


class PublishJobRequest(BaseModel):
    """Body of ``POST /publish/job``."""
    model_config = ConfigDict(populate_by_name=True)

    routing_key: str = Field(alias="routingKey")
    payload: dict[str, Any] = Field(default_factory=dict)
    job_id: Optional[str] = Field(default=None, alias="jobId")


class JobStatusReport(BaseModel):
    """Body of ``POST /internal/jobs/status``."""
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    status: str
    type: str
    error: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def parse_job_body(body: bytes) -> dict[str, Any]:
    """Decode a delivery body into a JSON object or raise ``MalformedPayload``."""
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayload(f"invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedPayload(f"expected a JSON object, got {type(payload).__name__}")
    return payload


def validate_job(model: type[BaseModel], payload: dict[str, Any]) -> Any:
    """Validate ``payload`` against ``model``; schema errors are permanent."""
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MalformedPayload(f"{model.__name__}: {exc.error_count()} validation error(s)") from exc
