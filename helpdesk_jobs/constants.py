"""Shared names for the job exchange, routing keys, queues and job outcomes.

Routing keys (``RoutingKey``):
- ``mail.otp``: one-time password email, consumed by the mail queue.
- ``log.event``: structured log event, consumed by the logger queue.
- ``kb.ingest`` / ``kb.reprocess`` / ``kb.upsert`` / ``kb.refresh``:
  knowledge-base jobs forwarded to the KB proxy's internal endpoints.
- ``llm.batch`` / ``analytics.rollup``: recognized job families with no
  handler yet; consumed by the KB queue and reported as failed.

Settlements (``Settlement``), exactly one per delivery:
- ``ack``: remove from the queue (success, skip, or accepted drop).
- ``requeue``: nack with requeue; the broker redelivers.
- ``reject``: nack without requeue; the message can never succeed.

Job statuses (``JobStatus``) label metrics and logs:
``success``, ``skipped``, ``failed``, ``malformed``.
"""
from enum import Enum

EXCHANGE_NAME = "jobs"

MAIL_QUEUE_NAME = "mail-service"
KB_QUEUE_NAME = "kb-jobs"
LOG_QUEUE_NAME = "logger-service"


class RoutingKey(str, Enum):
    MAIL_OTP = "mail.otp"
    LOG_EVENT = "log.event"
    KB_INGEST = "kb.ingest"
    KB_REPROCESS = "kb.reprocess"
    KB_UPSERT = "kb.upsert"
    KB_REFRESH = "kb.refresh"
    LLM_BATCH = "llm.batch"
    ANALYTICS_ROLLUP = "analytics.rollup"

    @classmethod
    def lookup(cls, value: str) -> "RoutingKey | None":
        try:
            return cls(value)
        except ValueError:
            return None


class Settlement(str, Enum):
    ACK = "ack"
    REQUEUE = "requeue"
    REJECT = "reject"


class JobStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    MALFORMED = "malformed"


# Mail job types
MAIL_TYPE_SEND_OTP = "SEND_OTP"

# KB job status reporting
KB_STATUS_FAILED = "failed"
HANDLER_NOT_IMPLEMENTED = "Handler not implemented"

WORKER_TOKEN_HEADER = "x-worker-token"
