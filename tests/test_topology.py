import pytest

from helpdesk_jobs.constants import RoutingKey, Settlement
from helpdesk_jobs.rabbit import BrokerConnection
from helpdesk_jobs.topology import KB_QUEUE, MAIL_QUEUE, binding_matches, bound_queues, declare_queue, log_queue
from helpdesk_services.publish_job import check_routing_key

from conftest import no_sleep


@pytest.mark.parametrize(
    "pattern,key,expected",
    [
        ("mail.*", "mail.otp", True),
        ("mail.*", "mail", False),
        ("mail.*", "mail.otp.retry", False),
        ("log.#", "log", True),
        ("log.#", "log.event.audit", True),
        ("#", "anything.at.all", True),
        ("kb.*", "llm.batch", False),
    ],
)
def test_binding_matches(pattern, key, expected):
    assert binding_matches(pattern, key) is expected


def test_every_routing_key_lands_in_exactly_one_queue():
    specs = [MAIL_QUEUE, KB_QUEUE, log_queue()]
    for key in RoutingKey:
        owners = [spec.name for spec in specs if spec.accepts(key.value)]
        assert len(owners) == 1, (key, owners)
    assert KB_QUEUE.accepts("llm.batch")
    assert KB_QUEUE.accepts("analytics.rollup")


def test_failure_policies_per_queue():
    assert MAIL_QUEUE.failure_settlement is Settlement.REQUEUE
    assert KB_QUEUE.failure_settlement is Settlement.ACK
    assert log_queue().failure_settlement is Settlement.REJECT


@pytest.mark.asyncio
async def test_declare_queue_binds_all_patterns(settings, fake_connection, connector):
    conn = BrokerConnection(settings, connector=connector, sleep=no_sleep)
    await conn.open()

    queue = await declare_queue(conn.channel, conn.exchange, KB_QUEUE)

    assert queue.name == "kb-jobs"
    assert queue.durable is True
    assert queue.bindings == ["kb.*", "llm.*", "analytics.*"]


def test_bound_queues_names_the_receiving_queue():
    specs = [MAIL_QUEUE, KB_QUEUE, log_queue()]
    assert bound_queues("mail.otp", specs) == ["mail-service"]
    assert bound_queues("analytics.rollup", specs) == ["kb-jobs"]
    assert bound_queues("billing.invoice", specs) == []


def test_publish_cli_refuses_unknown_or_unbound_keys():
    specs = [MAIL_QUEUE, KB_QUEUE, log_queue()]
    assert check_routing_key("kb.ingest", False, specs) is None
    assert "unknown routing key" in check_routing_key("kb.compact", False, specs)
    assert check_routing_key("kb.compact", True, specs) is None
    assert "no queue is bound" in check_routing_key("billing.invoice", True, specs)
