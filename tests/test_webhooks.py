import json

import httpx
import pytest

from conftest import WEBHOOK_URL, RecordingSleep, WebhookReceiver, wait_for
from ucp_core.clock import ManualClock
from ucp_core.config import Settings
from ucp_core.errors import ResourceNotFoundError
from ucp_core.models import WebhookStatus
from ucp_core.signing import verify_detached
from ucp_core.store import InMemoryLedgerStore
from ucp_core.webhooks import WebhookDeliveryEngine, delivery_id_for

OTHER_URL = "https://other-platform.example/hooks"


@pytest.fixture
async def delivery():
    """A standalone delivery engine with a scripted receiver and an alert hook."""
    receiver = WebhookReceiver()
    sleeper = RecordingSleep()
    alerts = []
    client = httpx.AsyncClient(transport=httpx.MockTransport(receiver.handler))
    engine = WebhookDeliveryEngine(
        InMemoryLedgerStore(),
        settings=Settings(webhook_max_attempts=4),
        clock=ManualClock(),
        http_client=client,
        sleep=sleeper,
        rng=lambda: 0.0,
        alert=alerts.append,
    )
    engine.receiver = receiver
    engine.sleeper = sleeper
    engine.alerts = alerts
    yield engine
    await engine.stop()
    await client.aclose()


async def publish(webhooks, source_id, endpoint=WEBHOOK_URL, topic="order.created"):
    return await webhooks.publish(topic, {"order": {"id": source_id}}, endpoint, source_id)


async def test_delivery_sends_signed_payload(engine, receiver, signer):
    event = await publish(engine.webhooks, "order_1")

    assert await engine.webhooks.drain() == 1

    request = receiver.requests[0]
    assert request.url == WEBHOOK_URL
    assert request.headers["UCP-Delivery-Id"] == event.delivery_id
    assert request.headers["UCP-Event-Topic"] == "order.created"
    body = json.loads(request.content)
    assert body == {"event_type": "order.created", "delivery_id": event.delivery_id, "data": {"order": {"id": "order_1"}}}
    is_valid, error = verify_detached(request.headers["Request-Signature"], body, signer.public_key)
    assert is_valid, error

    stored = await engine.webhooks.get_event(event.delivery_id)
    assert stored.status == WebhookStatus.DELIVERED
    assert stored.attempts == 1


async def test_server_errors_are_retried_with_backoff(engine, receiver, sleeper):
    receiver.reply(503, 503)
    event = await publish(engine.webhooks, "order_1")

    await engine.webhooks.drain()

    stored = await engine.webhooks.get_event(event.delivery_id)
    assert stored.status == WebhookStatus.DELIVERED
    assert stored.attempts == 3
    assert [a.status_code for a in stored.attempt_log] == [503, 503, 200]
    assert sleeper.delays == pytest.approx([1.05, 2.1])


async def test_four_server_errors_then_success_within_default_attempts(engine, receiver, sleeper, settings):
    assert settings.webhook_max_attempts == 5
    receiver.reply(503, 503, 503, 503)
    event = await publish(engine.webhooks, "order_1")

    await engine.webhooks.drain()

    stored = await engine.webhooks.get_event(event.delivery_id)
    assert stored.status == WebhookStatus.DELIVERED
    assert stored.attempts == 5
    assert [a.status_code for a in stored.attempt_log] == [503, 503, 503, 503, 200]
    assert sleeper.delays == pytest.approx([1.05, 2.1, 4.2, 8.4])
    assert sleeper.delays == sorted(sleeper.delays)
    assert await engine.webhooks.dead_letters() == []


async def test_resolved_events_leave_the_queue(engine, receiver):
    receiver.reply(410)
    rejected = await publish(engine.webhooks, "order_1")
    accepted = await publish(engine.webhooks, "order_2")

    await engine.webhooks.drain()

    assert await engine.webhooks.events() == []
    archived = {e.delivery_id: e.status for e in await engine.webhooks.archived()}
    assert archived == {rejected.delivery_id: WebhookStatus.FAILED, accepted.delivery_id: WebhookStatus.DELIVERED}

    again = await publish(engine.webhooks, "order_2")
    assert again.status == WebhookStatus.DELIVERED
    assert await engine.webhooks.events() == []


async def test_client_errors_are_not_retried(engine, receiver, sleeper):
    receiver.reply(410)
    rejected = await publish(engine.webhooks, "order_1")
    accepted = await publish(engine.webhooks, "order_2")

    assert await engine.webhooks.drain() == 2

    stored = await engine.webhooks.get_event(rejected.delivery_id)
    assert stored.status == WebhookStatus.FAILED
    assert stored.last_error == "HTTP 410"
    assert (await engine.webhooks.get_event(accepted.delivery_id)).status == WebhookStatus.DELIVERED
    assert sleeper.delays == []


async def test_connection_errors_are_retried(engine, receiver):
    receiver.reply(httpx.ConnectError("connection refused"))
    event = await publish(engine.webhooks, "order_1")

    await engine.webhooks.drain()

    stored = await engine.webhooks.get_event(event.delivery_id)
    assert stored.status == WebhookStatus.DELIVERED
    assert stored.attempt_log[0].status_code is None
    assert stored.attempt_log[0].error.startswith("ConnectError")


async def test_head_of_queue_blocks_later_events(engine, receiver):
    receiver.reply(500, 502)
    first = await publish(engine.webhooks, "order_1")
    second = await publish(engine.webhooks, "order_2")

    await engine.webhooks.drain()

    sent = [r.headers["UCP-Delivery-Id"] for r in receiver.requests]
    assert sent == [first.delivery_id] * 3 + [second.delivery_id]
    assert await engine.webhooks.events() == []
    assert [e.sequence for e in await engine.webhooks.archived()] == [1, 2]


async def test_endpoints_have_independent_sequences(engine):
    a1 = await publish(engine.webhooks, "order_1")
    b1 = await publish(engine.webhooks, "order_2", endpoint=OTHER_URL)
    a2 = await publish(engine.webhooks, "order_3")

    assert (a1.sequence, a2.sequence, b1.sequence) == (1, 2, 1)


async def test_publishing_twice_queues_one_delivery(engine, receiver):
    first = await publish(engine.webhooks, "order_1")
    again = await publish(engine.webhooks, "order_1")

    assert again.delivery_id == first.delivery_id == delivery_id_for(WEBHOOK_URL, "order.created", "order_1")
    assert len(await engine.webhooks.events()) == 1

    await engine.webhooks.drain()
    await publish(engine.webhooks, "order_1")
    assert await engine.webhooks.pending() == []
    assert len(receiver.requests) == 1


async def test_unsubscribed_topics_and_missing_endpoints_are_skipped(engine):
    assert await publish(engine.webhooks, "order_1", topic="order.failed_attempt") is None
    assert await publish(engine.webhooks, "order_1", endpoint=None) is None
    assert await engine.webhooks.events() == []


async def test_exhausted_events_are_dead_lettered(delivery):
    delivery.receiver.reply(503, 503, 503, 503)
    event = await publish(delivery, "order_1")
    behind = await publish(delivery, "order_2")

    await delivery.drain()

    assert delivery.sleeper.delays == [1.0, 2.0, 4.0]
    assert [e.delivery_id for e in delivery.alerts] == [event.delivery_id]
    dead = await delivery.dead_letters()
    assert [e.delivery_id for e in dead] == [event.delivery_id]
    assert dead[0].status == WebhookStatus.DEAD_LETTERED
    assert dead[0].attempts == 4
    assert await delivery.events() == []
    assert [e.delivery_id for e in await delivery.archived()] == [behind.delivery_id]
    assert (await delivery.get_event(behind.delivery_id)).status == WebhookStatus.DELIVERED


async def test_dead_letter_can_be_redelivered(delivery):
    delivery.receiver.reply(503, 503, 503, 503)
    event = await publish(delivery, "order_1")
    await delivery.drain()

    requeued = await delivery.redeliver(event.delivery_id)
    assert requeued.status == WebhookStatus.PENDING
    assert requeued.sequence == 2
    assert await delivery.dead_letters() == []

    await delivery.drain()
    stored = await delivery.get_event(event.delivery_id)
    assert stored.status == WebhookStatus.DELIVERED
    assert stored.attempts == 1


async def test_redeliver_unknown_event(delivery):
    with pytest.raises(ResourceNotFoundError):
        await delivery.redeliver("missing")


async def test_backoff_is_capped(delivery):
    assert delivery.backoff(1) == 1.0
    assert delivery.backoff(3) == 4.0
    assert delivery.backoff(12) == 60.0


async def test_background_worker_delivers_new_events(engine, receiver):
    await engine.webhooks.start()
    event = await publish(engine.webhooks, "order_1")

    async def delivered():
        stored = await engine.webhooks.get_event(event.delivery_id)
        return stored.status == WebhookStatus.DELIVERED

    await wait_for(delivered)
    await engine.webhooks.stop()
    assert len(receiver.requests) == 1


async def test_start_resumes_pending_events(engine, receiver):
    event = await publish(engine.webhooks, "order_1")
    assert receiver.requests == []

    await engine.webhooks.start()

    async def delivered():
        return (await engine.webhooks.get_event(event.delivery_id)).status == WebhookStatus.DELIVERED

    await wait_for(delivered)
