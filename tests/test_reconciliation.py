from datetime import timedelta

import pytest

from conftest import WEBHOOK_URL
from ucp_core.errors import CompletionPendingError, StoreUnavailableError
from ucp_core.models import CheckoutStatus, PlatformConfig, ReceiptStatus


async def completing_session(engine, issue_token, mocker, target, method):
    """Drive a checkout into ``completing`` by failing one collaborator call."""
    session = await engine.checkout.create(
        [{"sku": "rose", "quantity": 2}],
        platform=PlatformConfig(webhook_url=WEBHOOK_URL),
    )
    session = await engine.checkout.mark_ready_for_complete(session.id)
    token = await issue_token()
    payment = {"token_id": token.id}

    mocker.patch.object(target, method, side_effect=StoreUnavailableError("ledger down"))
    with pytest.raises(CompletionPendingError):
        await engine.checkout.complete(session.id, payment, idempotency_key="idem-1")
    mocker.stopall()

    return session, token, payment


async def test_retry_while_completing_reports_pending(engine, issue_token, mocker):
    session, _, payment = await completing_session(engine, issue_token, mocker, engine.orders, "create_from_session")

    stored = await engine.checkout.get(session.id)
    assert stored.status == CheckoutStatus.COMPLETING
    assert stored.payment.receipt_id is not None

    with pytest.raises(CompletionPendingError):
        await engine.checkout.complete(session.id, payment, idempotency_key="idem-1")


async def test_reconcile_waits_for_grace_period(engine, issue_token, mocker):
    await completing_session(engine, issue_token, mocker, engine.orders, "create_from_session")

    assert await engine.checkout.reconcile() == {}


async def test_reconcile_finishes_paid_completion(engine, issue_token, mocker, clock):
    session, _, payment = await completing_session(engine, issue_token, mocker, engine.orders, "create_from_session")
    clock.advance(61)

    outcomes = await engine.checkout.reconcile()

    assert outcomes == {session.id: "completed"}
    stored = await engine.checkout.get(session.id)
    assert stored.status == CheckoutStatus.COMPLETED
    order = await engine.orders.get(stored.order_id)
    assert order.receipt_id == stored.payment.receipt_id
    assert (await engine.inventory.get_stock("rose")).on_hand == 8
    assert [e.topic for e in await engine.webhooks.pending()] == ["order.created"]

    replay = await engine.checkout.complete(session.id, payment, idempotency_key="idem-1")
    assert replay.order.id == order.id


async def test_reconcile_reverts_when_no_payment_was_taken(engine, issue_token, mocker, clock):
    session, token, payment = await completing_session(engine, issue_token, mocker, engine.tokens, "redeem")
    clock.advance(61)

    outcomes = await engine.checkout.reconcile()

    assert outcomes == {session.id: "reverted"}
    stored = await engine.checkout.get(session.id)
    assert stored.status == CheckoutStatus.READY_FOR_COMPLETE
    assert stored.payment is None
    assert (await engine.tokens.get_token(token.id)).consumed_at is None

    response = await engine.checkout.complete(session.id, payment, idempotency_key="idem-1")
    assert response.checkout.status == CheckoutStatus.COMPLETED


async def test_reconcile_cancels_when_reservations_lapsed(engine, issue_token, mocker, clock):
    session, token, _ = await completing_session(engine, issue_token, mocker, engine.inventory, "commit_all")
    clock.advance(61)
    await engine.inventory.expire(now=clock.now() + timedelta(seconds=900))

    outcomes = await engine.checkout.reconcile()

    assert outcomes == {session.id: "cancelled"}
    stored = await engine.checkout.get(session.id)
    assert stored.status == CheckoutStatus.CANCELLED
    assert stored.cancel_reason == "reservation_expired"
    receipt = await engine.tokens.find_receipt(token.id, session.id)
    assert receipt.status == ReceiptStatus.VOIDED
    assert (await engine.inventory.get_stock("rose")).on_hand == 10
    assert [e.topic for e in await engine.webhooks.pending()] == ["checkout.cancelled"]


async def test_sweeper_runs_every_pass(engine, issue_token, mocker, clock):
    session, _, _ = await completing_session(engine, issue_token, mocker, engine.orders, "create_from_session")
    idle = await engine.checkout.create([{"sku": "tulip", "quantity": 1}])
    idle = await engine.checkout.mark_ready_for_complete(idle.id)
    clock.advance(1801)

    report = await engine.sweeper.run_once()

    # the completing session's holds were committed before the failure
    assert report.expired_reservations == 1
    assert report.expired_sessions == 1
    assert report.reconciled == {session.id: "completed"}
    assert (await engine.checkout.get(idle.id)).cancel_reason == "expired"
