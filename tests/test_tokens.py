import asyncio
from datetime import timedelta

import pytest

from ucp_core.clock import ManualClock
from ucp_core.errors import (
    AmountExceedsLimitError,
    CurrencyMismatchError,
    InvalidRequestError,
    InvalidSignatureError,
    MerchantMismatchError,
    PspMismatchError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
    TokenNotFoundError,
)
from ucp_core.models import PaymentToken, ReceiptStatus
from ucp_core.signing import DetachedSigner, KeyRegistry, generate_private_key
from ucp_core.store import InMemoryLedgerStore
from ucp_core.tokens import TokenExchangeBroker, redemption_claims

MERCHANT = "merchant_a"
PSP = "psp_a"


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def merchant_signer():
    return DetachedSigner(generate_private_key(), kid="merchant_a_key")


@pytest.fixture
def broker(clock, merchant_signer):
    keys = KeyRegistry()
    keys.register(MERCHANT, merchant_signer.public_key)
    return TokenExchangeBroker(InMemoryLedgerStore(), keys, clock)


@pytest.fixture
def token(broker):
    async def _token(**overrides):
        fields = dict(
            credential_provider_id="cp_a",
            psp_id=PSP,
            merchant_id=MERCHANT,
            max_amount=5000,
            currency="USD",
        )
        fields.update(overrides)
        return await broker.issue(**fields)

    return _token


async def test_redeem_returns_receipt_and_consumes_token(broker, token):
    tok = await token()

    receipt = await broker.redeem(tok.id, MERCHANT, PSP, 4500, "USD", "chk_1")

    assert receipt.amount == 4500
    assert receipt.status == ReceiptStatus.CAPTURED
    stored = await broker.get_token(tok.id)
    assert stored.consumed_at is not None
    assert stored.consumed_by == "chk_1"
    assert (await broker.get_receipt(receipt.id)).transaction_id == "chk_1"


async def test_second_redemption_is_rejected(broker, token):
    tok = await token()
    await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1")

    with pytest.raises(TokenAlreadyConsumedError):
        await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_2")


async def test_concurrent_redemptions_succeed_once(broker, token):
    tok = await token()

    results = await asyncio.gather(
        broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1"),
        broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_2"),
        return_exceptions=True,
    )

    receipts = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, TokenAlreadyConsumedError)]
    assert len(receipts) == 1
    assert len(errors) == 1


@pytest.mark.parametrize(
    "kwargs, error",
    [
        (dict(psp_id="psp_other"), PspMismatchError),
        (dict(merchant_id="merchant_other"), MerchantMismatchError),
        (dict(currency="EUR"), CurrencyMismatchError),
        (dict(amount=5001), AmountExceedsLimitError),
    ],
)
async def test_binding_checks_leave_token_untouched(broker, token, kwargs, error):
    tok = await token()
    call = dict(merchant_id=MERCHANT, psp_id=PSP, amount=100, currency="USD", transaction_id="chk_1")
    call.update(kwargs)

    with pytest.raises(error):
        await broker.redeem(tok.id, **call)

    assert (await broker.get_token(tok.id)).consumed_at is None
    receipt = await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1")
    assert receipt.amount == 100


async def test_amount_equal_to_limit_is_accepted(broker, token):
    tok = await token(max_amount=5000)
    receipt = await broker.redeem(tok.id, MERCHANT, PSP, 5000, "USD", "chk_1")
    assert receipt.amount == 5000


async def test_unknown_token(broker):
    with pytest.raises(TokenNotFoundError):
        await broker.redeem("tok_missing", MERCHANT, PSP, 100, "USD", "chk_1")


async def test_expired_token(broker, token, clock):
    tok = await token()
    clock.set(tok.expires_at)

    with pytest.raises(TokenExpiredError):
        await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1")


async def test_expiry_is_checked_before_consumption(broker, token, clock):
    tok = await token()
    await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1")
    clock.advance(seconds=901)

    with pytest.raises(TokenExpiredError):
        await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_2")


async def test_psp_is_checked_before_merchant(broker, token):
    tok = await token()
    with pytest.raises(PspMismatchError):
        await broker.redeem(tok.id, "merchant_other", "psp_other", 100, "USD", "chk_1")


async def test_negative_amount_is_invalid(broker, token):
    tok = await token()
    with pytest.raises(InvalidRequestError):
        await broker.redeem(tok.id, MERCHANT, PSP, -1, "USD", "chk_1")


async def test_valid_proof_of_authorization(broker, token, merchant_signer):
    tok = await token()
    proof = merchant_signer.sign(redemption_claims(tok.id, MERCHANT, PSP, 300, "USD", "chk_1"))

    receipt = await broker.redeem(tok.id, MERCHANT, PSP, 300, "USD", "chk_1", proof=proof)

    assert receipt.amount == 300


async def test_proof_over_different_amount_is_rejected(broker, token, merchant_signer):
    tok = await token()
    proof = merchant_signer.sign(redemption_claims(tok.id, MERCHANT, PSP, 100, "USD", "chk_1"))

    with pytest.raises(InvalidSignatureError):
        await broker.redeem(tok.id, MERCHANT, PSP, 300, "USD", "chk_1", proof=proof)
    assert (await broker.get_token(tok.id)).consumed_at is None


async def test_proof_from_another_key_is_rejected(broker, token):
    tok = await token()
    stranger = DetachedSigner(generate_private_key(), kid="stranger")
    proof = stranger.sign(redemption_claims(tok.id, MERCHANT, PSP, 100, "USD", "chk_1"))

    with pytest.raises(InvalidSignatureError):
        await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1", proof=proof)


async def test_proof_without_registered_key_is_rejected(clock, merchant_signer):
    broker = TokenExchangeBroker(InMemoryLedgerStore(), KeyRegistry(), clock)
    tok = await broker.issue("cp_a", PSP, MERCHANT, 5000, "USD")
    proof = merchant_signer.sign(redemption_claims(tok.id, MERCHANT, PSP, 100, "USD", "chk_1"))

    with pytest.raises(InvalidSignatureError):
        await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1", proof=proof)


async def test_every_attempt_is_audited(broker, token):
    tok = await token()
    with pytest.raises(PspMismatchError):
        await broker.redeem(tok.id, MERCHANT, "psp_other", 100, "USD", "chk_1")
    await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1")
    with pytest.raises(TokenAlreadyConsumedError):
        await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_2")

    outcomes = [e.outcome for e in await broker.audit_log(tok.id)]
    assert outcomes == ["psp_mismatch", "redeemed", "token_already_consumed"]


async def test_void_is_idempotent_and_keeps_token_consumed(broker, token):
    tok = await token()
    receipt = await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1")

    voided = await broker.void(receipt.id, "order persistence failed")
    again = await broker.void(receipt.id, "retry")

    assert voided.status == ReceiptStatus.VOIDED
    assert again.void_reason == "order persistence failed"
    assert (await broker.get_token(tok.id)).consumed_at is not None
    outcomes = [e.outcome for e in await broker.audit_log(tok.id)]
    assert outcomes == ["redeemed", "voided"]


async def test_find_receipt(broker, token):
    tok = await token()
    receipt = await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1")

    assert (await broker.find_receipt(tok.id)).id == receipt.id
    assert (await broker.find_receipt(tok.id, "chk_1")).id == receipt.id
    assert await broker.find_receipt(tok.id, "chk_2") is None


async def test_multi_use_token(broker, token):
    tok = await token(single_use=False)

    first = await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_1")
    second = await broker.redeem(tok.id, MERCHANT, PSP, 100, "USD", "chk_2")

    assert first.id != second.id
    assert (await broker.get_token(tok.id)).consumed_at is None


async def test_register_rejects_duplicate_ids(broker, clock):
    token = PaymentToken(
        id="tok_fixed",
        credential_provider_id="cp_a",
        psp_id=PSP,
        merchant_id=MERCHANT,
        max_amount=100,
        currency="USD",
        expires_at=clock.now() + timedelta(minutes=5),
    )
    await broker.register(token)

    with pytest.raises(InvalidRequestError):
        await broker.register(token)
