"""Pytest fixtures for checkout core tests."""

import asyncio
from datetime import timedelta
from typing import List
from uuid import uuid4

import httpx
import pytest

from ucp_core.catalog import InMemoryCatalog, Product
from ucp_core.clock import ManualClock
from ucp_core.config import Settings
from ucp_core.discount import DiscountBook, DiscountRule
from ucp_core.engine import build_engine
from ucp_core.models import PaymentToken
from ucp_core.signing import DetachedSigner, generate_private_key
from ucp_core.store import InMemoryLedgerStore

MERCHANT_ID = "merchant_test"
PSP_ID = "psp_test"
WEBHOOK_URL = "https://platform.example/webhooks"


class WebhookReceiver:
    """Scripted Platform endpoint for httpx.MockTransport. Replies 200 once the script runs out."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.script = []

    def reply(self, *outcomes):
        self.script.extend(outcomes)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.script.pop(0) if self.script else 200
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome)

    def topics(self) -> List[str]:
        return [r.headers["UCP-Event-Topic"] for r in self.requests]


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return Settings(
        merchant_id=MERCHANT_ID,
        psp_id=PSP_ID,
        price_lock_seconds=600,
        reservation_ttl_seconds=900,
        session_ttl_seconds=1800,
        reconcile_grace_seconds=60,
        catalog_cache_ttl_seconds=300,
    )


@pytest.fixture
def catalog():
    return InMemoryCatalog([
        Product(sku="rose", title="Red Rose", price=1000, currency="USD"),
        Product(sku="tulip", title="Tulip", price=2500, currency="USD"),
        Product(sku="vase", title="Glass Vase", price=4000, currency="USD"),
        Product(sku="edelweiss", title="Edelweiss", price=900, currency="EUR"),
    ])


@pytest.fixture
def receiver():
    return WebhookReceiver()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def signer():
    return DetachedSigner(generate_private_key(), kid="business_key_1")


@pytest.fixture
async def engine(settings, clock, catalog, receiver, sleeper, signer):
    client = httpx.AsyncClient(transport=httpx.MockTransport(receiver.handler))
    engine = build_engine(
        settings,
        store=InMemoryLedgerStore(),
        clock=clock,
        catalog=catalog,
        http_client=client,
        signer=signer,
        discounts=DiscountBook({
            "SAVE10": DiscountRule(title="$10 off", amount=1000),
            "HALF": DiscountRule(title="50% off", percent=50, combinable=False),
        }),
        sleep=sleeper,
        rng=lambda: 0.5,
    )
    for sku, on_hand in {"rose": 10, "tulip": 5, "vase": 2, "edelweiss": 3}.items():
        await engine.inventory.set_stock(sku, on_hand)
    yield engine
    await engine.webhooks.stop()
    await client.aclose()


@pytest.fixture
def issue_token(engine, clock):
    """Register a CP token bound to the test merchant and PSP."""

    async def _issue(max_amount=100_000, currency="USD", **overrides):
        fields = dict(
            id=f"tok_{uuid4().hex}",
            credential_provider_id="cp_test",
            psp_id=PSP_ID,
            merchant_id=MERCHANT_ID,
            max_amount=max_amount,
            currency=currency,
            expires_at=clock.now() + timedelta(hours=1),
        )
        fields.update(overrides)
        return await engine.tokens.register(PaymentToken(**fields))

    return _issue


async def wait_for(predicate, timeout: float = 2.0):
    """Poll an async predicate until it is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met in time")
