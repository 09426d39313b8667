# Copyright 2026 UCP Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Wires the checkout core components together around one ledger store."""

import asyncio
import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

import httpx

from .catalog import SAMPLE_PRODUCTS, SAMPLE_STOCK, CatalogCache, InMemoryCatalog
from .checkout import CheckoutService
from .clock import SystemClock
from .config import Settings
from .discount import SAMPLE_DISCOUNTS, DiscountBook
from .inventory import InventoryManager
from .maintenance import Sweeper
from .orders import OrderLedger
from .signing import (
    DetachedSigner,
    KeyRegistry,
    generate_private_key,
    load_private_key,
    private_key_to_pem,
)
from .store import LedgerStore, create_store
from .tokens import TokenExchangeBroker
from .webhooks import AlertHook, WebhookDeliveryEngine

logger = logging.getLogger(__name__)


@dataclass
class CommerceEngine:
    settings: Settings
    store: LedgerStore
    clock: object
    signer: DetachedSigner
    keys: KeyRegistry
    catalog: CatalogCache
    inventory: InventoryManager
    tokens: TokenExchangeBroker
    webhooks: WebhookDeliveryEngine
    orders: OrderLedger
    checkout: CheckoutService
    sweeper: Sweeper

    async def start(self) -> None:
        await self.webhooks.start()
        self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.webhooks.aclose()
        await self.store.close()


def load_signer(settings: Settings) -> DetachedSigner:
    """Business signing key from ``signing_key_path``, generated (and saved there) when missing."""
    path = settings.signing_key_path
    if path and Path(path).exists():
        key = load_private_key(path)
        logger.info(f"Loaded signing key {settings.signing_key_id} from {path}")
    else:
        key = generate_private_key()
        if path:
            Path(path).write_bytes(private_key_to_pem(key))
            logger.info(f"Generated signing key {settings.signing_key_id} at {path}")
        else:
            logger.warning("No signing key configured; using an ephemeral key")
    return DetachedSigner(key, kid=settings.signing_key_id)


def build_engine(
    settings: Optional[Settings] = None,
    store: Optional[LedgerStore] = None,
    clock=None,
    catalog=None,
    http_client: Optional[httpx.AsyncClient] = None,
    signer: Optional[DetachedSigner] = None,
    discounts: Optional[DiscountBook] = None,
    alert: Optional[AlertHook] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> CommerceEngine:
    """
    Build every component over one store and one clock.

    Args:
        settings: Runtime settings (defaults to ``Settings()``)
        store: Ledger store (defaults to the one named by ``settings.store_url``)
        clock: Clock shared by all components
        catalog: Product source with an async ``get_product(sku)``
        http_client: Client used for webhook delivery
        signer: Business signing key (defaults to ``load_signer(settings)``)
        discounts: Discount codes (defaults to the sample codes)
        alert: Called for each dead-lettered webhook
        sleep: Wait used between webhook attempts
        rng: Jitter source for webhook backoff

    Returns:
        CommerceEngine holding the wired components
    """
    settings = settings or Settings()
    clock = clock or SystemClock()
    store = store or create_store(
        settings.store_url,
        attempts=settings.store_retry_attempts,
        base_delay=settings.store_retry_base_delay_seconds,
    )
    signer = signer or load_signer(settings)

    keys = KeyRegistry()
    keys.register(settings.merchant_id, signer.public_key)

    catalog_cache = CatalogCache(
        catalog if catalog is not None else InMemoryCatalog(SAMPLE_PRODUCTS),
        settings.catalog_cache_ttl_seconds,
        clock,
    )
    inventory = InventoryManager(store, clock)
    tokens = TokenExchangeBroker(store, keys, clock)
    webhooks = WebhookDeliveryEngine(
        store,
        signer=signer,
        settings=settings,
        clock=clock,
        http_client=http_client,
        sleep=sleep,
        rng=rng,
        alert=alert,
    )
    orders = OrderLedger(store, webhooks, clock)
    checkout = CheckoutService(
        store,
        inventory,
        tokens,
        orders,
        webhooks,
        catalog_cache,
        settings=settings,
        discounts=discounts if discounts is not None else DiscountBook(dict(SAMPLE_DISCOUNTS)),
        clock=clock,
    )
    sweeper = Sweeper(inventory, checkout, settings.sweep_interval_seconds, clock)

    return CommerceEngine(
        settings=settings,
        store=store,
        clock=clock,
        signer=signer,
        keys=keys,
        catalog=catalog_cache,
        inventory=inventory,
        tokens=tokens,
        webhooks=webhooks,
        orders=orders,
        checkout=checkout,
        sweeper=sweeper,
    )


async def seed_sample_stock(engine: CommerceEngine, stock: Optional[Dict[str, int]] = None) -> None:
    """Put the sample stock levels in the ledger for skus that have none yet."""
    for sku, on_hand in (stock or SAMPLE_STOCK).items():
        current = await engine.inventory.get_stock(sku)
        if current.on_hand == 0 and current.reserved == 0:
            await engine.inventory.set_stock(sku, on_hand)
