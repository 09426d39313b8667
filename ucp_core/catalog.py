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

"""Product catalog: the business's authoritative prices, plus a cached view of it."""

import asyncio
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .cache import TTLCache

logger = logging.getLogger(__name__)


class Product(BaseModel):
    sku: str
    title: str
    price: int = Field(..., ge=0, description="Unit price in minor units")
    currency: str = Field(..., pattern=r"^[A-Z]{3}$")


class InMemoryCatalog:
    """Catalog held in memory. Stands in for the business's product service."""

    def __init__(self, products: Optional[List[Product]] = None):
        self._products: Dict[str, Product] = {p.sku: p for p in products or []}

    async def get_product(self, sku: str) -> Optional[Product]:
        await asyncio.sleep(0)
        return self._products.get(sku)

    def upsert(self, product: Product) -> None:
        self._products[product.sku] = product

    def set_price(self, sku: str, price: int) -> None:
        product = self._products[sku]
        self._products[sku] = product.model_copy(update={"price": price})

    async def search(self, query: str) -> List[Product]:
        query = query.lower()
        return [p for p in self._products.values() if query in p.title.lower() or query in p.sku.lower()]


class CatalogCache:
    """
    Read-through, TTL-bounded view of a catalog.

    Used to fill in display prices on create/update. Authoritative re-pricing
    (price lock, completion) reads the catalog directly.
    """

    def __init__(self, catalog, ttl_seconds: float, clock=None):
        self.catalog = catalog
        self._cache: TTLCache[str, Optional[Product]] = TTLCache(
            catalog.get_product, ttl_seconds, clock
        )

    async def get_product(self, sku: str) -> Optional[Product]:
        return await self._cache.get(sku)

    async def get_authoritative(self, sku: str) -> Optional[Product]:
        product = await self.catalog.get_product(sku)
        self._cache.invalidate(sku)
        return product

    def invalidate(self, sku: Optional[str] = None) -> None:
        self._cache.invalidate(sku)


SAMPLE_PRODUCTS = [
    Product(sku="bouquet_roses", title="Bouquet of Red Roses", price=3500, currency="USD"),
    Product(sku="pot_ceramic", title="Ceramic Pot", price=1500, currency="USD"),
    Product(sku="bouquet_tulips", title="Spring Tulips", price=2800, currency="USD"),
    Product(sku="orchid_white", title="White Orchid", price=4200, currency="USD"),
]

SAMPLE_STOCK = {
    "bouquet_roses": 25,
    "pot_ceramic": 40,
    "bouquet_tulips": 10,
    "orchid_white": 5,
}
