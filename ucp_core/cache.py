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

"""
TTL-bounded read-through cache for read-mostly data (catalog, business profile).

Entries are never consulted for stock, token validity or payment amounts;
those always go to the ledger.
"""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

from .clock import SystemClock

K = TypeVar("K")
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """
    Read-through cache with a fixed time-to-live per entry.

    Args:
        loader: Coroutine loading the value for a key on a miss
        ttl_seconds: How long a loaded value stays fresh (0 disables caching)
        clock: Object with a ``now()`` method returning aware UTC datetimes
    """

    def __init__(
        self,
        loader: Callable[[K], Awaitable[V]],
        ttl_seconds: float,
        clock=None,
    ):
        self._loader = loader
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._entries: Dict[K, Tuple[V, datetime]] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, key: K) -> V:
        now = self._clock.now()
        entry = self._entries.get(key)
        if entry is not None and now < entry[1]:
            self.hits += 1
            return entry[0]

        self.misses += 1
        value = await self._loader(key)
        if self._ttl.total_seconds() > 0:
            self._entries[key] = (value, now + self._ttl)
        return value

    def peek(self, key: K) -> Optional[V]:
        """Return a fresh cached value without loading."""
        entry = self._entries.get(key)
        if entry is None or self._clock.now() >= entry[1]:
            return None
        return entry[0]

    def invalidate(self, key: Optional[K] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
