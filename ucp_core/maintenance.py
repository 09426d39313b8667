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

"""Periodic sweeps: reservation expiry, idle session expiry and completion reconciliation."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from .checkout import CheckoutService
from .inventory import InventoryManager

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired_reservations: int = 0
    expired_sessions: int = 0
    reconciled: Dict[str, str] = field(default_factory=dict)


class Sweeper:
    """Runs one sweep pass on demand, or on an interval as a background task."""

    def __init__(self, inventory: InventoryManager, checkout: CheckoutService, interval_seconds: float = 30.0, clock=None):
        self.inventory = inventory
        self.checkout = checkout
        self.interval_seconds = interval_seconds
        self.clock = clock or checkout.clock
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> SweepReport:
        now = self.clock.now()
        report = SweepReport()
        report.expired_reservations = len(await self.inventory.expire(now))
        report.expired_sessions = len(await self.checkout.expire_sessions(now))
        report.reconciled = await self.checkout.reconcile(now)
        return report

    async def _loop(self) -> None:
        while True:
            try:
                report = await self.run_once()
                if report.expired_reservations or report.expired_sessions or report.reconciled:
                    logger.info(f"Sweep: {report}")
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Sweep pass failed; will retry on the next interval")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="ucp-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
