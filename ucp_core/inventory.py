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
Inventory Reservation Manager

Holds stock for checkout sessions while they are being paid for.

- reserve: check-and-hold quantity for a session, with a TTL
- commit: turn a hold into a sale (stock leaves on_hand)
- release: give a hold back to the available pool
- expire: background sweep releasing holds past their deadline

All operations on one sku are serialized by a per-sku lock, and every
write is a versioned compare-and-set, so concurrent reserves can never
together exceed available stock. A reservation leaves ``active`` exactly
once; whichever of commit/release/expire gets there first wins and the
others become no-ops.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple, Union
from uuid import uuid4

from .clock import SystemClock
from .constants import Constants
from .errors import (
    InsufficientStockError,
    InvalidRequestError,
    InvariantViolationError,
    ReservationNotActiveError,
    ReservationNotFoundError,
)
from .locks import KeyedLock
from .models import InventoryReservation, ReservationStatus, StockLevel
from .store import MUST_NOT_EXIST, LedgerStore

logger = logging.getLogger(__name__)
constants = Constants()


class InventoryManager:
    """Atomic reserve/commit/release of stock keyed by sku."""

    def __init__(self, store: LedgerStore, clock=None):
        self.store = store
        self.clock = clock or SystemClock()
        self._locks = KeyedLock("sku")

    # ------------------------------------------------------------------
    # Stock levels
    # ------------------------------------------------------------------

    async def _load_stock(self, sku: str) -> Tuple[StockLevel, int]:
        loaded = await self.store.load(constants.NS_STOCK, sku, StockLevel)
        if loaded is None:
            return StockLevel(sku=sku), MUST_NOT_EXIST
        return loaded

    async def get_stock(self, sku: str) -> StockLevel:
        stock, _ = await self._load_stock(sku)
        return stock

    async def set_stock(self, sku: str, on_hand: int) -> StockLevel:
        """Set the physical quantity for a sku. Active holds are kept."""
        if on_hand < 0:
            raise InvalidRequestError(f"Stock for {sku} cannot be negative")

        async with self._locks.hold(sku):
            stock, version = await self._load_stock(sku)
            if on_hand < stock.reserved:
                raise InvalidRequestError(
                    f"Cannot set stock for {sku} to {on_hand}: {stock.reserved} units are reserved"
                )
            stock.on_hand = on_hand
            await self.store.save(constants.NS_STOCK, sku, stock, expected_version=version)
            logger.info(f"Stock for {sku} set to {on_hand}")
            return stock

    async def restock(self, sku: str, quantity: int) -> StockLevel:
        if quantity <= 0:
            raise InvalidRequestError("Restock quantity must be positive")

        async with self._locks.hold(sku):
            stock, version = await self._load_stock(sku)
            stock.on_hand += quantity
            await self.store.save(constants.NS_STOCK, sku, stock, expected_version=version)
            return stock

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    async def get_reservation(self, reservation_id: str) -> InventoryReservation:
        loaded = await self.store.load(constants.NS_RESERVATIONS, reservation_id, InventoryReservation)
        if loaded is None:
            raise ReservationNotFoundError(reservation_id)
        return loaded[0]

    async def holds_active(self, reservation_ids: Iterable[str], now: Optional[datetime] = None) -> bool:
        """True when every reservation exists, is active and has not reached its deadline."""
        now = now or self.clock.now()
        for reservation_id in reservation_ids:
            loaded = await self.store.load(constants.NS_RESERVATIONS, reservation_id, InventoryReservation)
            if loaded is None:
                return False
            reservation, _ = loaded
            if reservation.status != ReservationStatus.ACTIVE or reservation.expires_at <= now:
                return False
        return True

    async def reservations_for_session(self, session_id: str) -> List[InventoryReservation]:
        return [
            reservation
            for reservation, _ in await self.store.load_all(constants.NS_RESERVATIONS, InventoryReservation)
            if reservation.session_id == session_id
        ]

    async def reserve(
        self,
        sku: str,
        quantity: int,
        session_id: str,
        ttl: Union[timedelta, float],
    ) -> InventoryReservation:
        """
        Hold ``quantity`` units of ``sku`` for a checkout session.

        Args:
            sku: Stock keeping unit
            quantity: Units to hold (positive)
            session_id: Owning checkout session
            ttl: How long the hold lives before the expiry sweep releases it

        Returns:
            The active reservation

        Raises:
            InsufficientStockError: Not enough available stock. Nothing is held.
        """
        if quantity <= 0:
            raise InvalidRequestError("Reservation quantity must be positive")
        if not isinstance(ttl, timedelta):
            ttl = timedelta(seconds=ttl)

        async with self._locks.hold(sku):
            stock, version = await self._load_stock(sku)
            if stock.available < quantity:
                logger.info(
                    f"Insufficient stock for {sku}: session {session_id} wants {quantity}, "
                    f"{stock.available} available"
                )
                raise InsufficientStockError(sku, quantity, stock.available)

            now = self.clock.now()
            reservation = InventoryReservation(
                id=f"res_{uuid4().hex}",
                sku=sku,
                quantity=quantity,
                session_id=session_id,
                expires_at=now + ttl,
                created_at=now,
            )
            stock.reserved += quantity
            self._check_invariants(stock, reservation)

            # Stock first: a lost reservation write leaks a hold, never oversells
            await self.store.save(constants.NS_STOCK, sku, stock, expected_version=version)
            await self.store.save(
                constants.NS_RESERVATIONS, reservation.id, reservation, expected_version=MUST_NOT_EXIST
            )

        logger.info(f"Reserved {quantity} x {sku} for session {session_id} ({reservation.id})")
        return reservation

    async def commit(self, reservation_id: str) -> InventoryReservation:
        """Turn an active hold into a sale. Committing twice is a no-op."""
        return await self._resolve(reservation_id, ReservationStatus.COMMITTED)

    async def release(self, reservation_id: str) -> InventoryReservation:
        """Return an active hold to the pool. A no-op once the hold is resolved."""
        return await self._resolve(reservation_id, ReservationStatus.RELEASED)

    async def release_all(self, reservation_ids: Iterable[str]) -> None:
        for reservation_id in reservation_ids:
            try:
                await self.release(reservation_id)
            except ReservationNotFoundError:
                logger.warning(f"Release skipped, reservation {reservation_id} not found")

    async def commit_all(self, reservation_ids: List[str]) -> List[InventoryReservation]:
        """
        Commit several reservations atomically.

        Every reservation must be active (or already committed); otherwise
        ReservationNotActiveError is raised and nothing is committed.
        """
        if not reservation_ids:
            return []

        reservations = [await self.get_reservation(rid) for rid in reservation_ids]
        async with self._locks.hold_many(r.sku for r in reservations):
            current: List[Tuple[InventoryReservation, int]] = []
            for rid in reservation_ids:
                loaded = await self.store.load(constants.NS_RESERVATIONS, rid, InventoryReservation)
                if loaded is None:
                    raise ReservationNotFoundError(rid)
                reservation, _ = loaded
                if reservation.status not in (ReservationStatus.ACTIVE, ReservationStatus.COMMITTED):
                    raise ReservationNotActiveError(rid, reservation.status.value)
                current.append(loaded)

            per_sku: Dict[str, int] = defaultdict(int)
            for reservation, _ in current:
                if reservation.status == ReservationStatus.ACTIVE:
                    per_sku[reservation.sku] += reservation.quantity

            for sku, quantity in per_sku.items():
                stock, version = await self._load_stock(sku)
                stock.reserved -= quantity
                stock.on_hand -= quantity
                self._check_invariants(stock)
                await self.store.save(constants.NS_STOCK, sku, stock, expected_version=version)

            now = self.clock.now()
            committed = []
            for reservation, version in current:
                if reservation.status == ReservationStatus.ACTIVE:
                    reservation.status = ReservationStatus.COMMITTED
                    reservation.resolved_at = now
                    await self.store.save(
                        constants.NS_RESERVATIONS, reservation.id, reservation, expected_version=version
                    )
                committed.append(reservation)

        logger.info(f"Committed reservations {reservation_ids}")
        return committed

    async def expire(self, now: Optional[datetime] = None) -> List[InventoryReservation]:
        """Release every active reservation whose deadline has passed."""
        now = now or self.clock.now()
        expired = []
        for reservation, _ in await self.store.load_all(constants.NS_RESERVATIONS, InventoryReservation):
            if reservation.status != ReservationStatus.ACTIVE or reservation.expires_at > now:
                continue
            resolved = await self._resolve(reservation.id, ReservationStatus.EXPIRED, now=now)
            if resolved.status == ReservationStatus.EXPIRED:
                expired.append(resolved)

        if expired:
            logger.info(f"Expired {len(expired)} reservation(s)")
        return expired

    async def _resolve(
        self,
        reservation_id: str,
        target: ReservationStatus,
        now: Optional[datetime] = None,
    ) -> InventoryReservation:
        sku = (await self.get_reservation(reservation_id)).sku

        async with self._locks.hold(sku):
            loaded = await self.store.load(constants.NS_RESERVATIONS, reservation_id, InventoryReservation)
            reservation, reservation_version = loaded

            if reservation.status != ReservationStatus.ACTIVE:
                if target == ReservationStatus.COMMITTED and reservation.status != ReservationStatus.COMMITTED:
                    raise ReservationNotActiveError(reservation_id, reservation.status.value)
                logger.debug(f"Reservation {reservation_id} already {reservation.status.value}; {target.value} is a no-op")
                return reservation

            stock, stock_version = await self._load_stock(sku)
            stock.reserved -= reservation.quantity
            if target == ReservationStatus.COMMITTED:
                stock.on_hand -= reservation.quantity
            self._check_invariants(stock, reservation)

            reservation.status = target
            reservation.resolved_at = now or self.clock.now()
            await self.store.save(constants.NS_STOCK, sku, stock, expected_version=stock_version)
            await self.store.save(
                constants.NS_RESERVATIONS, reservation_id, reservation, expected_version=reservation_version
            )

        logger.info(f"Reservation {reservation_id} ({reservation.quantity} x {sku}) {target.value}")
        return reservation

    def _check_invariants(self, stock: StockLevel, reservation: Optional[InventoryReservation] = None) -> None:
        if stock.reserved < 0 or stock.on_hand < 0 or stock.reserved > stock.on_hand:
            context = {
                "sku": stock.sku,
                "on_hand": stock.on_hand,
                "reserved": stock.reserved,
                "reservation": reservation.model_dump(mode="json") if reservation else None,
            }
            logger.critical(f"Inventory invariant violated: {context}")
            raise InvariantViolationError("Inventory invariant violated", details=context)
