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
Order ledger.

An order is the permanent record of a completed checkout. Line items and
totals are copied from the session and never change; fulfillment events
and adjustments are append-only, and every one of them is published to the
Platform's webhook endpoint.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from .clock import SystemClock
from .constants import Constants
from .errors import InvalidRequestError, OrderNotFoundError, VersionConflictError
from .locks import KeyedLock
from .models import (
    Adjustment,
    CheckoutSession,
    FulfillmentEvent,
    Order,
    OrderFulfillment,
    OrderLineItem,
)
from .store import MUST_NOT_EXIST, LedgerStore

logger = logging.getLogger(__name__)
constants = Constants()


FULFILLMENT_EVENT_TYPES = [
    "processing",
    "shipped",
    "in_transit",
    "delivered",
    "failed_attempt",
    "canceled",
    "undeliverable",
    "returned_to_sender",
]

ADJUSTMENT_TYPES = ["refund", "return", "credit", "price_adjustment", "dispute", "cancellation"]


def order_id_for(session_id: str) -> str:
    """One order per checkout session, whichever path creates it."""
    return f"order_{uuid.uuid5(uuid.NAMESPACE_URL, f'ucp-order|{session_id}').hex}"


class OrderLedger:
    """Creates orders from completed sessions and records what happens to them."""

    def __init__(self, store: LedgerStore, webhooks=None, clock=None):
        self.store = store
        self.webhooks = webhooks
        self.clock = clock or SystemClock()
        self._locks = KeyedLock("order")

    async def get(self, order_id: str) -> Order:
        loaded = await self.store.load(constants.NS_ORDERS, order_id, Order)
        if loaded is None:
            raise OrderNotFoundError(order_id)
        return loaded[0]

    async def find(self, order_id: str) -> Optional[Order]:
        loaded = await self.store.load(constants.NS_ORDERS, order_id, Order)
        return loaded[0] if loaded else None

    async def create_from_session(self, session: CheckoutSession, receipt_id: Optional[str]) -> Order:
        """
        Persist the order for a session. Creating it again returns the stored order.

        Args:
            session: The session being completed
            receipt_id: Receipt of the token redemption that paid for it

        Returns:
            The persisted order
        """
        now = self.clock.now()
        order = Order(
            id=session.order_id or order_id_for(session.id),
            checkout_id=session.id,
            line_items=[
                OrderLineItem(
                    id=item.id,
                    sku=item.sku,
                    title=item.title,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    currency=item.currency,
                )
                for item in session.line_items
            ],
            totals=session.totals,
            receipt_id=receipt_id,
            fulfillment=OrderFulfillment(
                expectations=[{
                    "id": f"exp_{session.id}",
                    "line_items": [{"id": item.id, "quantity": item.quantity} for item in session.line_items],
                    "destination": session.shipping_address.model_dump(mode="json") if session.shipping_address else None,
                }],
            ),
            webhook_url=session.webhook_url,
            created_at=now,
            updated_at=now,
        )

        async with self._locks.hold(order.id):
            try:
                await self.store.save(constants.NS_ORDERS, order.id, order, expected_version=MUST_NOT_EXIST)
            except VersionConflictError:
                logger.info(f"Order {order.id} already exists for checkout {session.id}")
                return await self.get(order.id)

        logger.info(f"Order {order.id} created for checkout {session.id} (total {order.totals.total})")
        return order

    async def publish_created(self, order: Order) -> None:
        await self._publish(constants.TOPIC_ORDER_CREATED, order, source_id=order.id)

    async def record_fulfillment_event(
        self,
        order_id: str,
        event_type: str,
        line_items: Optional[List[Dict[str, Any]]] = None,
        description: Optional[str] = None,
    ) -> Order:
        """Append a fulfillment event (e.g. ``shipped``) and publish ``order.<type>``."""
        if event_type not in FULFILLMENT_EVENT_TYPES:
            raise InvalidRequestError(
                f"Unknown fulfillment event type '{event_type}'",
                details={"allowed": FULFILLMENT_EVENT_TYPES},
            )

        async with self._locks.hold(order_id):
            loaded = await self.store.load(constants.NS_ORDERS, order_id, Order)
            if loaded is None:
                raise OrderNotFoundError(order_id)
            order, version = loaded

            now = self.clock.now()
            event = FulfillmentEvent(
                id=f"evt_{uuid.uuid4().hex}",
                type=event_type,
                line_items=line_items or [{"id": item.id, "quantity": item.quantity} for item in order.line_items],
                description=description,
                occurred_at=now,
            )
            order.fulfillment.events.append(event)
            order.status = order.derive_status()
            order.updated_at = now
            await self.store.save(constants.NS_ORDERS, order_id, order, expected_version=version)

        logger.info(f"Order {order_id}: fulfillment event {event_type} ({event.id})")
        await self._publish(f"order.{event_type}", order, source_id=f"{order_id}:{event.id}")
        return order

    async def record_adjustment(
        self,
        order_id: str,
        adjustment_type: str,
        amount: int = 0,
        reason: Optional[str] = None,
    ) -> Order:
        """Append an adjustment (refund, return, ...) and publish ``order.adjusted``."""
        if adjustment_type not in ADJUSTMENT_TYPES:
            raise InvalidRequestError(
                f"Unknown adjustment type '{adjustment_type}'",
                details={"allowed": ADJUSTMENT_TYPES},
            )
        if amount < 0:
            raise InvalidRequestError("Adjustment amount cannot be negative")

        async with self._locks.hold(order_id):
            loaded = await self.store.load(constants.NS_ORDERS, order_id, Order)
            if loaded is None:
                raise OrderNotFoundError(order_id)
            order, version = loaded

            if adjustment_type == "refund":
                refunded = sum(a.amount for a in order.adjustments if a.type == "refund")
                if refunded + amount > order.totals.total:
                    raise InvalidRequestError(
                        f"Refund of {amount} exceeds the refundable balance {order.totals.total - refunded}"
                    )

            now = self.clock.now()
            adjustment = Adjustment(
                id=f"adj_{uuid.uuid4().hex}",
                type=adjustment_type,
                amount=amount,
                currency=order.totals.currency,
                reason=reason,
                occurred_at=now,
            )
            order.adjustments.append(adjustment)
            order.status = order.derive_status()
            order.updated_at = now
            await self.store.save(constants.NS_ORDERS, order_id, order, expected_version=version)

        logger.info(f"Order {order_id}: {adjustment_type} adjustment of {amount} ({adjustment.id})")
        await self._publish(constants.TOPIC_ORDER_ADJUSTED, order, source_id=f"{order_id}:{adjustment.id}")
        return order

    async def _publish(self, topic: str, order: Order, source_id: str) -> None:
        if self.webhooks is None:
            return
        await self.webhooks.publish(
            topic,
            {constants.UCP_ORDER_KEY: order.model_dump(mode="json")},
            order.webhook_url,
            source_id,
        )
