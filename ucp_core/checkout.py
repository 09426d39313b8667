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
Checkout Session State Machine

    created ──mark_ready──▶ ready_for_complete ──complete──▶ completing ──▶ completed
       │  ▲                        │                              │
       │  └────── lock expired ────┘                              └─ reconcile
       └──────────── cancel / expire ──────────▶ cancelled

Completion runs as a saga under the session lock:
1. redeem the payment token
2. commit the inventory reservations
3. persist the order
4. enqueue order.created
5. mark the session completed

A token failure returns the session to ready_for_complete. Losing the
reservations after the money moved voids the receipt and returns the session
to created. Any other failure after redemption leaves the session in
completing with the receipt recorded; the reconciliation sweep finishes or
unwinds it.
"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from .catalog import CatalogCache
from .clock import SystemClock
from .config import Settings
from .constants import Constants
from .discount import DiscountBook
from .errors import (
    CheckoutNotFoundError,
    CompletionPendingError,
    IdempotencyConflictError,
    InsufficientStockError,
    InvalidRequestError,
    InvalidStateError,
    PriceChangedError,
    ReservationNotActiveError,
    ReservationNotFoundError,
    SessionExpiredError,
    TokenError,
)
from .inventory import InventoryManager
from .locks import KeyedLock
from .models import (
    MUTABLE_STATUSES,
    Buyer,
    CheckoutPatch,
    CheckoutResponse,
    CheckoutSession,
    CheckoutStatus,
    IdempotencyRecord,
    IdempotencyStatus,
    LineItem,
    LineItemInput,
    PaymentCredential,
    PaymentReference,
    PlatformConfig,
    PostalAddress,
    ReceiptStatus,
    Totals,
    merge_buyer,
)
from .orders import OrderLedger
from .saga import Saga, SagaFailed, SagaStep
from .signing import jcs_canonicalize
from .store import MUST_NOT_EXIST, LedgerStore
from .tokens import TokenExchangeBroker

logger = logging.getLogger(__name__)
constants = Constants()


ItemsInput = List[Union[LineItemInput, Dict[str, Any]]]


def compute_request_hash(data: Any) -> str:
    """SHA-256 of the canonical JSON form of a request."""
    return hashlib.sha256(jcs_canonicalize(data)).hexdigest()


def _coerce_items(items: ItemsInput) -> List[LineItemInput]:
    return [item if isinstance(item, LineItemInput) else LineItemInput.model_validate(item) for item in items]


def _lapsed(session: CheckoutSession, now: datetime) -> bool:
    if session.status not in MUTABLE_STATUSES:
        return False
    if session.expires_at is not None and session.expires_at <= now:
        return True
    return (
        session.status == CheckoutStatus.READY_FOR_COMPLETE
        and session.price_lock_expires_at is not None
        and session.price_lock_expires_at <= now
    )


class CheckoutService:
    """
    Owns checkout sessions and drives them through their lifecycle.

    Args:
        store: Ledger holding sessions and idempotency records
        inventory: Reservation manager for stock holds
        tokens: Token exchange broker for payment
        orders: Order ledger written on completion
        webhooks: Delivery engine for checkout lifecycle events
        catalog: Cached catalog for prices
        settings: Checkout policy (TTLs, tax, shipping, merchant id)
        discounts: Discount codes known to the business
        clock: Clock for timestamps and deadlines
    """

    def __init__(
        self,
        store: LedgerStore,
        inventory: InventoryManager,
        tokens: TokenExchangeBroker,
        orders: OrderLedger,
        webhooks,
        catalog: CatalogCache,
        settings: Optional[Settings] = None,
        discounts: Optional[DiscountBook] = None,
        clock=None,
    ):
        self.store = store
        self.inventory = inventory
        self.tokens = tokens
        self.orders = orders
        self.webhooks = webhooks
        self.catalog = catalog
        self.settings = settings or Settings()
        self.discounts = discounts or DiscountBook()
        self.clock = clock or SystemClock()
        self._locks = KeyedLock("session")

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _load(self, session_id: str) -> Tuple[CheckoutSession, int]:
        loaded = await self.store.load(constants.NS_SESSIONS, session_id, CheckoutSession)
        if loaded is None:
            raise CheckoutNotFoundError(session_id)
        return loaded

    async def _save(self, session: CheckoutSession, version: int) -> int:
        session.updated_at = self.clock.now()
        return await self.store.save(constants.NS_SESSIONS, session.id, session, expected_version=version)

    async def get(self, session_id: str) -> CheckoutSession:
        session, _ = await self._load(session_id)
        return session

    async def list_sessions(self, status: Optional[CheckoutStatus] = None) -> List[CheckoutSession]:
        sessions = [s for s, _ in await self.store.load_all(constants.NS_SESSIONS, CheckoutSession)]
        if status is not None:
            sessions = [s for s in sessions if s.status == status]
        return sorted(sessions, key=lambda s: s.created_at)

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    async def _price_items(self, items: List[LineItemInput], currency: Optional[str]) -> Tuple[List[LineItem], str]:
        if not items:
            raise InvalidRequestError("A checkout needs at least one line item")

        priced = []
        for index, item in enumerate(items):
            product = await self.catalog.get_product(item.sku)
            if product is None:
                raise InvalidRequestError(
                    f"Unknown product: {item.sku}",
                    details={"path": f"$.line_items[{index}].sku"},
                )
            item_currency = item.currency or product.currency
            if currency is None:
                currency = item_currency
            elif item_currency != currency:
                raise InvalidRequestError(
                    f"Line item {item.sku} is priced in {item_currency}, checkout currency is {currency}",
                    details={"path": f"$.line_items[{index}].currency"},
                )
            priced.append(LineItem(
                id=f"li_{index + 1}",
                sku=item.sku,
                title=item.title or product.title,
                quantity=item.quantity,
                unit_price=item.unit_price if item.unit_price is not None else product.price,
                currency=item_currency,
            ))
        return priced, currency

    def _recompute_totals(self, session: CheckoutSession) -> None:
        subtotal = sum(item.line_total for item in session.line_items)
        applied, messages, discount = self.discounts.apply_codes(session.discount_codes, subtotal)
        # Tax on the discounted subtotal, rounded half up
        tax = ((subtotal - discount) * self.settings.tax_rate_bps + 5000) // 10000
        shipping = self.settings.shipping_flat_minor if session.line_items else 0

        session.applied_discounts = applied
        session.messages = messages
        session.totals = Totals.compute(session.currency, subtotal, tax, shipping, discount)

    async def _reprice(self, session: CheckoutSession) -> List[str]:
        """Re-read every price from the catalog itself. Returns the skus whose price moved."""
        changed = []
        for item in session.line_items:
            product = await self.catalog.get_authoritative(item.sku)
            if product is None:
                raise InsufficientStockError(item.sku, item.quantity, 0)
            if product.price != item.unit_price:
                logger.info(f"Price of {item.sku} moved {item.unit_price} -> {product.price} in checkout {session.id}")
                item.unit_price = product.price
                changed.append(item.sku)
        if changed:
            self._recompute_totals(session)
        return sorted(set(changed))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(
        self,
        items: ItemsInput,
        buyer: Optional[Buyer] = None,
        shipping_address: Optional[PostalAddress] = None,
        discount_codes: Optional[List[str]] = None,
        platform: Optional[PlatformConfig] = None,
    ) -> CheckoutSession:
        """
        Create a checkout session in ``created``.

        Args:
            items: Line items; missing prices are filled from the catalog
            buyer: Buyer details, with optional consent
            shipping_address: Fulfillment destination
            discount_codes: Codes to apply
            platform: Platform settings such as the webhook URL

        Returns:
            The new session. Nothing is reserved yet.
        """
        line_items, currency = await self._price_items(_coerce_items(items), None)

        now = self.clock.now()
        session = CheckoutSession(
            id=f"chk_{uuid4().hex}",
            currency=currency,
            line_items=line_items,
            buyer=buyer,
            shipping_address=shipping_address,
            discount_codes=list(discount_codes or []),
            totals=Totals(currency=currency),
            platform=platform,
            expires_at=now + timedelta(seconds=self.settings.session_ttl_seconds),
            created_at=now,
            updated_at=now,
        )
        self._recompute_totals(session)
        await self.store.save(constants.NS_SESSIONS, session.id, session, expected_version=MUST_NOT_EXIST)

        logger.info(f"Checkout {session.id} created: {len(line_items)} item(s), total {session.totals.total} {currency}")
        return session

    async def update(self, session_id: str, patch: Union[CheckoutPatch, Dict[str, Any]]) -> CheckoutSession:
        """
        Apply a partial update to a session in ``created`` or ``ready_for_complete``.

        Changing line items drops any stock holds. A ready session is then
        re-priced and re-reserved; if that fails it is left in ``created``
        and the failure (PriceChangedError, InsufficientStockError) is raised.
        """
        if not isinstance(patch, CheckoutPatch):
            patch = CheckoutPatch.model_validate(patch)

        async with self._locks.hold(session_id):
            session, version = await self._load(session_id)
            if session.status not in MUTABLE_STATUSES:
                raise InvalidStateError("update", session.status.value)

            items_changed = patch.line_items is not None
            if items_changed:
                session.line_items, _ = await self._price_items(patch.line_items, session.currency)
            if patch.buyer is not None:
                session.buyer = merge_buyer(session.buyer, patch.buyer)
            if patch.shipping_address is not None:
                session.shipping_address = patch.shipping_address
            if patch.discount_codes is not None:
                session.discount_codes = list(patch.discount_codes)
            if patch.platform is not None:
                session.platform = patch.platform
            self._recompute_totals(session)
            session.expires_at = self.clock.now() + timedelta(seconds=self.settings.session_ttl_seconds)

            if items_changed and session.reservation_ids:
                await self.inventory.release_all(session.reservation_ids)
                session.reservation_ids = []

            if items_changed and session.status == CheckoutStatus.READY_FOR_COMPLETE:
                session.status = CheckoutStatus.CREATED
                session.price_lock_expires_at = None
                try:
                    await self._lock(session)
                except (PriceChangedError, InsufficientStockError):
                    await self._save(session, version)
                    logger.info(f"Checkout {session_id} dropped to created after item change")
                    raise

            await self._save(session, version)

        logger.info(f"Checkout {session_id} updated ({session.status.value})")
        return session

    async def mark_ready_for_complete(self, session_id: str) -> CheckoutSession:
        """
        Move a session to ``ready_for_complete``: re-price from the catalog and reserve every item.

        Raises:
            PriceChangedError: A price moved. The session is updated and stays in ``created``.
            InsufficientStockError: Some item cannot be held. Nothing is reserved.
        """
        async with self._locks.hold(session_id):
            session, version = await self._load(session_id)
            if session.status == CheckoutStatus.READY_FOR_COMPLETE:
                return session
            if session.status != CheckoutStatus.CREATED:
                raise InvalidStateError("mark ready", session.status.value)

            try:
                await self._lock(session)
            except PriceChangedError:
                await self._save(session, version)
                raise
            await self._save(session, version)

        logger.info(
            f"Checkout {session_id} ready for complete; price locked until {session.price_lock_expires_at.isoformat()}"
        )
        return session

    async def _lock(self, session: CheckoutSession) -> None:
        changed = await self._reprice(session)
        if changed:
            raise PriceChangedError(session.id, changed, checkout=session.model_dump(mode="json"))

        ttl = timedelta(seconds=self.settings.reservation_ttl_seconds)
        reservation_ids: List[str] = []
        try:
            for sku, quantity in session.quantities_by_sku().items():
                reservation = await self.inventory.reserve(sku, quantity, session.id, ttl)
                reservation_ids.append(reservation.id)
        except Exception:
            await self.inventory.release_all(reservation_ids)
            raise

        session.reservation_ids = reservation_ids
        session.status = CheckoutStatus.READY_FOR_COMPLETE
        session.price_lock_expires_at = self.clock.now() + timedelta(seconds=self.settings.price_lock_seconds)

    async def complete(
        self,
        session_id: str,
        payment: Union[PaymentCredential, Dict[str, Any]],
        idempotency_key: str,
    ) -> CheckoutResponse:
        """
        Pay for a ready session and turn it into an order.

        Args:
            session_id: Session in ``ready_for_complete``
            payment: Payment token and optional proof of authorization
            idempotency_key: Client key; a retry with the same key and payment
                returns the same order without redeeming again

        Returns:
            CheckoutResponse with the completed session and its order

        Raises:
            IdempotencyConflictError: The key was used with a different request
            PriceChangedError, SessionExpiredError: The price lock or the stock holds lapsed
            TokenError: Redemption rejected; the session is ready for another payment
            CompletionPendingError: Paid but not yet recorded; retry later
        """
        if not idempotency_key:
            raise InvalidRequestError("complete requires an idempotency key")
        if not isinstance(payment, PaymentCredential):
            payment = PaymentCredential.model_validate(payment)
        request_hash = compute_request_hash({"checkout_id": session_id, "payment": payment.model_dump(mode="json")})

        async with self._locks.hold(session_id):
            replay = await self._check_idempotency(session_id, idempotency_key, request_hash)
            if replay is not None:
                return replay

            session, version = await self._load(session_id)
            if session.status != CheckoutStatus.READY_FOR_COMPLETE:
                raise InvalidStateError("complete", session.status.value)

            now = self.clock.now()
            if session.price_lock_expires_at is None or session.price_lock_expires_at <= now:
                await self._unlock_expired(session, version)
            if not await self.inventory.holds_active(session.reservation_ids, now):
                await self._unlock_expired(session, version, reason="inventory reservation expired")

            session.status = CheckoutStatus.COMPLETING
            session.idempotency_key = idempotency_key
            session.payment = PaymentReference(token_id=payment.token_id, psp_id=self.settings.psp_id)
            version = await self._save(session, version)
            await self.store.save(
                constants.NS_IDEMPOTENCY,
                idempotency_key,
                IdempotencyRecord(
                    key=idempotency_key,
                    request_hash=request_hash,
                    session_id=session_id,
                    created_at=self.clock.now(),
                ),
            )
            logger.info(f"Checkout {session_id} completing with token {payment.token_id}")

            return await self._run_completion(session, version, payment)

    async def _check_idempotency(
        self,
        session_id: str,
        idempotency_key: str,
        request_hash: str,
    ) -> Optional[CheckoutResponse]:
        loaded = await self.store.load(constants.NS_IDEMPOTENCY, idempotency_key, IdempotencyRecord)
        if loaded is None:
            return None
        record, _ = loaded
        if record.request_hash != request_hash:
            raise IdempotencyConflictError(idempotency_key)

        session, _ = await self._load(session_id)
        if record.status == IdempotencyStatus.COMPLETED or session.status == CheckoutStatus.COMPLETED:
            logger.info(f"Checkout {session_id}: replaying completion for idempotency key {idempotency_key}")
            order = await self.orders.get(record.order_id or session.order_id)
            return CheckoutResponse(checkout=session, order=order)
        if session.status == CheckoutStatus.COMPLETING:
            raise CompletionPendingError(session_id)
        # Stale pending record from an attempt that was unwound
        return None

    async def _unlock_expired(
        self,
        session: CheckoutSession,
        version: int,
        reason: str = "price lock expired",
    ) -> None:
        """Price lock or stock holds lapsed: drop the holds, return to created, and say why."""
        await self.inventory.release_all(session.reservation_ids)
        session.reservation_ids = []
        session.status = CheckoutStatus.CREATED
        session.price_lock_expires_at = None
        changed = await self._reprice(session)
        await self._save(session, version)

        logger.info(f"Checkout {session.id}: {reason}, back to created")
        if changed:
            raise PriceChangedError(session.id, changed, checkout=session.model_dump(mode="json"))
        raise SessionExpiredError(session.id, reason=reason)

    async def _run_completion(
        self,
        session: CheckoutSession,
        version: int,
        payment: PaymentCredential,
    ) -> CheckoutResponse:
        results: Dict[str, Any] = {}

        async def redeem():
            nonlocal version
            receipt = await self.tokens.redeem(
                token_id=payment.token_id,
                merchant_id=self.settings.merchant_id,
                psp_id=self.settings.psp_id,
                amount=session.totals.total,
                currency=session.currency,
                transaction_id=session.id,
                proof=payment.proof,
            )
            results["receipt"] = receipt
            session.payment.receipt_id = receipt.id
            version = await self._save(session, version)
            return receipt

        async def void_receipt():
            await self.tokens.void(results["receipt"].id, reason="inventory reservation lost")

        async def commit_inventory():
            return await self.inventory.commit_all(session.reservation_ids)

        async def persist_order():
            order = await self.orders.create_from_session(session, results["receipt"].id)
            results["order"] = order
            return order

        async def notify():
            await self.orders.publish_created(results["order"])

        async def finish():
            nonlocal version
            session.status = CheckoutStatus.COMPLETED
            session.order_id = results["order"].id
            version = await self._save(session, version)
            await self._mark_idempotency_completed(session.idempotency_key, session.order_id)

        saga = Saga(f"complete:{session.id}", [
            SagaStep("redeem", redeem, compensate=void_receipt),
            SagaStep("commit_inventory", commit_inventory),
            SagaStep("persist_order", persist_order),
            SagaStep("notify", notify),
            SagaStep("finish", finish),
        ])

        try:
            await saga.run()
        except SagaFailed as failure:
            cause = failure.cause

            if failure.step == "redeem" and isinstance(cause, TokenError):
                session.status = CheckoutStatus.READY_FOR_COMPLETE
                session.payment = None
                await self._save(session, version)
                await self.store.delete(constants.NS_IDEMPOTENCY, session.idempotency_key)
                logger.info(f"Checkout {session.id}: payment rejected ({cause.code}), back to ready_for_complete")
                raise cause

            if failure.step == "commit_inventory" and isinstance(
                cause, (ReservationNotActiveError, ReservationNotFoundError)
            ):
                await saga.compensate()
                await self.inventory.release_all(session.reservation_ids)
                session.reservation_ids = []
                session.status = CheckoutStatus.CREATED
                session.price_lock_expires_at = None
                session.payment = None
                await self._save(session, version)
                await self.store.delete(constants.NS_IDEMPOTENCY, session.idempotency_key)
                logger.warning(f"Checkout {session.id}: reservations lapsed after payment; receipt voided")
                raise SessionExpiredError(session.id, reason="inventory reservation expired") from cause

            logger.error(
                f"Checkout {session.id}: completion step '{failure.step}' failed after payment; "
                f"left in completing for reconciliation: {cause!r}"
            )
            raise CompletionPendingError(session.id, cause) from cause

        logger.info(f"Checkout {session.id} completed as order {session.order_id}")
        return CheckoutResponse(checkout=session, order=results["order"])

    async def _mark_idempotency_completed(self, idempotency_key: Optional[str], order_id: str) -> None:
        if not idempotency_key:
            return
        loaded = await self.store.load(constants.NS_IDEMPOTENCY, idempotency_key, IdempotencyRecord)
        if loaded is None:
            return
        record, record_version = loaded
        record.status = IdempotencyStatus.COMPLETED
        record.order_id = order_id
        await self.store.save(constants.NS_IDEMPOTENCY, idempotency_key, record, expected_version=record_version)

    async def cancel(self, session_id: str, reason: str = "cancelled_by_platform") -> CheckoutSession:
        """Cancel a session that has not started completing. Stock holds are released."""
        async with self._locks.hold(session_id):
            session, version = await self._load(session_id)
            if session.status not in MUTABLE_STATUSES:
                raise InvalidStateError("cancel", session.status.value)
            await self._cancel(session, version, reason)
        return session

    async def _cancel(self, session: CheckoutSession, version: int, reason: str) -> None:
        await self.inventory.release_all(session.reservation_ids)
        session.reservation_ids = []
        session.status = CheckoutStatus.CANCELLED
        session.cancel_reason = reason
        session.price_lock_expires_at = None
        await self._save(session, version)

        logger.info(f"Checkout {session.id} cancelled ({reason})")
        await self.webhooks.publish(
            constants.TOPIC_CHECKOUT_CANCELLED,
            {constants.UCP_CHECKOUT_KEY: session.model_dump(mode="json")},
            session.webhook_url,
            session.id,
        )

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def expire_sessions(self, now: Optional[datetime] = None) -> List[CheckoutSession]:
        """Cancel sessions idle past their inactivity deadline or, once ready, past their price lock."""
        now = now or self.clock.now()
        expired = []
        for candidate in await self.list_sessions():
            if not _lapsed(candidate, now):
                continue
            async with self._locks.hold(candidate.id):
                session, version = await self._load(candidate.id)
                if not _lapsed(session, now):
                    continue
                await self._cancel(session, version, "expired")
                expired.append(session)

        if expired:
            logger.info(f"Expired {len(expired)} idle checkout session(s)")
        return expired

    async def reconcile(self, now: Optional[datetime] = None) -> Dict[str, str]:
        """
        Resolve sessions stuck in ``completing`` for longer than the grace period.

        Returns:
            Outcome per session id: ``completed``, ``reverted`` or ``cancelled``
        """
        now = now or self.clock.now()
        cutoff = now - timedelta(seconds=self.settings.reconcile_grace_seconds)
        outcomes: Dict[str, str] = {}

        for candidate in await self.list_sessions(CheckoutStatus.COMPLETING):
            if candidate.updated_at > cutoff:
                continue
            async with self._locks.hold(candidate.id):
                session, version = await self._load(candidate.id)
                if session.status != CheckoutStatus.COMPLETING:
                    continue
                outcomes[session.id] = await self._reconcile_session(session, version)

        if outcomes:
            logger.info(f"Reconciled {len(outcomes)} checkout(s): {outcomes}")
        return outcomes

    async def _reconcile_session(self, session: CheckoutSession, version: int) -> str:
        receipt = None
        if session.payment is not None:
            if session.payment.receipt_id:
                receipt = await self.tokens.get_receipt(session.payment.receipt_id)
            else:
                receipt = await self.tokens.find_receipt(session.payment.token_id, transaction_id=session.id)

        if receipt is None or receipt.status == ReceiptStatus.VOIDED:
            session.status = CheckoutStatus.READY_FOR_COMPLETE
            session.payment = None
            await self._save(session, version)
            if session.idempotency_key:
                await self.store.delete(constants.NS_IDEMPOTENCY, session.idempotency_key)
            logger.info(f"Checkout {session.id}: no payment taken, back to ready_for_complete")
            return "reverted"

        session.payment.receipt_id = receipt.id
        try:
            await self.inventory.commit_all(session.reservation_ids)
        except (ReservationNotActiveError, ReservationNotFoundError):
            await self.tokens.void(receipt.id, reason="inventory reservation lost")
            logger.warning(f"Checkout {session.id}: reservations lapsed during completion; receipt voided")
            await self._cancel(session, version, "reservation_expired")
            return "cancelled"

        order = await self.orders.create_from_session(session, receipt.id)
        await self.orders.publish_created(order)
        session.status = CheckoutStatus.COMPLETED
        session.order_id = order.id
        await self._save(session, version)
        await self._mark_idempotency_completed(session.idempotency_key, order.id)
        logger.info(f"Checkout {session.id}: completion resumed, order {order.id}")
        return "completed"
