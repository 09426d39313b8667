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
UCP Checkout Core Data Model

Pydantic models for everything the ledger persists:

- CheckoutSession: a prospective purchase from creation to completion
- InventoryReservation / StockLevel: time-bounded stock holds
- PaymentToken / PaymentReceipt / TokenAuditEntry: token exchange records
- Order: the append-only result of a completed checkout
- WebhookEvent: a queued lifecycle notification for a Platform endpoint
- IdempotencyRecord: the completion result bound to a client key

Money is always an integer amount of minor currency units paired with an
ISO-4217 code. Timestamps are timezone-aware UTC.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .discount import AppliedDiscount, DiscountMessage


CURRENCY_PATTERN = r"^[A-Z]{3}$"


# ============================================================================
# Checkout
# ============================================================================

class CheckoutStatus(str, Enum):
    """Checkout session states."""
    CREATED = "created"
    READY_FOR_COMPLETE = "ready_for_complete"
    COMPLETING = "completing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (CheckoutStatus.COMPLETED, CheckoutStatus.CANCELLED)
MUTABLE_STATUSES = (CheckoutStatus.CREATED, CheckoutStatus.READY_FOR_COMPLETE)


class LineItemInput(BaseModel):
    """Line item as submitted by a Platform. Prices may come from the catalog."""
    sku: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    unit_price: Optional[int] = Field(None, ge=0, description="Minor units")
    currency: Optional[str] = Field(None, pattern=CURRENCY_PATTERN)
    title: Optional[str] = None


class LineItem(BaseModel):
    """A priced line item in a checkout session."""
    id: str
    sku: str
    title: Optional[str] = None
    quantity: int = Field(..., gt=0)
    unit_price: int = Field(..., ge=0, description="Minor units")
    currency: str = Field(..., pattern=CURRENCY_PATTERN)

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class Totals(BaseModel):
    """Totals breakdown. total = subtotal + tax + shipping - discount."""
    currency: str = Field(..., pattern=CURRENCY_PATTERN)
    subtotal: int = Field(0, ge=0)
    tax: int = Field(0, ge=0)
    shipping: int = Field(0, ge=0)
    discount: int = Field(0, ge=0)
    total: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _check_total(self) -> "Totals":
        expected = self.subtotal + self.tax + self.shipping - self.discount
        if self.total != expected:
            raise ValueError(
                f"total {self.total} does not equal subtotal + tax + shipping - discount ({expected})"
            )
        return self

    @classmethod
    def compute(
        cls,
        currency: str,
        subtotal: int,
        tax: int = 0,
        shipping: int = 0,
        discount: int = 0,
    ) -> "Totals":
        return cls(
            currency=currency,
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            discount=discount,
            total=subtotal + tax + shipping - discount,
        )


class BuyerConsent(BaseModel):
    """
    Consent object representing buyer's privacy preferences.

    All fields are optional - absence means consent state is unknown/not provided.
    """
    analytics: Optional[bool] = Field(
        None,
        description="Consent for analytics and tracking"
    )
    preferences: Optional[bool] = Field(
        None,
        description="Consent for preference cookies and personalization"
    )
    marketing: Optional[bool] = Field(
        None,
        description="Consent for marketing communications (email, SMS, etc.)"
    )
    sale_of_data: Optional[bool] = Field(
        None,
        description="Consent for sale or sharing of personal data (CCPA)"
    )

    def has_any_consent(self) -> bool:
        """Check if any consent has been explicitly provided."""
        return any(value is not None for value in self.model_dump().values())

    def to_dict(self) -> dict:
        """Convert to dict, excluding None values."""
        return {k: v for k, v in self.model_dump().items() if v is not None}


class Buyer(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    consent: Optional[BuyerConsent] = Field(
        None,
        description="Buyer's privacy consent preferences"
    )


def merge_consent(existing: Optional[BuyerConsent], update: Optional[BuyerConsent]) -> Optional[BuyerConsent]:
    """
    Merge consent updates with existing consent.

    Only updates fields that are explicitly set in the update.
    """
    if existing is None:
        return update
    if update is None:
        return existing

    merged_data = existing.model_dump()
    for key, value in update.model_dump().items():
        if value is not None:
            merged_data[key] = value

    return BuyerConsent.model_validate(merged_data)


def merge_buyer(existing: Optional[Buyer], update: Buyer) -> Buyer:
    """Apply the fields set on ``update`` over ``existing``, merging consent."""
    if existing is None:
        return update

    merged = existing.model_dump(exclude={"consent"})
    merged.update(update.model_dump(exclude={"consent"}, exclude_none=True))
    merged["consent"] = merge_consent(existing.consent, update.consent)
    return Buyer.model_validate(merged)


class PostalAddress(BaseModel):
    """Fulfillment destination address."""
    street_address: Optional[str] = None
    extended_address: Optional[str] = None
    address_locality: Optional[str] = None
    address_region: Optional[str] = None
    address_country: Optional[str] = None
    postal_code: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class PlatformConfig(BaseModel):
    """Platform settings attached to a checkout."""
    webhook_url: Optional[str] = None


class PaymentReference(BaseModel):
    token_id: str
    psp_id: str
    receipt_id: Optional[str] = None


class PaymentCredential(BaseModel):
    """Payment submitted with complete: a CP token and optional proof of authorization."""
    token_id: str = Field(..., min_length=1)
    proof: Optional[str] = Field(
        None,
        description="Detached JWS over the redemption claims, signed with the merchant key"
    )


class CheckoutSession(BaseModel):
    id: str
    status: CheckoutStatus = CheckoutStatus.CREATED
    currency: str = Field(..., pattern=CURRENCY_PATTERN)
    line_items: List[LineItem] = Field(default_factory=list)
    buyer: Optional[Buyer] = None
    shipping_address: Optional[PostalAddress] = None
    discount_codes: List[str] = Field(default_factory=list)
    applied_discounts: List[AppliedDiscount] = Field(default_factory=list)
    messages: List[DiscountMessage] = Field(default_factory=list)
    totals: Totals
    reservation_ids: List[str] = Field(default_factory=list)
    payment: Optional[PaymentReference] = None
    platform: Optional[PlatformConfig] = None
    price_lock_expires_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    order_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def webhook_url(self) -> Optional[str]:
        return self.platform.webhook_url if self.platform else None

    def quantities_by_sku(self) -> Dict[str, int]:
        """Aggregate quantities per sku, in first-seen line item order."""
        quantities: Dict[str, int] = {}
        for item in self.line_items:
            quantities[item.sku] = quantities.get(item.sku, 0) + item.quantity
        return quantities


class CheckoutPatch(BaseModel):
    """Partial update for a checkout session. Unset fields are left alone."""
    line_items: Optional[List[LineItemInput]] = None
    buyer: Optional[Buyer] = None
    shipping_address: Optional[PostalAddress] = None
    discount_codes: Optional[List[str]] = None
    platform: Optional[PlatformConfig] = None


# ============================================================================
# Inventory
# ============================================================================

class ReservationStatus(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED = "expired"


class InventoryReservation(BaseModel):
    id: str
    sku: str
    quantity: int = Field(..., gt=0)
    session_id: str
    status: ReservationStatus = ReservationStatus.ACTIVE
    expires_at: datetime
    created_at: datetime
    resolved_at: Optional[datetime] = None


class StockLevel(BaseModel):
    """Stock for one sku. Active reservations are held in ``reserved``."""
    sku: str
    on_hand: int = Field(0, ge=0)
    reserved: int = Field(0, ge=0)

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved


# ============================================================================
# Payment tokens
# ============================================================================

class PaymentToken(BaseModel):
    id: str
    credential_provider_id: str
    psp_id: str
    merchant_id: str
    max_amount: int = Field(..., ge=0)
    currency: str = Field(..., pattern=CURRENCY_PATTERN)
    expires_at: datetime
    single_use: bool = True
    consumed_at: Optional[datetime] = None
    consumed_by: Optional[str] = None


class ReceiptStatus(str, Enum):
    CAPTURED = "captured"
    VOIDED = "voided"


class PaymentReceipt(BaseModel):
    id: str
    token_id: str
    transaction_id: str
    merchant_id: str
    psp_id: str
    amount: int
    currency: str
    redeemed_at: datetime
    status: ReceiptStatus = ReceiptStatus.CAPTURED
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None


class TokenAuditEntry(BaseModel):
    token_id: str
    merchant_id: str
    psp_id: str
    transaction_id: Optional[str] = None
    outcome: str
    timestamp: datetime


# ============================================================================
# Orders
# ============================================================================

class OrderLineItem(BaseModel):
    """Line item copied into an order. Immutable."""
    model_config = ConfigDict(frozen=True)

    id: str
    sku: str
    title: Optional[str] = None
    quantity: int
    unit_price: int
    currency: str


class FulfillmentEvent(BaseModel):
    id: str
    type: str = Field(..., description="e.g. processing, shipped, in_transit, delivered")
    line_items: List[Dict[str, Any]] = Field(default_factory=list)
    description: Optional[str] = None
    occurred_at: datetime


class Adjustment(BaseModel):
    id: str
    type: str = Field(..., description="e.g. refund, return, dispute")
    amount: int = Field(0, ge=0)
    currency: str = Field(..., pattern=CURRENCY_PATTERN)
    reason: Optional[str] = None
    occurred_at: datetime


class OrderFulfillment(BaseModel):
    expectations: List[Dict[str, Any]] = Field(default_factory=list)
    events: List[FulfillmentEvent] = Field(default_factory=list)


class Order(BaseModel):
    id: str
    checkout_id: str
    line_items: List[OrderLineItem]
    totals: Totals
    receipt_id: Optional[str] = None
    fulfillment: OrderFulfillment = Field(default_factory=OrderFulfillment)
    adjustments: List[Adjustment] = Field(default_factory=list)
    status: str = "processing"
    webhook_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def derive_status(self) -> str:
        """Status from the latest fulfillment event, or refunded once fully refunded."""
        refunded = sum(a.amount for a in self.adjustments if a.type == "refund")
        if self.totals.total > 0 and refunded >= self.totals.total:
            return "refunded"
        if self.fulfillment.events:
            return self.fulfillment.events[-1].type
        return "processing"


# ============================================================================
# Webhooks
# ============================================================================

class WebhookStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


class DeliveryAttempt(BaseModel):
    attempt: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    backoff: Optional[float] = Field(None, description="Seconds waited before the next attempt")
    attempted_at: datetime


class WebhookEvent(BaseModel):
    delivery_id: str
    topic: str
    payload: Dict[str, Any]
    endpoint: str
    sequence: int = 0
    attempts: int = 0
    attempt_log: List[DeliveryAttempt] = Field(default_factory=list)
    status: WebhookStatus = WebhookStatus.PENDING
    last_error: Optional[str] = None
    created_at: datetime
    delivered_at: Optional[datetime] = None


# ============================================================================
# Idempotency
# ============================================================================

class IdempotencyStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class IdempotencyRecord(BaseModel):
    key: str
    request_hash: str
    session_id: str
    status: IdempotencyStatus = IdempotencyStatus.PENDING
    order_id: Optional[str] = None
    created_at: datetime


class CheckoutResponse(BaseModel):
    """Synchronous response for a session operation."""
    checkout: CheckoutSession
    order: Optional[Order] = None
