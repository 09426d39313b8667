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
UCP Checkout Core Errors

Every error surfaced to a Platform carries a stable machine-readable code,
a severity and a next_action hint so the Platform can automate recovery.

Families:
- Validation errors: bad input, no state change, safe to retry after a fix
- Business outcomes: InsufficientStock, PriceChanged, TokenError subtypes
- Transient errors: store or provider unavailable, retryable
- Partial failures: completion stuck after payment, resolved by reconciliation
- Invariant violations: atomicity guarantees broken, fatal
"""

from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    """UCP message severities."""
    RECOVERABLE = "recoverable"
    REQUIRES_BUYER_INPUT = "requires_buyer_input"
    REQUIRES_BUYER_REVIEW = "requires_buyer_review"
    UNRECOVERABLE = "unrecoverable"


class NextAction(str, Enum):
    """Hint telling the Platform how to recover from an error."""
    NONE = "none"
    RETRY = "retry"
    RETRY_LATER = "retry_later"
    REAUTHORIZE = "reauthorize"
    USE_DIFFERENT_PAYMENT = "use_different_payment"
    ADJUST_ITEMS = "adjust_items"
    RECONFIRM = "reconfirm"
    FIX_REQUEST = "fix_request"


class UcpError(Exception):
    """Base exception for all checkout core errors."""

    code = "internal_error"
    severity = Severity.RECOVERABLE
    next_action = NextAction.NONE
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "next_action": self.next_action.value,
            "retryable": self.retryable,
            "details": self.details,
        }


# ============================================================================
# Validation
# ============================================================================

class InvalidRequestError(UcpError):
    code = "invalid_request"
    next_action = NextAction.FIX_REQUEST


class ResourceNotFoundError(UcpError):
    code = "not_found"
    next_action = NextAction.FIX_REQUEST


class CheckoutNotFoundError(ResourceNotFoundError):
    code = "checkout_not_found"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Checkout session not found: {session_id}")


class OrderNotFoundError(ResourceNotFoundError):
    code = "order_not_found"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ReservationNotFoundError(ResourceNotFoundError):
    code = "reservation_not_found"

    def __init__(self, reservation_id: str):
        self.reservation_id = reservation_id
        super().__init__(f"Reservation not found: {reservation_id}")


# ============================================================================
# State
# ============================================================================

class InvalidStateError(UcpError):
    """Raised when an operation is not allowed in the session's current state."""

    code = "invalid_state"

    def __init__(self, action: str, status: str):
        self.action = action
        self.status = status
        super().__init__(
            f"Cannot {action} checkout in state '{status}'",
            details={"action": action, "status": status},
        )


class IdempotencyConflictError(UcpError):
    code = "idempotency_conflict"
    next_action = NextAction.FIX_REQUEST

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            "Idempotency key reused with different parameters",
            details={"idempotency_key": key},
        )


class VersionConflictError(UcpError):
    """Optimistic concurrency check failed on a ledger write."""

    code = "concurrent_modification"
    next_action = NextAction.RETRY
    retryable = True

    def __init__(self, namespace: str, key: str, expected: Optional[int], actual: Optional[int]):
        self.namespace = namespace
        self.key = key
        super().__init__(
            f"Version conflict on {namespace}/{key}: expected {expected}, found {actual}",
            details={"namespace": namespace, "key": key},
        )


# ============================================================================
# Business outcomes
# ============================================================================

class InsufficientStockError(UcpError):
    code = "insufficient_stock"
    severity = Severity.REQUIRES_BUYER_INPUT
    next_action = NextAction.ADJUST_ITEMS

    def __init__(self, sku: str, requested: int, available: int):
        self.sku = sku
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {sku}: requested {requested}, available {available}",
            details={"sku": sku, "requested": requested, "available": available},
        )


class ReservationNotActiveError(UcpError):
    """A reservation was already committed, released or expired."""

    code = "reservation_not_active"
    next_action = NextAction.RECONFIRM

    def __init__(self, reservation_id: str, status: str):
        self.reservation_id = reservation_id
        self.status = status
        super().__init__(
            f"Reservation {reservation_id} is {status}",
            details={"reservation_id": reservation_id, "status": status},
        )


class PriceChangedError(UcpError):
    code = "price_changed"
    severity = Severity.REQUIRES_BUYER_REVIEW
    next_action = NextAction.RECONFIRM

    def __init__(self, session_id: str, changed_skus, checkout: Optional[Dict[str, Any]] = None):
        self.session_id = session_id
        self.changed_skus = list(changed_skus)
        self.checkout = checkout
        super().__init__(
            f"Prices changed for {', '.join(self.changed_skus)}; checkout must be re-confirmed",
            details={"checkout_id": session_id, "skus": self.changed_skus},
        )


class SessionExpiredError(UcpError):
    code = "session_expired"
    severity = Severity.REQUIRES_BUYER_REVIEW
    next_action = NextAction.RECONFIRM

    def __init__(self, session_id: str, reason: str = "price lock expired"):
        self.session_id = session_id
        super().__init__(
            f"Checkout {session_id} expired: {reason}",
            details={"checkout_id": session_id},
        )


class TokenError(UcpError):
    """Base class for payment token redemption failures."""

    code = "token_error"
    severity = Severity.REQUIRES_BUYER_INPUT
    next_action = NextAction.USE_DIFFERENT_PAYMENT

    def __init__(self, token_id: str, message: str):
        self.token_id = token_id
        super().__init__(message, details={"token_id": token_id})


class TokenNotFoundError(TokenError):
    code = "token_not_found"

    def __init__(self, token_id: str):
        super().__init__(token_id, f"Payment token not found: {token_id}")


class TokenExpiredError(TokenError):
    code = "token_expired"
    next_action = NextAction.REAUTHORIZE

    def __init__(self, token_id: str):
        super().__init__(token_id, f"Payment token expired: {token_id}")


class TokenAlreadyConsumedError(TokenError):
    code = "token_already_consumed"
    next_action = NextAction.REAUTHORIZE

    def __init__(self, token_id: str):
        super().__init__(token_id, f"Payment token already consumed: {token_id}")


class PspMismatchError(TokenError):
    code = "psp_mismatch"

    def __init__(self, token_id: str, psp_id: str):
        super().__init__(token_id, f"Payment token {token_id} is not authorized for PSP {psp_id}")


class MerchantMismatchError(TokenError):
    code = "merchant_mismatch"

    def __init__(self, token_id: str, merchant_id: str):
        super().__init__(token_id, f"Payment token {token_id} is not bound to merchant {merchant_id}")


class CurrencyMismatchError(TokenError):
    code = "currency_mismatch"

    def __init__(self, token_id: str, currency: str, expected: str):
        super().__init__(token_id, f"Payment token {token_id} is in {expected}, not {currency}")


class AmountExceedsLimitError(TokenError):
    code = "amount_exceeds_limit"
    next_action = NextAction.REAUTHORIZE

    def __init__(self, token_id: str, amount: int, limit: int):
        self.amount = amount
        self.limit = limit
        super().__init__(token_id, f"Amount {amount} exceeds token limit {limit}")
        self.details.update({"amount": amount, "limit": limit})


class InvalidSignatureError(TokenError):
    code = "invalid_signature"
    next_action = NextAction.REAUTHORIZE

    def __init__(self, token_id: str, reason: str):
        super().__init__(token_id, f"Proof of authorization rejected for {token_id}: {reason}")


# ============================================================================
# Infrastructure
# ============================================================================

class TransientError(UcpError):
    code = "service_unavailable"
    next_action = NextAction.RETRY
    retryable = True


class StoreUnavailableError(TransientError):
    code = "store_unavailable"


class CompletionPendingError(UcpError):
    """Payment was taken but the order is not persisted yet."""

    code = "completion_pending"
    next_action = NextAction.RETRY_LATER
    retryable = True

    def __init__(self, session_id: str, cause: Optional[BaseException] = None):
        self.session_id = session_id
        super().__init__(
            f"Checkout {session_id} is completing; order persistence will be reconciled",
            details={"checkout_id": session_id, "cause": repr(cause) if cause else None},
        )


class InvariantViolationError(UcpError):
    """An atomicity guarantee was broken. Never corrected silently."""

    code = "internal_error"
    severity = Severity.UNRECOVERABLE
