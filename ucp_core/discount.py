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
Discount Extension Implementation

This module implements the Discount Extension for UCP Checkout Capability
as per https://ucp.dev/specification/discount/

The checkout core uses it to:
- Resolve discount codes submitted via create/update checkout
- Report rejected codes as warning messages on the checkout
- Produce the discount component of the totals breakdown

Discount amounts are always capped at the subtotal so totals never go negative.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, Field
import logging

logger = logging.getLogger(__name__)


DISCOUNT_VERSION = "2026-01-11"
DISCOUNT_CAPABILITY_NAME = "dev.ucp.shopping.discount"


class DiscountErrorCode(str, Enum):
    """Error codes for rejected discount codes."""
    DISCOUNT_CODE_EXPIRED = "discount_code_expired"
    DISCOUNT_CODE_INVALID = "discount_code_invalid"
    DISCOUNT_CODE_ALREADY_APPLIED = "discount_code_already_applied"
    DISCOUNT_CODE_COMBINATION_DISALLOWED = "discount_code_combination_disallowed"


class AllocationMethod(str, Enum):
    """How the discount was calculated."""
    EACH = "each"      # Applied to each unit
    ACROSS = "across"  # Distributed across items


class AppliedDiscount(BaseModel):
    """A discount that has been applied to the checkout."""
    code: Optional[str] = Field(
        None,
        description="Discount code (absent for automatic discounts)"
    )
    title: str = Field(..., description="Human-readable discount name")
    amount: int = Field(..., ge=0, description="Total discount amount in minor units")
    automatic: bool = Field(
        False,
        description="True if applied automatically without code"
    )
    priority: Optional[int] = Field(
        None,
        description="Stacking order (lower = applied first)"
    )
    method: Optional[AllocationMethod] = None


class DiscountMessage(BaseModel):
    """Message for rejected discount code."""
    type: str = "warning"
    code: DiscountErrorCode
    path: str = Field(..., description="JSONPath to the rejected code")
    content: str = Field(..., description="Human-readable error message")


class DiscountRule(BaseModel):
    """A discount the business offers."""
    title: str
    amount: int = Field(0, ge=0, description="Fixed amount in minor units")
    percent: int = Field(0, ge=0, le=100, description="Percentage of the subtotal")
    priority: int = 1
    expired: bool = False
    combinable: bool = True


def create_discount_capability() -> dict:
    """Create Discount capability for UCP profile."""
    return {
        "name": DISCOUNT_CAPABILITY_NAME,
        "version": DISCOUNT_VERSION,
        "extends": "dev.ucp.shopping.checkout",
        "spec": "https://ucp.dev/specification/discount",
        "schema": "https://ucp.dev/schemas/shopping/discount.json"
    }


def calculate_discount_amount(rule: DiscountRule, subtotal: int) -> int:
    """
    Calculate the actual discount amount for a rule.

    Percentages round half up on minor units; the result never exceeds the subtotal.
    """
    if rule.percent:
        amount = (subtotal * rule.percent + 50) // 100
    else:
        amount = rule.amount
    return min(amount, subtotal)


class DiscountBook:
    """
    Catalog of discount codes available to a business.

    Codes are matched case-insensitively.
    """

    def __init__(self, rules: Optional[Dict[str, DiscountRule]] = None):
        self._rules: Dict[str, DiscountRule] = {
            code.upper(): rule for code, rule in (rules or {}).items()
        }

    def add(self, code: str, rule: DiscountRule) -> None:
        self._rules[code.upper()] = rule

    def apply_codes(
        self,
        codes: List[str],
        subtotal: int,
    ) -> Tuple[List[AppliedDiscount], List[DiscountMessage], int]:
        """
        Attempt to apply discount codes to a subtotal.

        Args:
            codes: The discount codes submitted by the Platform
            subtotal: Order subtotal in minor units

        Returns:
            Tuple of (applied discounts, rejection messages, total discount amount)
        """
        applied: List[AppliedDiscount] = []
        messages: List[DiscountMessage] = []
        seen = set()
        remaining = subtotal

        candidates = []
        for index, code in enumerate(codes):
            path = f"$.discounts.codes[{index}]"
            code_upper = code.upper()

            if code_upper in seen:
                messages.append(DiscountMessage(
                    code=DiscountErrorCode.DISCOUNT_CODE_ALREADY_APPLIED,
                    path=path,
                    content=f"Code '{code}' is already applied",
                ))
                continue
            seen.add(code_upper)

            rule = self._rules.get(code_upper)
            if rule is None:
                messages.append(DiscountMessage(
                    code=DiscountErrorCode.DISCOUNT_CODE_INVALID,
                    path=path,
                    content=f"Code '{code}' is not valid",
                ))
                continue

            if rule.expired:
                messages.append(DiscountMessage(
                    code=DiscountErrorCode.DISCOUNT_CODE_EXPIRED,
                    path=path,
                    content=f"Code '{code}' has expired",
                ))
                continue

            candidates.append((rule.priority, index, code, rule, path))

        candidates.sort(key=lambda c: (c[0], c[1]))
        exclusive = False
        for _, _, code, rule, path in candidates:
            if applied and (exclusive or not rule.combinable):
                messages.append(DiscountMessage(
                    code=DiscountErrorCode.DISCOUNT_CODE_COMBINATION_DISALLOWED,
                    path=path,
                    content=f"Code '{code}' cannot be combined with other discounts",
                ))
                continue

            amount = min(calculate_discount_amount(rule, subtotal), remaining)
            remaining -= amount
            exclusive = exclusive or not rule.combinable
            applied.append(AppliedDiscount(
                code=code,
                title=rule.title,
                amount=amount,
                priority=rule.priority,
                method=AllocationMethod.ACROSS,
            ))

        if messages:
            logger.info(f"Rejected discount codes: {[m.code.value for m in messages]}")

        return applied, messages, subtotal - remaining


def is_discount_active(platform_capabilities: list[str]) -> bool:
    """Check if Discount is in the capability intersection."""
    return DISCOUNT_CAPABILITY_NAME in platform_capabilities


# Sample discount codes for demo
SAMPLE_DISCOUNTS = {
    "SAVE10": DiscountRule(title="$10 Off Your Order", amount=1000, priority=1),
    "SAVE20": DiscountRule(title="$20 Off Your Order", amount=2000, priority=1),
    "PERCENT10": DiscountRule(title="10% Off", percent=10, priority=1),
    "WELCOME": DiscountRule(title="Welcome Discount", amount=500, priority=2, combinable=False),
    "EXPIRED": DiscountRule(title="Expired Code", amount=1000, expired=True),
}
