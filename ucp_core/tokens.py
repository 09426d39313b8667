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
Token Exchange Broker

Validates and redeems payment tokens issued by a Credential Provider. A
token is bound to a PSP, a merchant, a maximum amount, a currency and an
expiry, and (when single-use) can be redeemed exactly once.

Validation order, first failure wins:
1. token exists and is not expired
2. token not already consumed
3. token's PSP matches the caller
4. token's merchant matches the caller
5. currency matches and amount is within the token limit
6. proof of authorization (if supplied) verifies against the merchant key

Check-not-consumed and mark-consumed happen under a per-token lock with a
versioned write, so two concurrent redemptions can never both succeed.
Every attempt is appended to the audit stream.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .clock import SystemClock
from .constants import Constants
from .errors import (
    AmountExceedsLimitError,
    CurrencyMismatchError,
    InvalidRequestError,
    InvalidSignatureError,
    MerchantMismatchError,
    PspMismatchError,
    ResourceNotFoundError,
    TokenAlreadyConsumedError,
    TokenError,
    TokenExpiredError,
    TokenNotFoundError,
    VersionConflictError,
)
from .locks import KeyedLock
from .models import PaymentReceipt, PaymentToken, ReceiptStatus, TokenAuditEntry
from .signing import KeyRegistry, verify_detached
from .store import MUST_NOT_EXIST, LedgerStore

logger = logging.getLogger(__name__)
constants = Constants()


def redemption_claims(
    token_id: str,
    merchant_id: str,
    psp_id: str,
    amount: int,
    currency: str,
    transaction_id: str,
) -> Dict[str, Any]:
    """The object a proof of authorization signs."""
    return {
        "token_id": token_id,
        "merchant_id": merchant_id,
        "psp_id": psp_id,
        "amount": amount,
        "currency": currency,
        "transaction_id": transaction_id,
    }


class TokenExchangeBroker:
    """
    Single-use payment token redemption.

    Args:
        store: Ledger holding tokens, receipts and the audit stream
        keys: Merchant public keys for proof-of-authorization checks
        clock: Clock used for expiry and timestamps
    """

    def __init__(self, store: LedgerStore, keys: Optional[KeyRegistry] = None, clock=None):
        self.store = store
        self.keys = keys or KeyRegistry()
        self.clock = clock or SystemClock()
        self._locks = KeyedLock("token")

    # ------------------------------------------------------------------
    # Credential Provider side
    # ------------------------------------------------------------------

    async def register(self, token: PaymentToken) -> PaymentToken:
        """Store a token issued by a Credential Provider."""
        try:
            await self.store.save(constants.NS_TOKENS, token.id, token, expected_version=MUST_NOT_EXIST)
        except VersionConflictError:
            raise InvalidRequestError(f"Payment token {token.id} already registered")
        return token

    async def issue(
        self,
        credential_provider_id: str,
        psp_id: str,
        merchant_id: str,
        max_amount: int,
        currency: str,
        ttl_seconds: float = 900,
        single_use: bool = True,
    ) -> PaymentToken:
        token = PaymentToken(
            id=f"tok_{uuid4().hex}",
            credential_provider_id=credential_provider_id,
            psp_id=psp_id,
            merchant_id=merchant_id,
            max_amount=max_amount,
            currency=currency,
            expires_at=self.clock.now() + timedelta(seconds=ttl_seconds),
            single_use=single_use,
        )
        return await self.register(token)

    async def get_token(self, token_id: str) -> Optional[PaymentToken]:
        loaded = await self.store.load(constants.NS_TOKENS, token_id, PaymentToken)
        return loaded[0] if loaded else None

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    async def redeem(
        self,
        token_id: str,
        merchant_id: str,
        psp_id: str,
        amount: int,
        currency: str,
        transaction_id: str,
        proof: Optional[str] = None,
    ) -> PaymentReceipt:
        """
        Redeem a payment token for a transaction.

        Args:
            token_id: Token issued by the Credential Provider
            merchant_id: Merchant the payment is for
            psp_id: PSP performing the redemption
            amount: Amount in minor units
            currency: ISO-4217 code
            transaction_id: Caller's transaction reference
            proof: Optional detached JWS over the redemption claims

        Returns:
            PaymentReceipt for the captured amount

        Raises:
            TokenError: A subtype naming the first failed check. The token is untouched.
        """
        if amount < 0:
            raise InvalidRequestError("Redemption amount cannot be negative")

        async with self._locks.hold(token_id):
            try:
                receipt = await self._redeem_locked(
                    token_id, merchant_id, psp_id, amount, currency, transaction_id, proof
                )
            except TokenError as e:
                await self._audit(token_id, merchant_id, psp_id, transaction_id, e.code)
                logger.info(f"Token {token_id} redemption rejected for {transaction_id}: {e.code}")
                raise
            await self._audit(token_id, merchant_id, psp_id, transaction_id, "redeemed")

        logger.info(f"Token {token_id} redeemed for {transaction_id}: {amount} {currency} ({receipt.id})")
        return receipt

    async def _redeem_locked(
        self,
        token_id: str,
        merchant_id: str,
        psp_id: str,
        amount: int,
        currency: str,
        transaction_id: str,
        proof: Optional[str],
    ) -> PaymentReceipt:
        now = self.clock.now()
        loaded = await self.store.load(constants.NS_TOKENS, token_id, PaymentToken)
        if loaded is None:
            raise TokenNotFoundError(token_id)
        token, version = loaded

        if now >= token.expires_at:
            raise TokenExpiredError(token_id)
        if token.consumed_at is not None:
            raise TokenAlreadyConsumedError(token_id)
        if token.psp_id != psp_id:
            raise PspMismatchError(token_id, psp_id)
        if token.merchant_id != merchant_id:
            raise MerchantMismatchError(token_id, merchant_id)
        if token.currency != currency:
            raise CurrencyMismatchError(token_id, currency, token.currency)
        if amount > token.max_amount:
            raise AmountExceedsLimitError(token_id, amount, token.max_amount)

        if proof is not None:
            public_key = self.keys.get(merchant_id)
            if public_key is None:
                raise InvalidSignatureError(token_id, f"no public key registered for {merchant_id}")
            claims = redemption_claims(token_id, merchant_id, psp_id, amount, currency, transaction_id)
            is_valid, error = verify_detached(proof, claims, public_key)
            if not is_valid:
                raise InvalidSignatureError(token_id, error)

        if token.single_use:
            token.consumed_at = now
            token.consumed_by = transaction_id
            try:
                await self.store.save(constants.NS_TOKENS, token_id, token, expected_version=version)
            except VersionConflictError:
                # Another process consumed it between our read and write
                raise TokenAlreadyConsumedError(token_id)

        receipt = PaymentReceipt(
            id=f"rcpt_{uuid4().hex}",
            token_id=token_id,
            transaction_id=transaction_id,
            merchant_id=merchant_id,
            psp_id=psp_id,
            amount=amount,
            currency=currency,
            redeemed_at=now,
        )
        await self.store.save(constants.NS_RECEIPTS, receipt.id, receipt, expected_version=MUST_NOT_EXIST)
        return receipt

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def get_receipt(self, receipt_id: str) -> PaymentReceipt:
        loaded = await self.store.load(constants.NS_RECEIPTS, receipt_id, PaymentReceipt)
        if loaded is None:
            raise ResourceNotFoundError(f"Payment receipt not found: {receipt_id}")
        return loaded[0]

    async def find_receipt(self, token_id: str, transaction_id: Optional[str] = None) -> Optional[PaymentReceipt]:
        """Find the receipt a token produced, optionally for one transaction."""
        for receipt, _ in await self.store.load_all(constants.NS_RECEIPTS, PaymentReceipt):
            if receipt.token_id != token_id:
                continue
            if transaction_id is not None and receipt.transaction_id != transaction_id:
                continue
            return receipt
        return None

    async def void(self, receipt_id: str, reason: str) -> PaymentReceipt:
        """Compensate a redemption. The token stays consumed."""
        receipt = await self.get_receipt(receipt_id)

        async with self._locks.hold(receipt.token_id):
            receipt, version = await self.store.load(constants.NS_RECEIPTS, receipt_id, PaymentReceipt)
            if receipt.status == ReceiptStatus.VOIDED:
                return receipt

            receipt.status = ReceiptStatus.VOIDED
            receipt.voided_at = self.clock.now()
            receipt.void_reason = reason
            await self.store.save(constants.NS_RECEIPTS, receipt_id, receipt, expected_version=version)
            await self._audit(receipt.token_id, receipt.merchant_id, receipt.psp_id, receipt.transaction_id, "voided")

        logger.warning(f"Receipt {receipt_id} voided: {reason}")
        return receipt

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _audit(
        self,
        token_id: str,
        merchant_id: str,
        psp_id: str,
        transaction_id: Optional[str],
        outcome: str,
    ) -> None:
        entry = TokenAuditEntry(
            token_id=token_id,
            merchant_id=merchant_id,
            psp_id=psp_id,
            transaction_id=transaction_id,
            outcome=outcome,
            timestamp=self.clock.now(),
        )
        await self.store.append(constants.NS_TOKEN_AUDIT, entry.model_dump(mode="json"))

    async def audit_log(self, token_id: Optional[str] = None) -> List[TokenAuditEntry]:
        entries = [TokenAuditEntry.model_validate(e) for e in await self.store.read_stream(constants.NS_TOKEN_AUDIT)]
        if token_id is not None:
            entries = [e for e in entries if e.token_id == token_id]
        return entries
