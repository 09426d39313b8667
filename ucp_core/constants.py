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

from dataclasses import dataclass


@dataclass
class Constants:

    UCP_VERSION = "2026-01-11"
    UCP_CHECKOUT_CAPABILITY = "dev.ucp.shopping.checkout"
    UCP_ORDER_CAPABILITY = "dev.ucp.shopping.order"
    UCP_DISCOUNT_EXTENSION = "dev.ucp.shopping.discount"
    UCP_BUYER_CONSENT_EXTENSION = "dev.ucp.shopping.buyer_consent"

    UCP_CHECKOUT_KEY = "checkout"
    UCP_ORDER_KEY = "order"

    # Webhook delivery headers
    DELIVERY_ID_HEADER = "UCP-Delivery-Id"
    EVENT_TOPIC_HEADER = "UCP-Event-Topic"
    SIGNATURE_HEADER = "Request-Signature"

    # Ledger namespaces
    NS_SESSIONS = "checkout_sessions"
    NS_ORDERS = "orders"
    NS_STOCK = "stock"
    NS_RESERVATIONS = "reservations"
    NS_IDEMPOTENCY = "idempotency"
    NS_TOKENS = "payment_tokens"
    NS_RECEIPTS = "payment_receipts"
    NS_TOKEN_AUDIT = "token_audit"
    NS_WEBHOOKS = "webhook_queue"
    NS_WEBHOOK_ENDPOINTS = "webhook_endpoints"
    NS_DEAD_LETTERS = "webhook_dead_letters"
    NS_WEBHOOK_ARCHIVE = "webhook_archive"

    # Webhook topics
    TOPIC_ORDER_CREATED = "order.created"
    TOPIC_ORDER_ADJUSTED = "order.adjusted"
    TOPIC_CHECKOUT_CANCELLED = "checkout.cancelled"


ORDER_TOPICS = [
    "order.created",
    "order.processing",
    "order.shipped",
    "order.in_transit",
    "order.delivered",
    "order.canceled",
    "order.adjusted",
]

DEFAULT_WEBHOOK_TOPICS = ORDER_TOPICS + ["checkout.cancelled"]
