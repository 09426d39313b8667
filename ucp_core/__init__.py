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
UCP Checkout Core

Business-side checkout session orchestration and payment token exchange for
the Universal Commerce Protocol:

- CheckoutService: checkout session state machine and completion saga
- InventoryManager: time-bounded stock reservations
- TokenExchangeBroker: single-use payment token redemption
- WebhookDeliveryEngine: ordered, at-least-once order webhooks
- LedgerStore: versioned persistence for all of the above
"""

from .checkout import CheckoutService
from .config import Settings, load_settings
from .engine import CommerceEngine, build_engine
from .inventory import InventoryManager
from .orders import OrderLedger
from .store import InMemoryLedgerStore, LedgerStore, SqlLedgerStore, create_store
from .tokens import TokenExchangeBroker
from .webhooks import WebhookDeliveryEngine

__version__ = "0.1.0"

__all__ = [
    "CheckoutService",
    "CommerceEngine",
    "InMemoryLedgerStore",
    "InventoryManager",
    "LedgerStore",
    "OrderLedger",
    "Settings",
    "SqlLedgerStore",
    "TokenExchangeBroker",
    "WebhookDeliveryEngine",
    "build_engine",
    "create_store",
    "load_settings",
]
