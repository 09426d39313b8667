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
UCP MCP Server Package

MCP (Model Context Protocol) transport binding for the checkout core.

Checkout tools:
- create_checkout, get_checkout, update_checkout
- mark_checkout_ready, complete_checkout, cancel_checkout

Order tools:
- get_order
"""

from .streamable_http_server import (
    cancel_checkout,
    complete_checkout,
    configure_server,
    create_checkout,
    get_checkout,
    get_engine,
    get_order,
    mark_checkout_ready,
    mcp,
    set_engine,
    update_checkout,
)

__all__ = [
    "mcp",
    "configure_server",
    "set_engine",
    "get_engine",
    "create_checkout",
    "get_checkout",
    "update_checkout",
    "mark_checkout_ready",
    "complete_checkout",
    "cancel_checkout",
    "get_order",
]
