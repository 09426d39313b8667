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
UCP MCP Binding for the checkout core

Exposes the checkout state machine as MCP tools, wrapping every result in
the UCP response envelope:

    {"status": "success", "ucp": {...}, "checkout": {...}, "order": {...}}
    {"status": "error", "errors": [{"code", "message", "severity", "next_action", "details"}]}

Tools implemented:
- create_checkout: Initiates a new checkout session
- get_checkout: Retrieves the current state of a checkout session
- update_checkout: Updates a checkout session
- mark_checkout_ready: Locks prices and reserves stock
- complete_checkout: Redeems the payment token and places the order
- cancel_checkout: Cancels a checkout session
- get_order: Retrieves an order
"""

import logging
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from ..config import Settings, load_settings
from ..constants import Constants
from ..discount import create_discount_capability
from ..engine import CommerceEngine, build_engine
from ..errors import PriceChangedError, UcpError
from ..models import (
    Buyer,
    CheckoutPatch,
    LineItemInput,
    PaymentCredential,
    PlatformConfig,
    PostalAddress,
)

constants = Constants()
logger = logging.getLogger(__name__)


# ============================================================================
# MCP Server Configuration
# ============================================================================

mcp = FastMCP("UCP_Checkout_Core_MCP_Server", stateless_http=True)


def configure_server(settings: Settings) -> FastMCP:
    """Bind the server to the configured host and port."""
    mcp.settings.host = settings.mcp_host
    mcp.settings.port = settings.mcp_port
    return mcp

_engine: Optional[CommerceEngine] = None


def set_engine(engine: Optional[CommerceEngine]) -> None:
    global _engine
    _engine = engine


def get_engine() -> CommerceEngine:
    """The engine the tools operate on, built from the environment on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(load_settings())
    return _engine


# ============================================================================
# Helper Functions
# ============================================================================

def _create_error_response(
    code: str,
    message: str,
    severity: str = "recoverable",
    details: Dict = None,
    next_action: str = "none",
) -> Dict:
    """Creates a UCP-compliant error response for the MCP binding."""
    return {
        "status": "error",
        "errors": [
            {
                "code": code,
                "message": message,
                "severity": severity,
                "next_action": next_action,
                "details": details or {}
            }
        ]
    }


def _error_from_exception(e: UcpError) -> Dict:
    response = _create_error_response(
        code=e.code,
        message=e.message,
        severity=e.severity.value,
        details=e.details,
        next_action=e.next_action.value,
    )
    response["errors"][0]["retryable"] = e.retryable
    if isinstance(e, PriceChangedError) and e.checkout is not None:
        response[constants.UCP_CHECKOUT_KEY] = e.checkout
    return response


def _create_ucp_metadata() -> Dict:
    """UCP metadata for checkout responses."""
    return {
        "version": constants.UCP_VERSION,
        "capabilities": [
            {
                "name": constants.UCP_CHECKOUT_CAPABILITY,
                "version": constants.UCP_VERSION,
                "spec": "https://ucp.dev/specification/checkout",
                "schema": "https://ucp.dev/schemas/shopping/checkout.json"
            },
            {
                "name": constants.UCP_ORDER_CAPABILITY,
                "version": constants.UCP_VERSION,
            },
            create_discount_capability(),
        ],
    }


def _create_success_response(checkout, order=None) -> Dict:
    """Creates a successful checkout response."""
    response = {
        "status": "success",
        "ucp": _create_ucp_metadata(),
        constants.UCP_CHECKOUT_KEY: checkout.model_dump(mode="json")
    }
    if order is not None:
        response[constants.UCP_ORDER_KEY] = order.model_dump(mode="json")
    return response


def _extract_ucp_profile(meta: Optional[Dict] = None) -> Optional[str]:
    """Extracts the UCP platform profile from the _meta structure."""
    if meta and "ucp" in meta and "profile" in meta["ucp"]:
        return meta["ucp"]["profile"]
    return None


def _line_item_input(line_item: Dict[str, Any]) -> LineItemInput:
    """
    Accepts either the UCP shape ``{"item": {"id", "price", "title"}, "quantity"}``
    or the flat shape ``{"sku", "quantity", "unit_price"}``.
    """
    if "item" in line_item:
        item = line_item.get("item") or {}
        return LineItemInput(
            sku=item.get("id", ""),
            quantity=line_item.get("quantity", 1),
            unit_price=item.get("price"),
            title=item.get("title"),
        )
    return LineItemInput.model_validate(line_item)


def _unexpected(operation: str) -> Dict:
    return _create_error_response(
        code="internal_error",
        message=f"An unexpected error occurred while trying to {operation}",
        severity="recoverable",
        next_action="retry_later",
    )


# ============================================================================
# UCP MCP Tools - Checkout Capability
# ============================================================================

@mcp.tool("create_checkout")
async def create_checkout(
    line_items: List[Dict[str, Any]],
    buyer: Optional[Dict[str, Any]] = None,
    shipping_address: Optional[Dict[str, Any]] = None,
    discount_codes: Optional[List[str]] = None,
    webhook_url: Optional[str] = None,
    ucp_meta: Optional[Dict[str, Any]] = None,
) -> Dict:
    """
    Creates a new checkout session.

    Args:
        line_items: Items being checked out, each with 'item' (with 'id') and 'quantity'
        buyer: Optional buyer information, including consent
        shipping_address: Optional fulfillment destination
        discount_codes: Optional discount codes to apply
        webhook_url: Platform endpoint for order lifecycle webhooks
        ucp_meta: Metadata containing UCP platform profile

    Returns:
        dict: Checkout object with status "success" or error response
    """
    ucp_profile = _extract_ucp_profile(ucp_meta)
    logger.info(f"create_checkout called with profile: {ucp_profile}")

    if not line_items:
        return _create_error_response(
            code="invalid_request",
            message="At least one line item is required",
            next_action="fix_request",
        )

    try:
        checkout = await get_engine().checkout.create(
            items=[_line_item_input(li) for li in line_items],
            buyer=Buyer.model_validate(buyer) if buyer else None,
            shipping_address=PostalAddress.model_validate(shipping_address) if shipping_address else None,
            discount_codes=discount_codes,
            platform=PlatformConfig(webhook_url=webhook_url) if webhook_url else None,
        )
        logger.info(f"Checkout created with id: {checkout.id}")
        return _create_success_response(checkout)

    except UcpError as e:
        logger.info(f"create_checkout rejected: {e.code}")
        return _error_from_exception(e)
    except ValueError as e:
        logger.exception("Invalid create_checkout request")
        return _create_error_response(
            code="invalid_request",
            message=str(e),
            next_action="fix_request",
        )
    except Exception:
        logger.exception("Unexpected error creating checkout")
        return _unexpected("create checkout")


@mcp.tool("get_checkout")
async def get_checkout(
    id: str,
    ucp_meta: Optional[Dict[str, Any]] = None,
) -> Dict:
    """
    Retrieves the current state of a checkout session.

    Args:
        id: The unique identifier of the checkout session
        ucp_meta: Metadata containing UCP platform profile

    Returns:
        dict: Checkout object with current state or error response
    """
    ucp_profile = _extract_ucp_profile(ucp_meta)
    logger.info(f"get_checkout called for id: {id}, profile: {ucp_profile}")

    try:
        checkout = await get_engine().checkout.get(id)
        return _create_success_response(checkout)
    except UcpError as e:
        return _error_from_exception(e)
    except Exception:
        logger.exception("Unexpected error retrieving checkout")
        return _unexpected("retrieve checkout")


@mcp.tool("update_checkout")
async def update_checkout(
    id: str,
    line_items: Optional[List[Dict[str, Any]]] = None,
    buyer: Optional[Dict[str, Any]] = None,
    shipping_address: Optional[Dict[str, Any]] = None,
    discount_codes: Optional[List[str]] = None,
    webhook_url: Optional[str] = None,
    ucp_meta: Optional[Dict[str, Any]] = None,
) -> Dict:
    """
    Updates a checkout session. Only the fields supplied are changed.

    Args:
        id: The unique identifier of the checkout session
        line_items: Replacement line items
        buyer: Buyer fields to merge; consent is merged field by field
        shipping_address: Replacement fulfillment destination
        discount_codes: Replacement discount codes
        webhook_url: Platform endpoint for order lifecycle webhooks
        ucp_meta: Metadata containing UCP platform profile

    Returns:
        dict: Updated checkout object or error response
    """
    ucp_profile = _extract_ucp_profile(ucp_meta)
    logger.info(f"update_checkout called for id: {id}, profile: {ucp_profile}")

    try:
        patch = CheckoutPatch(
            line_items=[_line_item_input(li) for li in line_items] if line_items is not None else None,
            buyer=Buyer.model_validate(buyer) if buyer else None,
            shipping_address=PostalAddress.model_validate(shipping_address) if shipping_address else None,
            discount_codes=discount_codes,
            platform=PlatformConfig(webhook_url=webhook_url) if webhook_url else None,
        )
        checkout = await get_engine().checkout.update(id, patch)
        return _create_success_response(checkout)

    except UcpError as e:
        logger.info(f"update_checkout rejected for {id}: {e.code}")
        return _error_from_exception(e)
    except ValueError as e:
        logger.exception("Invalid update_checkout request")
        return _create_error_response(
            code="invalid_request",
            message=str(e),
            next_action="fix_request",
        )
    except Exception:
        logger.exception("Unexpected error updating checkout")
        return _unexpected("update checkout")


@mcp.tool("mark_checkout_ready")
async def mark_checkout_ready(
    id: str,
    ucp_meta: Optional[Dict[str, Any]] = None,
) -> Dict:
    """
    Re-prices the checkout from the catalog, reserves stock and locks the price.

    Args:
        id: The unique identifier of the checkout session
        ucp_meta: Metadata containing UCP platform profile

    Returns:
        dict: Checkout in ready_for_complete, or error response (price_changed
        carries the re-priced checkout)
    """
    ucp_profile = _extract_ucp_profile(ucp_meta)
    logger.info(f"mark_checkout_ready called for id: {id}, profile: {ucp_profile}")

    try:
        checkout = await get_engine().checkout.mark_ready_for_complete(id)
        return _create_success_response(checkout)
    except UcpError as e:
        logger.info(f"mark_checkout_ready rejected for {id}: {e.code}")
        return _error_from_exception(e)
    except Exception:
        logger.exception("Unexpected error preparing checkout")
        return _unexpected("prepare checkout")


@mcp.tool("complete_checkout")
async def complete_checkout(
    id: str,
    payment: Dict[str, Any],
    idempotency_key: str,
    ucp_meta: Optional[Dict[str, Any]] = None,
) -> Dict:
    """
    Finalizes the checkout and places the order.

    Args:
        id: The unique identifier of the checkout session
        payment: Payment credential with 'token_id' and an optional 'proof'
            (detached JWS over the redemption claims)
        idempotency_key: Client key; retries with the same key return the same order
        ucp_meta: Metadata containing UCP platform profile

    Returns:
        dict: Completed checkout and order, or error response
    """
    ucp_profile = _extract_ucp_profile(ucp_meta)
    logger.info(f"complete_checkout called for id: {id}, profile: {ucp_profile}")

    if not idempotency_key:
        return _create_error_response(
            code="invalid_request",
            message="idempotency_key is required",
            next_action="fix_request",
        )

    try:
        result = await get_engine().checkout.complete(
            id,
            PaymentCredential.model_validate(payment or {}),
            idempotency_key,
        )
        logger.info(f"Checkout {id} completed as order {result.order.id}")
        return _create_success_response(result.checkout, result.order)

    except UcpError as e:
        logger.info(f"complete_checkout failed for {id}: {e.code}")
        return _error_from_exception(e)
    except ValueError as e:
        logger.exception("Invalid complete_checkout request")
        return _create_error_response(
            code="invalid_request",
            message=str(e),
            next_action="fix_request",
        )
    except Exception:
        logger.exception("Unexpected error completing checkout")
        return _unexpected("complete checkout")


@mcp.tool("cancel_checkout")
async def cancel_checkout(
    id: str,
    ucp_meta: Optional[Dict[str, Any]] = None,
) -> Dict:
    """
    Cancels a checkout session and releases its stock.

    Args:
        id: The unique identifier of the checkout session
        ucp_meta: Metadata containing UCP platform profile

    Returns:
        dict: Cancelled checkout object or error response
    """
    ucp_profile = _extract_ucp_profile(ucp_meta)
    logger.info(f"cancel_checkout called for id: {id}, profile: {ucp_profile}")

    try:
        checkout = await get_engine().checkout.cancel(id)
        return _create_success_response(checkout)
    except UcpError as e:
        logger.info(f"cancel_checkout rejected for {id}: {e.code}")
        return _error_from_exception(e)
    except Exception:
        logger.exception("Unexpected error canceling checkout")
        return _unexpected("cancel checkout")


# ============================================================================
# UCP MCP Tools - Order Capability
# ============================================================================

@mcp.tool("get_order")
async def get_order(
    id: str,
    ucp_meta: Optional[Dict[str, Any]] = None,
) -> Dict:
    """
    Retrieves an order placed by a completed checkout.

    Args:
        id: The order identifier
        ucp_meta: Metadata containing UCP platform profile

    Returns:
        dict: Order object or error response
    """
    logger.info(f"get_order called for id: {id}")

    try:
        order = await get_engine().orders.get(id)
        return {
            "status": "success",
            "ucp": _create_ucp_metadata(),
            constants.UCP_ORDER_KEY: order.model_dump(mode="json"),
        }
    except UcpError as e:
        return _error_from_exception(e)
    except Exception:
        logger.exception("Unexpected error retrieving order")
        return _unexpected("retrieve order")
