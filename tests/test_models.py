from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from ucp_core.models import (
    Adjustment,
    Buyer,
    BuyerConsent,
    CheckoutSession,
    FulfillmentEvent,
    LineItem,
    LineItemInput,
    Order,
    OrderLineItem,
    Totals,
    merge_buyer,
    merge_consent,
)

NOW = datetime(2026, 1, 11, 12, 0, tzinfo=timezone.utc)


def test_totals_must_add_up():
    totals = Totals.compute("USD", subtotal=5000, tax=400, shipping=500, discount=1000)
    assert totals.total == 4900

    with pytest.raises(ValidationError):
        Totals(currency="USD", subtotal=5000, total=4000)


def test_money_is_non_negative_minor_units():
    with pytest.raises(ValidationError):
        LineItemInput(sku="rose", quantity=0)
    with pytest.raises(ValidationError):
        LineItem(id="li_1", sku="rose", quantity=1, unit_price=-1, currency="USD")
    with pytest.raises(ValidationError):
        Totals.compute("usd", subtotal=100)


def test_merge_consent_keeps_unset_fields():
    merged = merge_consent(BuyerConsent(analytics=True, marketing=True), BuyerConsent(marketing=False))

    assert merged.to_dict() == {"analytics": True, "marketing": False}
    assert merge_consent(None, BuyerConsent(analytics=False)).analytics is False
    assert not BuyerConsent().has_any_consent()


def test_merge_buyer():
    merged = merge_buyer(
        Buyer(email="a@example.com", first_name="Ann"),
        Buyer(first_name="Anne", consent=BuyerConsent(sale_of_data=False)),
    )

    assert merged.email == "a@example.com"
    assert merged.first_name == "Anne"
    assert merged.consent.sale_of_data is False


def test_quantities_by_sku_aggregates_lines():
    session = CheckoutSession(
        id="chk_1",
        currency="USD",
        line_items=[
            LineItem(id="li_1", sku="rose", quantity=2, unit_price=100, currency="USD"),
            LineItem(id="li_2", sku="vase", quantity=1, unit_price=900, currency="USD"),
            LineItem(id="li_3", sku="rose", quantity=3, unit_price=100, currency="USD"),
        ],
        totals=Totals.compute("USD", subtotal=1400),
        created_at=NOW,
        updated_at=NOW,
    )

    assert session.quantities_by_sku() == {"rose": 5, "vase": 1}
    assert not session.is_terminal


def test_order_line_items_are_immutable():
    item = OrderLineItem(id="li_1", sku="rose", quantity=1, unit_price=100, currency="USD")
    with pytest.raises(ValidationError):
        item.quantity = 2


def test_order_status_follows_events_and_refunds():
    order = Order.model_validate({
        "id": "order_1",
        "checkout_id": "chk_1",
        "line_items": [],
        "totals": {"currency": "USD", "subtotal": 1000, "total": 1000},
        "created_at": NOW,
        "updated_at": NOW,
    })
    assert order.derive_status() == "processing"

    order.fulfillment.events.append(FulfillmentEvent(id="evt_1", type="shipped", occurred_at=NOW))
    assert order.derive_status() == "shipped"

    order.adjustments.append(Adjustment(id="adj_1", type="refund", amount=1000, currency="USD", occurred_at=NOW))
    assert order.derive_status() == "refunded"
