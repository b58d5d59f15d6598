import hashlib
import hmac

import pytest
import requests

from errors import PaymentError
from orders import OrderService
from payments import NOT_CONFIGURED, RAZORPAY_ORDERS_URL, PaymentBridge, RazorpayGateway, to_minor_units
from stores import CropStore, OrderStore
from tests.conftest import FakeHttp


def make_bridge(mongo_db, gateway):
    crops = CropStore(mongo_db)
    bridge = PaymentBridge(gateway, OrderService(OrderStore(mongo_db), crops), crops)
    crop = crops.insert("farmer-1", {"name": "Mango", "price_per_kg": 120, "quantity_kg": 10})
    return bridge, crops, crop


def test_unconfigured_gateway_signals_not_configured():
    gw = RazorpayGateway(key_id="", key_secret="")
    assert gw.create_order(100, "c1", 1)["error"] == NOT_CONFIGURED


def test_not_configured_falls_back_to_simulated_paid_order(mongo_db):
    bridge, crops, crop = make_bridge(mongo_db, RazorpayGateway(key_id="", key_secret=""))
    result = bridge.checkout("buyer-1", crop.id, 2, "Market Yard, Pune")
    assert result.mode == "simulated"
    order = result.order
    assert order.status == "paid"
    assert order.simulated is True
    assert order.total_price == 240
    assert order.razorpay_order_id.startswith("sim_order_")
    assert order.razorpay_payment_id.startswith("sim_pay_")
    assert crops.get(crop.id).quantity_kg == 8


def test_unreachable_gateway_falls_back_to_simulation(mongo_db):
    http = FakeHttp(error=requests.ConnectTimeout("stalled"))
    bridge, _, crop = make_bridge(mongo_db, RazorpayGateway("rzp_test", "secret", timeout=3, http=http))
    result = bridge.checkout("buyer-1", crop.id, 1, "Pune")
    assert result.mode == "simulated"
    assert result.order.status == "paid"
    assert http.posts[0]["timeout"] == 3


def test_configured_gateway_returns_widget_options(mongo_db):
    http = FakeHttp(response={"id": "order_abc", "amount": 36000})
    bridge, crops, crop = make_bridge(mongo_db, RazorpayGateway("rzp_test", "secret", http=http))
    result = bridge.checkout("buyer-1", crop.id, 3, "Pune", contact="+911234567890")

    assert result.mode == "gateway"
    assert result.order.status == "pending"
    assert result.order.razorpay_order_id == "order_abc"
    assert result.widget["key"] == "rzp_test"
    assert result.widget["amount"] == 36000
    assert result.widget["currency"] == "INR"
    assert result.widget["order_id"] == "order_abc"
    assert result.widget["prefill"] == {"contact": "+911234567890"}

    sent = http.posts[0]
    assert sent["url"] == RAZORPAY_ORDERS_URL
    assert sent["auth"] == ("rzp_test", "secret")
    assert sent["json"]["amount"] == 36000
    assert sent["json"]["notes"] == {"cropId": crop.id, "quantity": 3}
    # stock only moves once the payment is confirmed
    assert crops.get(crop.id).quantity_kg == 10


def test_confirm_with_valid_signature_marks_paid(mongo_db):
    http = FakeHttp(response={"id": "order_abc"})
    bridge, crops, crop = make_bridge(mongo_db, RazorpayGateway("rzp_test", "secret", http=http))
    order = bridge.checkout("buyer-1", crop.id, 1, "Pune").order
    signature = hmac.new(b"secret", b"order_abc|pay_123", hashlib.sha256).hexdigest()

    paid = bridge.confirm(order.id, "pay_123", signature)
    assert paid.status == "paid"
    assert paid.razorpay_payment_id == "pay_123"
    assert crops.get(crop.id).quantity_kg == 9


def test_confirm_rejects_bad_signature(mongo_db):
    http = FakeHttp(response={"id": "order_abc"})
    bridge, _, crop = make_bridge(mongo_db, RazorpayGateway("rzp_test", "secret", http=http))
    order = bridge.checkout("buyer-1", crop.id, 1, "Pune").order
    with pytest.raises(PaymentError):
        bridge.confirm(order.id, "pay_123", "forged")
    assert bridge.orders.get(order.id).status == "pending"


def test_dismissed_widget_cancels(mongo_db):
    http = FakeHttp(response={"id": "order_abc"})
    bridge, _, crop = make_bridge(mongo_db, RazorpayGateway("rzp_test", "secret", http=http))
    order = bridge.checkout("buyer-1", crop.id, 1, "Pune").order
    assert bridge.cancel(order.id).status == "cancelled"


def test_minor_units_rounding():
    assert to_minor_units(10.005) in (1000, 1001)
    assert to_minor_units(249.5) == 24950
