"""
Payment bridge to Razorpay.

The gateway order is minted server side; the browser widget collects the
payment and the client posts the result back to /orders/{id}/confirm.
Without credentials, or when the gateway cannot be reached, checkout falls
back to a simulated payment so ordering keeps working in test mode.
"""
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

import config
from errors import InputError, NotFoundError, PaymentError, StatusTransitionError
from orders import OrderService
from schemas import Order
from stores import CropStore

logger = logging.getLogger(__name__)

RAZORPAY_ORDERS_URL = "https://api.razorpay.com/v1/orders"
NOT_CONFIGURED = "RAZORPAY_NOT_CONFIGURED"
CURRENCY = "INR"
MERCHANT_NAME = "Farm2Market"


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def _now_ms() -> int:
    return int(time.time() * 1000)


class RazorpayGateway:
    def __init__(self, key_id: Optional[str] = None, key_secret: Optional[str] = None,
                 timeout: Optional[float] = None, http: Optional[requests.Session] = None):
        self.key_id = key_id if key_id is not None else config.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else config.RAZORPAY_KEY_SECRET
        self.timeout = timeout or config.PAYMENT_TIMEOUT_SECONDS
        self.http = http or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def create_order(self, amount: float, crop_id: str, quantity: float) -> Dict[str, Any]:
        if not self.configured:
            logger.warning("razorpay_not_configured using simulated payment mode")
            return {
                "error": NOT_CONFIGURED,
                "message": "Razorpay credentials not configured. Using simulated payment mode.",
            }
        payload = {
            "amount": to_minor_units(amount),
            "currency": CURRENCY,
            "receipt": f"order_{_now_ms()}",
            "notes": {"cropId": crop_id, "quantity": quantity},
        }
        logger.info("razorpay_create_order amount=%s", payload["amount"])
        try:
            r = self.http.post(RAZORPAY_ORDERS_URL, json=payload, auth=(self.key_id, self.key_secret), timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except requests.RequestException as e:
            logger.error("razorpay_error error=%s", e)
            raise PaymentError("Failed to create Razorpay order") from e
        except ValueError as e:
            raise PaymentError("Razorpay returned an unreadable response") from e
        if not data.get("id"):
            raise PaymentError("Razorpay response has no order id")
        logger.info("razorpay_order_created id=%s", data["id"])
        return data

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        if not self.configured:
            return False
        expected = hmac.new(self.key_secret.encode(), f"{gateway_order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature or "")


@dataclass
class CheckoutResult:
    order: Order
    mode: str  # "gateway" or "simulated"
    widget: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"mode": self.mode, "order": self.order.model_dump(), "widget": self.widget or None}


class PaymentBridge:
    def __init__(self, gateway: RazorpayGateway, orders: OrderService, crops: CropStore):
        self.gateway = gateway
        self.orders = orders
        self.crops = crops

    def checkout(self, buyer_id: str, crop_id: str, quantity: float, address: str, contact: Optional[str] = None) -> CheckoutResult:
        crop = self.crops.get(crop_id)
        if crop is None:
            raise NotFoundError("Crop not found")
        order = self.orders.place(buyer_id, crop, quantity, address)

        try:
            gw = self.gateway.create_order(order.total_price, crop.id, quantity)
        except PaymentError:
            logger.exception("payment_gateway_unreachable order_id=%s", order.id)
            gw = {"error": "unreachable"}
        if gw.get("error") or not gw.get("id"):
            return CheckoutResult(order=self._simulate(order), mode="simulated")

        order = self.orders.orders.attach_gateway_order(order.id, gw["id"]) or order
        widget = {
            "key": self.gateway.key_id,
            "amount": to_minor_units(order.total_price),
            "currency": CURRENCY,
            "order_id": gw["id"],
            "name": MERCHANT_NAME,
            "description": f"Purchase: {crop.name}",
            "prefill": {"contact": contact or ""},
        }
        return CheckoutResult(order=order, mode="gateway", widget=widget)

    def _simulate(self, order: Order) -> Order:
        stamp = _now_ms()
        logger.info("payment_simulated order_id=%s", order.id)
        return self.orders.mark_paid(order.id, f"sim_order_{stamp}", f"sim_pay_{stamp}", simulated=True)

    def confirm(self, order_id: str, payment_id: str, signature: Optional[str] = None) -> Order:
        order = self.orders.get(order_id)
        if not payment_id:
            raise InputError("Payment id is required")
        if order.status != "pending":
            raise StatusTransitionError(order.status, "paid")
        if not order.razorpay_order_id:
            raise InputError("Order has no gateway payment to confirm")
        if not self.gateway.verify_signature(order.razorpay_order_id, payment_id, signature or ""):
            logger.warning("payment_signature_invalid order_id=%s", order_id)
            raise PaymentError("Payment signature mismatch")
        return self.orders.mark_paid(order.id, order.razorpay_order_id, payment_id)

    def cancel(self, order_id: str) -> Order:
        return self.orders.transition(order_id, "cancelled")
