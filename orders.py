"""
Order lifecycle.

    pending -> paid -> delivered
    pending | paid -> cancelled

The total is fixed when the order is placed (quantity x the crop's price at
that moment) and never recomputed.
"""
import logging
from typing import Any, Dict, List, Optional

from database import new_id
from errors import InputError, NotFoundError, StatusTransitionError
from schemas import ORDER_STATUSES, Crop, Order
from stores import CropStore, OrderStore

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": {"paid", "cancelled"},
    "paid": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}


def can_transition(current: str, requested: str) -> bool:
    return requested in TRANSITIONS.get(current, set())


class OrderService:
    def __init__(self, orders: OrderStore, crops: CropStore):
        self.orders = orders
        self.crops = crops

    def place(self, buyer_id: str, crop: Crop, quantity: float, address: str) -> Order:
        address = (address or "").strip()
        if not address:
            raise InputError("Delivery address is required")
        if quantity is None or quantity <= 0:
            raise InputError("Quantity must be > 0")
        if not crop.available or quantity > crop.quantity_kg:
            raise InputError("Insufficient stock")
        if crop.farmer_id == buyer_id:
            raise InputError("You cannot buy your own crop")
        order = Order(
            id=new_id(),
            buyer_id=buyer_id,
            farmer_id=crop.farmer_id,
            crop_id=crop.id,
            quantity_kg=quantity,
            price_per_kg=crop.price_per_kg,
            total_price=round(quantity * crop.price_per_kg, 2),
            status="pending",
            delivery_address=address,
        )
        order = self.orders.insert(order)
        logger.info("order_placed order_id=%s buyer_id=%s crop_id=%s total=%s",
                    order.id, buyer_id, crop.id, order.total_price)
        return order

    def get(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def transition(self, order_id: str, status: str, fields: Optional[Dict[str, Any]] = None) -> Order:
        if status not in ORDER_STATUSES:
            raise InputError(f"Unknown status {status}")
        order = self.get(order_id)
        if not can_transition(order.status, status):
            raise StatusTransitionError(order.status, status)
        updated = self.orders.set_status(order_id, order.status, status, fields)
        if updated is None:
            # somebody else moved it first
            latest = self.get(order_id)
            raise StatusTransitionError(latest.status, status)
        logger.info("order_status order_id=%s from=%s to=%s", order_id, order.status, status)
        return updated

    def mark_paid(self, order_id: str, gateway_order_id: str, payment_id: str, simulated: bool = False) -> Order:
        order = self.transition(order_id, "paid", {
            "razorpay_order_id": gateway_order_id,
            "razorpay_payment_id": payment_id,
            "simulated": simulated,
        })
        self.orders.record_transaction(order)
        if self.crops.take_stock(order.crop_id, order.quantity_kg) is None:
            logger.warning("order_stock_short order_id=%s crop_id=%s qty=%s", order.id, order.crop_id, order.quantity_kg)
        return order

    def list_for(self, profile_id: str, role: str) -> List[Order]:
        if role == "farmer":
            return self.orders.list_for_farmer(profile_id)
        return self.orders.list_for_buyer(profile_id)

    def farmer_stats(self, farmer_id: str) -> Dict[str, Any]:
        crops = self.crops.list_for_farmer(farmer_id)
        orders = self.orders.list_for_farmer(farmer_id)
        revenue = sum(o.total_price for o in orders if o.status in ("paid", "delivered"))
        return {
            "crops": len(crops),
            "orders": len(orders),
            "pending_deliveries": sum(1 for o in orders if o.status == "paid"),
            "revenue": round(revenue, 2),
        }
