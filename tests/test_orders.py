import pytest

from errors import InputError, StatusTransitionError
from orders import OrderService, can_transition
from stores import CropStore, OrderStore


@pytest.fixture
def crops(mongo_db):
    return CropStore(mongo_db)


@pytest.fixture
def service(mongo_db, crops):
    return OrderService(OrderStore(mongo_db), crops)


@pytest.fixture
def crop(crops):
    return crops.insert("farmer-1", {"name": "Wheat", "price_per_kg": 25.5, "quantity_kg": 100})


@pytest.mark.parametrize("current,requested,ok", [
    ("pending", "paid", True),
    ("pending", "cancelled", True),
    ("paid", "delivered", True),
    ("paid", "cancelled", True),
    ("pending", "delivered", False),
    ("delivered", "cancelled", False),
    ("cancelled", "paid", False),
    ("paid", "pending", False),
])
def test_transition_table(current, requested, ok):
    assert can_transition(current, requested) is ok


def test_total_is_snapshot_of_price(service, crops, crop):
    order = service.place("buyer-1", crop, 4, "12 Market Road")
    assert order.status == "pending"
    assert order.total_price == 102.0
    crops.update(crop.id, {"price_per_kg": 99})
    assert service.get(order.id).total_price == 102.0


@pytest.mark.parametrize("qty,address", [(0, "Pune"), (101, "Pune"), (1, "   ")])
def test_place_validates(service, crop, qty, address):
    with pytest.raises(InputError):
        service.place("buyer-1", crop, qty, address)


def test_farmer_cannot_buy_own_crop(service, crop):
    with pytest.raises(InputError):
        service.place("farmer-1", crop, 1, "Farm")


def test_mark_paid_records_payment_and_takes_stock(service, crops, crop, mongo_db):
    order = service.place("buyer-1", crop, 10, "Pune")
    paid = service.mark_paid(order.id, "order_X", "pay_X")
    assert paid.status == "paid"
    assert paid.razorpay_payment_id == "pay_X"
    assert crops.get(crop.id).quantity_kg == 90
    assert mongo_db["transactions"].count_documents({"order_id": order.id}) == 1


def test_lifecycle_and_terminal_states(service, crop):
    order = service.place("buyer-1", crop, 1, "Pune")
    with pytest.raises(StatusTransitionError):
        service.transition(order.id, "delivered")
    service.mark_paid(order.id, "o", "p")
    delivered = service.transition(order.id, "delivered")
    assert delivered.status == "delivered"
    with pytest.raises(StatusTransitionError):
        service.transition(order.id, "cancelled")


def test_farmer_stats(service, crop):
    a = service.place("buyer-1", crop, 2, "Pune")
    service.place("buyer-2", crop, 3, "Nagpur")
    service.mark_paid(a.id, "o", "p")
    stats = service.farmer_stats("farmer-1")
    assert stats == {"crops": 1, "orders": 2, "pending_deliveries": 1, "revenue": 51.0}
