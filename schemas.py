"""
Database Schemas for Farm2Market

Each Pydantic model maps to a MongoDB collection:

- Profile -> "profiles"
- Crop -> "crops"
- ChatThread -> "chats"
- Message -> "messages"
- Order -> "orders"
- Transaction -> "transactions"
- OtpChallenge -> "otp_challenges"

The `id` field is stored as `_id`.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, get_args

from pydantic import BaseModel, Field, field_validator

Role = Literal["admin", "farmer", "buyer"]
OrderStatus = Literal["pending", "paid", "delivered", "cancelled"]

ROLES = get_args(Role)
ORDER_STATUSES = get_args(OrderStatus)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def from_doc(model, doc: Optional[Dict[str, Any]]):
    """Build a model from a Mongo document, mapping `_id` to `id`."""
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return model.model_validate(d)


def to_doc(model: BaseModel) -> Dict[str, Any]:
    d = model.model_dump()
    d["_id"] = d.pop("id")
    return d


# People: one row per registered phone number
class Profile(BaseModel):
    id: str
    phone: Optional[str] = Field(None, description="E.164 phone number")
    name: Optional[str] = Field(None, description="Display name")
    role: Optional[Role] = None
    language: str = Field("en", description="Preferred UI language")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.name) and self.role is not None


# Produce listed by farmers
class Crop(BaseModel):
    id: str
    farmer_id: str
    name: str
    description: Optional[str] = None
    price_per_kg: float = Field(..., gt=0)
    quantity_kg: float = Field(..., ge=0)
    image_url: Optional[str] = None
    location: Optional[str] = None
    available: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# One conversation per (buyer, farmer, crop)
class ChatThread(BaseModel):
    id: str
    buyer_id: str
    farmer_id: str
    crop_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def other_party(self, sender_id: str) -> Optional[str]:
        return self.buyer_id if sender_id == self.farmer_id else self.farmer_id


class Message(BaseModel):
    id: str
    chat_id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: Optional[datetime] = None
    seq: int = Field(0, description="Insertion order, breaks created_at ties")
    read: bool = False

    @field_validator("created_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Mongo hands back naive UTC unless the client is tz_aware, and keeps
        # only milliseconds; live rows must compare the same as stored ones
        if v is None:
            return v
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.replace(microsecond=v.microsecond // 1000 * 1000)

    @property
    def sort_key(self):
        return (self.created_at or _EPOCH, self.seq, self.id)


class Order(BaseModel):
    id: str
    buyer_id: str
    farmer_id: str
    crop_id: str
    quantity_kg: float = Field(..., gt=0)
    price_per_kg: float = Field(..., gt=0, description="Crop price at order time")
    total_price: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    delivery_address: str
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    simulated: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Payment record written when an order is paid
class Transaction(BaseModel):
    id: str
    order_id: str
    razorpay_payment_id: str
    amount: float
    status: str = "captured"
    created_at: Optional[datetime] = None


class OtpChallenge(BaseModel):
    phone: str
    code_hash: str
    expires_at: datetime
    attempts: int = 0
