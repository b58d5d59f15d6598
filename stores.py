"""
MongoDB-backed stores.

Each store wraps one or two collections and speaks in schema models.
pymongo failures are turned into StoreError (ConflictError for unique
index violations) so callers never see driver exceptions. Reads are
retried with a short backoff; writes are not.
"""
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from database import new_id, utcnow
from errors import ConflictError, StoreError
from live_feed import InsertCallback, LiveFeed, Subscription
from schemas import ChatThread, Crop, Message, Order, Profile, Transaction, from_doc, to_doc

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_retry(op: str, fn: Callable[[], T], attempts: Optional[int] = None, backoff: Optional[float] = None) -> T:
    attempts = attempts or config.STORE_READ_ATTEMPTS
    backoff = config.STORE_RETRY_BACKOFF_SECONDS if backoff is None else backoff
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except PyMongoError as e:
            if attempt == attempts:
                logger.error("store_read_failed op=%s attempts=%s error=%s", op, attempts, e)
                raise StoreError(f"{op} failed: {e}") from e
            logger.warning("store_read_retry op=%s attempt=%s error=%s", op, attempt, e)
            time.sleep(backoff * (2 ** (attempt - 1)))
    raise StoreError(f"{op} failed")  # attempts < 1


def _write(op: str, fn: Callable[[], T]) -> T:
    try:
        return fn()
    except DuplicateKeyError as e:
        logger.warning("store_conflict op=%s error=%s", op, e)
        raise ConflictError(f"{op} conflicts with an existing row") from e
    except PyMongoError as e:
        logger.exception("store_write_failed op=%s", op)
        raise StoreError(f"{op} failed: {e}") from e


class ProfileStore:
    def __init__(self, db: Database):
        self.col = db["profiles"]

    def find_by_phone(self, phone: str) -> Optional[Profile]:
        doc = with_retry("profiles.find_by_phone", lambda: self.col.find_one({"phone": phone}))
        return from_doc(Profile, doc)

    def get(self, profile_id: str) -> Optional[Profile]:
        doc = with_retry("profiles.get", lambda: self.col.find_one({"_id": profile_id}))
        return from_doc(Profile, doc)

    def list(self, limit: int = 200) -> List[Profile]:
        docs = with_retry("profiles.list", lambda: list(self.col.find({}).limit(limit)))
        return [from_doc(Profile, d) for d in docs]

    def count(self) -> int:
        return with_retry("profiles.count", lambda: self.col.count_documents({}))

    def upsert(self, profile: Profile) -> Profile:
        """Insert or update keyed by id (conflict target: id)."""
        now = utcnow()
        fields = {"phone": profile.phone, "name": profile.name, "role": profile.role,
                  "language": profile.language, "updated_at": now}

        def op():
            return self.col.find_one_and_update(
                {"_id": profile.id},
                {"$set": fields, "$setOnInsert": {"created_at": now}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )

        return from_doc(Profile, _write("profiles.upsert", op))

    def update(self, profile_id: str, fields: Dict[str, Any]) -> Optional[Profile]:
        changes = dict(fields, updated_at=utcnow())
        doc = _write("profiles.update", lambda: self.col.find_one_and_update(
            {"_id": profile_id}, {"$set": changes}, return_document=ReturnDocument.AFTER))
        return from_doc(Profile, doc)

    def delete(self, profile_id: str) -> bool:
        res = _write("profiles.delete", lambda: self.col.delete_one({"_id": profile_id}))
        return res.deleted_count > 0


class ChatStore:
    """Threads and messages, plus the live insert feed for messages."""

    def __init__(self, db: Database, feed: LiveFeed):
        self.threads = db["chats"]
        self.messages = db["messages"]
        self.counters = db["counters"]
        self.feed = feed

    def list_threads(self, profile_id: str) -> List[ChatThread]:
        filt = {"$or": [{"buyer_id": profile_id}, {"farmer_id": profile_id}]}
        docs = with_retry("chats.list", lambda: list(self.threads.find(filt).sort("updated_at", DESCENDING)))
        return [from_doc(ChatThread, d) for d in docs]

    def get_thread(self, thread_id: str) -> Optional[ChatThread]:
        doc = with_retry("chats.get", lambda: self.threads.find_one({"_id": thread_id}))
        return from_doc(ChatThread, doc)

    def find_thread(self, buyer_id: str, farmer_id: str, crop_id: Optional[str]) -> Optional[ChatThread]:
        filt = {"buyer_id": buyer_id, "farmer_id": farmer_id, "crop_id": crop_id}
        doc = with_retry("chats.find", lambda: self.threads.find_one(filt))
        return from_doc(ChatThread, doc)

    def insert_thread(self, buyer_id: str, farmer_id: str, crop_id: Optional[str]) -> ChatThread:
        now = utcnow()
        thread = ChatThread(id=new_id(), buyer_id=buyer_id, farmer_id=farmer_id, crop_id=crop_id,
                            created_at=now, updated_at=now)
        _write("chats.insert", lambda: self.threads.insert_one(to_doc(thread)))
        return thread

    def update_thread(self, thread_id: str, fields: Dict[str, Any]) -> None:
        _write("chats.update", lambda: self.threads.update_one({"_id": thread_id}, {"$set": fields}))

    def list_messages(self, thread_id: str) -> List[Message]:
        def op():
            return list(self.messages.find({"chat_id": thread_id}).sort(
                [("created_at", ASCENDING), ("seq", ASCENDING), ("_id", ASCENDING)]))

        return [from_doc(Message, d) for d in with_retry("messages.list", op)]

    def _next_seq(self) -> int:
        doc = _write("messages.seq", lambda: self.counters.find_one_and_update(
            {"_id": "messages"}, {"$inc": {"seq": 1}}, upsert=True, return_document=ReturnDocument.AFTER))
        return doc["seq"]

    def insert_message(self, thread_id: str, sender_id: str, receiver_id: str, content: str) -> Message:
        seq = self._next_seq()
        msg = Message(id=new_id(), chat_id=thread_id, sender_id=sender_id, receiver_id=receiver_id,
                      content=content, created_at=utcnow(), seq=seq)
        _write("messages.insert", lambda: self.messages.insert_one(to_doc(msg)))
        self.feed.publish("messages", msg.model_dump())
        return msg

    def subscribe_inserts(self, table: str, filter: Dict[str, Any], on_insert: InsertCallback) -> Subscription:
        return self.feed.subscribe(table, filter, on_insert)

    def unsubscribe(self, handle: Subscription) -> None:
        self.feed.unsubscribe(handle)


class CropStore:
    def __init__(self, db: Database):
        self.col = db["crops"]

    def list_available(self, q: Optional[str] = None, farmer_id: Optional[str] = None, limit: int = 100) -> List[Crop]:
        filt: Dict[str, Any] = {"available": True}
        if farmer_id:
            filt["farmer_id"] = farmer_id
        if q:
            filt["name"] = {"$regex": re.escape(q), "$options": "i"}
        docs = with_retry("crops.list", lambda: list(self.col.find(filt).sort("created_at", DESCENDING).limit(limit)))
        return [from_doc(Crop, d) for d in docs]

    def list_for_farmer(self, farmer_id: str) -> List[Crop]:
        docs = with_retry("crops.by_farmer", lambda: list(self.col.find({"farmer_id": farmer_id}).sort("created_at", DESCENDING)))
        return [from_doc(Crop, d) for d in docs]

    def list(self, limit: int = 200) -> List[Crop]:
        docs = with_retry("crops.all", lambda: list(self.col.find({}).limit(limit)))
        return [from_doc(Crop, d) for d in docs]

    def get(self, crop_id: str) -> Optional[Crop]:
        return from_doc(Crop, with_retry("crops.get", lambda: self.col.find_one({"_id": crop_id})))

    def insert(self, farmer_id: str, fields: Dict[str, Any]) -> Crop:
        now = utcnow()
        crop = Crop(id=new_id(), farmer_id=farmer_id, created_at=now, updated_at=now, **fields)
        _write("crops.insert", lambda: self.col.insert_one(to_doc(crop)))
        return crop

    def update(self, crop_id: str, fields: Dict[str, Any]) -> Optional[Crop]:
        changes = dict(fields, updated_at=utcnow())
        doc = _write("crops.update", lambda: self.col.find_one_and_update(
            {"_id": crop_id}, {"$set": changes}, return_document=ReturnDocument.AFTER))
        return from_doc(Crop, doc)

    def delete(self, crop_id: str) -> bool:
        return _write("crops.delete", lambda: self.col.delete_one({"_id": crop_id})).deleted_count > 0

    def count(self) -> int:
        return with_retry("crops.count", lambda: self.col.count_documents({}))

    def take_stock(self, crop_id: str, quantity: float) -> Optional[Crop]:
        """Decrement stock if enough is left; None when it is not."""
        doc = _write("crops.take_stock", lambda: self.col.find_one_and_update(
            {"_id": crop_id, "quantity_kg": {"$gte": quantity}},
            {"$inc": {"quantity_kg": -quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        ))
        crop = from_doc(Crop, doc)
        if crop is not None and crop.quantity_kg <= 0 and crop.available:
            crop = self.update(crop_id, {"available": False})
        return crop


class OrderStore:
    def __init__(self, db: Database):
        self.col = db["orders"]
        self.transactions = db["transactions"]

    def insert(self, order: Order) -> Order:
        now = utcnow()
        order = order.model_copy(update={"created_at": now, "updated_at": now})
        _write("orders.insert", lambda: self.col.insert_one(to_doc(order)))
        return order

    def get(self, order_id: str) -> Optional[Order]:
        return from_doc(Order, with_retry("orders.get", lambda: self.col.find_one({"_id": order_id})))

    def _list(self, op: str, filt: Dict[str, Any], limit: int = 200) -> List[Order]:
        docs = with_retry(op, lambda: list(self.col.find(filt).sort("created_at", DESCENDING).limit(limit)))
        return [from_doc(Order, d) for d in docs]

    def list_for_buyer(self, buyer_id: str) -> List[Order]:
        return self._list("orders.by_buyer", {"buyer_id": buyer_id})

    def list_for_farmer(self, farmer_id: str) -> List[Order]:
        return self._list("orders.by_farmer", {"farmer_id": farmer_id})

    def list(self, limit: int = 200) -> List[Order]:
        return self._list("orders.all", {}, limit)

    def set_status(self, order_id: str, expected: str, status: str, fields: Optional[Dict[str, Any]] = None) -> Optional[Order]:
        """Compare-and-set on status; None when the order moved on meanwhile."""
        changes = dict(fields or {}, status=status, updated_at=utcnow())
        doc = _write("orders.set_status", lambda: self.col.find_one_and_update(
            {"_id": order_id, "status": expected}, {"$set": changes}, return_document=ReturnDocument.AFTER))
        return from_doc(Order, doc)

    def attach_gateway_order(self, order_id: str, gateway_order_id: str) -> Optional[Order]:
        doc = _write("orders.attach_gateway_order", lambda: self.col.find_one_and_update(
            {"_id": order_id, "status": "pending"},
            {"$set": {"razorpay_order_id": gateway_order_id, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        ))
        return from_doc(Order, doc)

    def record_transaction(self, order: Order) -> Transaction:
        tx = Transaction(id=new_id(), order_id=order.id, razorpay_payment_id=order.razorpay_payment_id or "",
                         amount=order.total_price, created_at=utcnow())
        _write("transactions.insert", lambda: self.transactions.insert_one(to_doc(tx)))
        return tx

    def count(self) -> int:
        return with_retry("orders.count", lambda: self.col.count_documents({}))
