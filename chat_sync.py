"""
Live chat feed for one client.

open_thread() subscribes to message inserts for the thread before reading
history, then merges both sources into one list keyed by message id and
ordered by (created_at, seq, id). Live events that arrive out of order, or that
repeat a message already loaded from history, land in the right place
exactly once.

send() does not add the message locally; it shows up when the insert
comes back through the live feed.
"""
import bisect
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from database import utcnow
from errors import ConflictError, InputError, NotFoundError, StoreError
from live_feed import Subscription
from schemas import ChatThread, Message
from stores import ChatStore

logger = logging.getLogger(__name__)

FeedListener = Callable[[str, Tuple[Message, ...]], None]


class ChatSynchronizer:
    def __init__(self, chats: ChatStore):
        self.chats = chats
        self._lock = threading.RLock()
        self._threads: Dict[str, ChatThread] = {}
        self._active_id: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._messages: List[Message] = []
        self._keys: list = []
        self._seen: set = set()
        self._listeners: List[FeedListener] = []

    @property
    def active_thread_id(self) -> Optional[str]:
        return self._active_id

    @property
    def messages(self) -> Tuple[Message, ...]:
        with self._lock:
            return tuple(self._messages)

    def known_thread(self, thread_id: str) -> Optional[ChatThread]:
        return self._threads.get(thread_id)

    def load_thread(self, thread_id: str) -> Optional[ChatThread]:
        """Known thread, or fetch it from the store and keep it."""
        thread = self._threads.get(thread_id)
        if thread is None:
            thread = self.chats.get_thread(thread_id)
            if thread is not None:
                self._remember(thread)
        return thread

    def _remember(self, thread: ChatThread) -> ChatThread:
        with self._lock:
            self._threads[thread.id] = thread
        return thread

    def list_threads_for(self, profile_id: str) -> List[ChatThread]:
        threads = self.chats.list_threads(profile_id)
        for t in threads:
            self._remember(t)
        return threads

    def find_or_create_thread(self, buyer_id: str, farmer_id: str, crop_id: Optional[str] = None) -> ChatThread:
        existing = self.chats.find_thread(buyer_id, farmer_id, crop_id)
        if existing:
            return self._remember(existing)
        try:
            thread = self.chats.insert_thread(buyer_id, farmer_id, crop_id)
            logger.info("chat_created chat_id=%s buyer_id=%s farmer_id=%s crop_id=%s",
                        thread.id, buyer_id, farmer_id, crop_id)
        except ConflictError:
            # lost the race against another client creating the same thread
            thread = self.chats.find_thread(buyer_id, farmer_id, crop_id)
            if thread is None:
                raise
        return self._remember(thread)

    def open_thread(self, thread_id: str) -> Tuple[Message, ...]:
        self.close_thread()

        if self.load_thread(thread_id) is None:
            raise NotFoundError(f"Chat {thread_id} not found")

        with self._lock:
            self._active_id = thread_id
            self._messages, self._keys, self._seen = [], [], set()
            self._subscription = self.chats.subscribe_inserts(
                "messages", {"chat_id": thread_id}, lambda row: self._on_insert(thread_id, row))

        try:
            history = self.chats.list_messages(thread_id)
        except StoreError:
            logger.exception("chat_history_failed chat_id=%s", thread_id)
            history = []
        self._merge(thread_id, history)
        logger.info("chat_opened chat_id=%s history=%s", thread_id, len(history))
        return self.messages

    def close_thread(self) -> None:
        with self._lock:
            sub, self._subscription = self._subscription, None
            closed_id, self._active_id = self._active_id, None
            self._messages, self._keys, self._seen = [], [], set()
        if sub is not None:
            self.chats.unsubscribe(sub)
            logger.info("chat_closed chat_id=%s", closed_id)

    def _on_insert(self, thread_id: str, row: dict) -> None:
        try:
            msg = Message.model_validate(row)
        except ValueError:
            logger.warning("chat_bad_event chat_id=%s row=%s", thread_id, row)
            return
        self._merge(thread_id, [msg])

    def _merge(self, thread_id: str, incoming: List[Message]) -> None:
        with self._lock:
            if thread_id != self._active_id:
                return
            added = 0
            for msg in incoming:
                if msg.id in self._seen or msg.chat_id != thread_id:
                    continue
                key = msg.sort_key
                pos = bisect.bisect_right(self._keys, key)
                self._keys.insert(pos, key)
                self._messages.insert(pos, msg)
                self._seen.add(msg.id)
                added += 1
            if not added:
                return
            snapshot = tuple(self._messages)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(thread_id, snapshot)
            except Exception:
                logger.exception("chat_listener_failed chat_id=%s", thread_id)

    def add_listener(self, listener: FeedListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def send(self, thread_id: str, sender_id: str, body: str) -> Message:
        content = (body or "").strip()
        if not content:
            raise InputError("Message is empty")
        thread = self._threads.get(thread_id)
        if thread is None:
            raise NotFoundError(f"Chat {thread_id} not found")
        receiver_id = thread.other_party(sender_id)
        if not receiver_id:
            logger.error("chat_no_receiver chat_id=%s sender_id=%s", thread_id, sender_id)
            raise InputError("Cannot work out who should receive this message")

        msg = self.chats.insert_message(thread_id, sender_id, receiver_id, content)
        try:
            self.chats.update_thread(thread_id, {"updated_at": msg.created_at or utcnow()})
        except StoreError:
            # message is stored; only the thread's position in the list is stale
            logger.warning("chat_touch_failed chat_id=%s message_id=%s", thread_id, msg.id)
        return msg
