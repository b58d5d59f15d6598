import itertools
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import config
from errors import ConflictError, StoreError
from live_feed import LiveFeed
from schemas import ChatThread, Message

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class FakeProfileStore:
    """Profile store double that records every call."""

    def __init__(self, *profiles):
        self.rows = {p.id: p for p in profiles}
        self.calls = []
        self.fail_lookup = False
        self.on_lookup = None

    def find_by_phone(self, phone):
        self.calls.append(("find_by_phone", phone))
        if self.on_lookup is not None:
            hook, self.on_lookup = self.on_lookup, None
            hook(phone)
        if self.fail_lookup:
            raise StoreError("profiles unavailable")
        return next((p for p in self.rows.values() if p.phone == phone), None)

    def upsert(self, profile):
        self.calls.append(("upsert", profile))
        for row in self.rows.values():
            if row.phone == profile.phone and row.id != profile.id:
                raise ConflictError("phone taken")
        self.rows[profile.id] = profile
        return profile

    def call_names(self):
        return [c[0] for c in self.calls]


class FakeChatStore:
    """Chat store double with a real LiveFeed and a controllable clock."""

    def __init__(self, feed=None):
        self.feed = feed or LiveFeed()
        self.threads = {}
        self.messages = []
        self.calls = []
        self.fail_touch = False
        self.conflict_on_insert = None
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)

    def tick(self):
        return BASE_TIME + timedelta(seconds=next(self._ticks))

    def add_thread(self, **fields):
        fields.setdefault("crop_id", None)
        fields.setdefault("updated_at", self.tick())
        thread = ChatThread(**fields)
        self.threads[thread.id] = thread
        return thread

    def list_threads(self, profile_id):
        self.calls.append(("list_threads", profile_id))
        mine = [t for t in self.threads.values() if profile_id in (t.buyer_id, t.farmer_id)]
        return sorted(mine, key=lambda t: t.updated_at, reverse=True)

    def get_thread(self, thread_id):
        self.calls.append(("get_thread", thread_id))
        return self.threads.get(thread_id)

    def find_thread(self, buyer_id, farmer_id, crop_id):
        self.calls.append(("find_thread", (buyer_id, farmer_id, crop_id)))
        for t in self.threads.values():
            if (t.buyer_id, t.farmer_id, t.crop_id) == (buyer_id, farmer_id, crop_id):
                return t
        return None

    def insert_thread(self, buyer_id, farmer_id, crop_id):
        self.calls.append(("insert_thread", (buyer_id, farmer_id, crop_id)))
        if self.conflict_on_insert is not None:
            winner, self.conflict_on_insert = self.conflict_on_insert, None
            self.threads[winner.id] = winner
            raise ConflictError("thread exists")
        now = self.tick()
        return self.add_thread(id=f"t{next(self._ids)}", buyer_id=buyer_id, farmer_id=farmer_id,
                               crop_id=crop_id, created_at=now, updated_at=now)

    def update_thread(self, thread_id, fields):
        self.calls.append(("update_thread", thread_id))
        if self.fail_touch:
            raise StoreError("chats unavailable")
        self.threads[thread_id] = self.threads[thread_id].model_copy(update=fields)

    def list_messages(self, thread_id):
        self.calls.append(("list_messages", thread_id))
        rows = [m for m in self.messages if m.chat_id == thread_id]
        return sorted(rows, key=lambda m: m.sort_key)

    def make_message(self, thread_id, sender_id, receiver_id, content, created_at=None, id=None, seq=None):
        n = next(self._ids)
        return Message(id=id or f"m{n}", chat_id=thread_id, sender_id=sender_id, receiver_id=receiver_id,
                       content=content, created_at=created_at or self.tick(), seq=n if seq is None else seq)

    def insert_message(self, thread_id, sender_id, receiver_id, content):
        self.calls.append(("insert_message", (thread_id, sender_id, receiver_id, content)))
        msg = self.make_message(thread_id, sender_id, receiver_id, content)
        self.messages.append(msg)
        self.feed.publish("messages", msg.model_dump())
        return msg

    def subscribe_inserts(self, table, filter, on_insert):
        self.calls.append(("subscribe", filter.get("chat_id")))
        return self.feed.subscribe(table, filter, on_insert)

    def unsubscribe(self, handle):
        self.calls.append(("unsubscribe", handle.filter.get("chat_id")))
        self.feed.unsubscribe(handle)

    def call_names(self):
        return [c[0] for c in self.calls]


class FakeHttp:
    """Stands in for requests.Session in payment tests."""

    def __init__(self, response=None, error=None):
        self.response = response or {}
        self.error = error
        self.posts = []

    def post(self, url, json=None, auth=None, timeout=None):
        self.posts.append({"url": url, "json": json, "auth": auth, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return _FakeResponse(self.response)


class _FakeResponse:
    def __init__(self, data, status=200):
        self.data = data
        self.status_code = status

    def raise_for_status(self):
        return None

    def json(self):
        return self.data


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient().farm2market_test


@pytest.fixture
def feed():
    return LiveFeed()


@pytest.fixture
def chat_store(feed):
    return FakeChatStore(feed)


@pytest.fixture
def services(mongo_db):
    from main import Services
    from payments import RazorpayGateway

    return Services(mongo_db, gateway=RazorpayGateway(key_id="", key_secret=""))


@pytest.fixture
def api(services, monkeypatch):
    from main import app, get_services

    monkeypatch.setattr(config, "OTP_DEBUG", True)
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def sign_in(api, phone, name=None, role=None):
    """Run the OTP flow (and optionally profile setup); returns auth headers."""
    code = api.post("/auth/otp/request", json={"phone": phone}).json()["debug_code"]
    res = api.post("/auth/otp/verify", json={"phone": phone, "code": code})
    assert res.status_code == 200, res.text
    headers = {"Authorization": f"Bearer {res.json()['token']}"}
    if name and role:
        saved = api.post("/auth/profile", json={"name": name, "role": role}, headers=headers)
        assert saved.status_code == 200, saved.text
    return headers
