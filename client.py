"""
Per-client state.

A ClientContext is what one signed-in browser/device owns on the server:
its identity session, the session resolver derived from it and its chat
feed. The registry maps session tokens to contexts and tears them down on
sign-out.
"""
import logging
import secrets
import threading
from typing import Dict, Optional

from chat_sync import ChatSynchronizer
from identity import PhoneIdentityProvider, Session
from session_resolver import SessionResolver
from stores import ChatStore, ProfileStore

logger = logging.getLogger(__name__)


class ClientContext:
    def __init__(self, profiles: ProfileStore, chats: ChatStore):
        self.identity = PhoneIdentityProvider()
        self.resolver = SessionResolver(self.identity, profiles)
        self.chat = ChatSynchronizer(chats)
        # sign-out must not leave a live chat subscription behind
        self.resolver.on_sign_out(self.chat.close_thread)
        self.resolver.start()

    @property
    def token(self) -> Optional[str]:
        session = self.identity.session
        return session.token if session else None

    def sign_in(self, phone: str) -> str:
        token = secrets.token_urlsafe(32)
        self.identity.sign_in(Session(token=token, phone=phone))
        return token

    def teardown(self) -> None:
        self.chat.close_thread()
        self.resolver.close()


class ClientRegistry:
    def __init__(self, profiles: ProfileStore, chats: ChatStore):
        self.profiles = profiles
        self.chats = chats
        self._lock = threading.Lock()
        self._clients: Dict[str, ClientContext] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def connect(self, phone: str) -> ClientContext:
        ctx = ClientContext(self.profiles, self.chats)
        token = ctx.sign_in(phone)
        with self._lock:
            self._clients[token] = ctx
        logger.info("client_connected phone=%s clients=%s", phone, len(self._clients))
        return ctx

    def get(self, token: Optional[str]) -> Optional[ClientContext]:
        if not token:
            return None
        with self._lock:
            return self._clients.get(token)

    def disconnect(self, token: str) -> bool:
        with self._lock:
            ctx = self._clients.pop(token, None)
        if ctx is None:
            return False
        ctx.resolver.sign_out()
        ctx.teardown()
        logger.info("client_disconnected clients=%s", len(self._clients))
        return True

    def refresh_profile(self, profile_id: str) -> None:
        """Re-resolve every client signed in as `profile_id` (after an admin edit)."""
        with self._lock:
            targets = [c for c in self._clients.values() if c.resolver.current.profile_id == profile_id]
        for ctx in targets:
            ctx.resolver.refresh()

    def shutdown(self) -> None:
        with self._lock:
            clients, self._clients = list(self._clients.values()), {}
        for ctx in clients:
            ctx.teardown()
