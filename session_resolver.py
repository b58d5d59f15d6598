"""
Session resolution.

Turns "is there a verified phone session" into "who is this and what may
they do" by looking the phone number up in the profiles collection.

States:

    UNAUTHENTICATED --session--> RESOLVING --complete row--> AUTHENTICATED(role)
                                     |
                                     +--no row / incomplete / no phone / store error--> NEEDS_PROFILE
    NEEDS_PROFILE --save_profile--> AUTHENTICATED(role)
    any --sign_out--> UNAUTHENTICATED

Consumers subscribe to a ResolvedSession value instead of reading shared
globals. Every session change bumps a generation counter; lookups and saves
that finish after a newer change are dropped so a stale role is never shown.

Known gap: profiles are looked up by phone, so two devices completing setup
for a brand new phone at the same time race. Only the unique phone index
stops the second insert; save_profile then adopts the winning row.
"""
import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from errors import ConflictError, InputError, SessionError, StoreError
from identity import PhoneIdentityProvider, Session
from schemas import ROLES, Profile
from stores import ProfileStore

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    RESOLVING = "resolving"
    NEEDS_PROFILE = "needs_profile"
    AUTHENTICATED = "authenticated"


RESOLUTION_FAILED = "resolution failed"
PHONE_MISSING = "phone number missing"


@dataclass(frozen=True)
class ResolvedSession:
    state: SessionState = SessionState.UNAUTHENTICATED
    profile_id: Optional[str] = None
    role: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    error: Optional[str] = None

    @property
    def needs_profile(self) -> bool:
        return self.state == SessionState.NEEDS_PROFILE

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    def as_dict(self) -> dict:
        return {
            "state": self.state.value,
            "profile_id": self.profile_id,
            "role": self.role,
            "phone": self.phone,
            "name": self.name,
            "needs_profile": self.needs_profile,
            "error": self.error,
        }


Listener = Callable[[ResolvedSession], None]

UNAUTHENTICATED = ResolvedSession()


class SessionResolver:
    def __init__(self, identity: PhoneIdentityProvider, profiles: ProfileStore):
        self.identity = identity
        self.profiles = profiles
        self._lock = threading.RLock()
        self._current = UNAUTHENTICATED
        self._session: Optional[Session] = None
        self._generation = 0
        self._listeners: List[Listener] = []
        self._sign_out_hooks: List[Callable[[], None]] = []
        self._unobserve: Optional[Callable[[], None]] = None

    # lifecycle

    def start(self) -> "SessionResolver":
        if self._unobserve is None:
            self._unobserve = self.identity.observe_session(self._on_session)
        return self

    def close(self) -> None:
        if self._unobserve is not None:
            self._unobserve()
            self._unobserve = None
        with self._lock:
            self._listeners.clear()
            self._sign_out_hooks.clear()

    # publish/subscribe

    @property
    def current(self) -> ResolvedSession:
        return self._current

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)
            current = self._current
        listener(current)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def on_sign_out(self, hook: Callable[[], None]) -> None:
        with self._lock:
            self._sign_out_hooks.append(hook)

    def _publish(self, value: ResolvedSession, generation: Optional[int] = None) -> bool:
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("session_result_dropped gen=%s current=%s", generation, self._generation)
                return False
            if value == self._current:
                return True
            self._current = value
            listeners = list(self._listeners)
        logger.info("session_state state=%s profile_id=%s role=%s", value.state.value, value.profile_id, value.role)
        for listener in listeners:
            try:
                listener(value)
            except Exception:
                logger.exception("session_listener_failed")
        return True

    # transitions

    def _on_session(self, session: Optional[Session]) -> None:
        with self._lock:
            self._generation += 1
            gen = self._generation
            self._session = session

        if session is None:
            self._publish(UNAUTHENTICATED, gen)
            return

        phone = session.phone or ""
        self._publish(ResolvedSession(state=SessionState.RESOLVING, phone=phone or None), gen)
        if not phone:
            self._publish(ResolvedSession(state=SessionState.NEEDS_PROFILE, error=PHONE_MISSING), gen)
            return

        try:
            profile = self.profiles.find_by_phone(phone)
        except StoreError:
            logger.exception("profile_lookup_failed phone=%s", phone)
            self._publish(ResolvedSession(state=SessionState.NEEDS_PROFILE, phone=phone, error=RESOLUTION_FAILED), gen)
            return

        self._publish(self._resolve(phone, profile), gen)

    @staticmethod
    def _resolve(phone: str, profile: Optional[Profile]) -> ResolvedSession:
        if profile is None:
            return ResolvedSession(state=SessionState.NEEDS_PROFILE, phone=phone)
        if not profile.is_complete:
            return ResolvedSession(state=SessionState.NEEDS_PROFILE, profile_id=profile.id, phone=phone, name=profile.name)
        return ResolvedSession(state=SessionState.AUTHENTICATED, profile_id=profile.id, role=profile.role,
                               phone=phone, name=profile.name)

    def refresh(self) -> ResolvedSession:
        """Re-run the lookup for the current session (e.g. after an admin edit)."""
        self._on_session(self._session)
        return self._current

    def save_profile(self, name: str, role: str) -> ResolvedSession:
        name = (name or "").strip()
        if not name:
            raise InputError("Name is required")
        if role not in ROLES:
            raise InputError(f"Role must be one of {', '.join(ROLES)}")

        with self._lock:
            session = self._session
            gen = self._generation
            profile_id = self._current.profile_id
        if session is None:
            raise SessionError("User not logged in")
        if not session.phone:
            raise SessionError("Phone number missing")

        candidate = Profile(id=profile_id or str(uuid.uuid4()), phone=session.phone, name=name, role=role)
        try:
            saved = self.profiles.upsert(candidate)
        except ConflictError:
            # another device created the row for this phone first: adopt its id
            existing = self.profiles.find_by_phone(session.phone)
            if existing is None or existing.id == candidate.id:
                raise
            logger.warning("profile_conflict_adopt phone=%s id=%s", session.phone, existing.id)
            saved = self.profiles.upsert(candidate.model_copy(update={"id": existing.id}))

        resolved = self._resolve(session.phone, saved)
        if not self._publish(resolved, gen):
            raise SessionError("Session changed while saving profile")
        return resolved

    def sign_out(self) -> None:
        """Clear local state now; the provider sign-out follows."""
        with self._lock:
            self._generation += 1
            gen = self._generation
            self._session = None
            hooks = list(self._sign_out_hooks)
        self._publish(UNAUTHENTICATED, gen)
        for hook in hooks:
            try:
                hook()
            except Exception:
                logger.exception("sign_out_hook_failed")
        try:
            self.identity.sign_out()
        except Exception:
            logger.exception("identity_sign_out_failed")
