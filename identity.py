"""
Phone-number identity.

OtpService issues and checks one-time codes (stored hashed in
`otp_challenges`). PhoneIdentityProvider holds the single verified
session of one client and notifies observers whenever it changes.
"""
import hashlib
import hmac
import logging
import re
import secrets
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
from database import utcnow
from errors import InputError, StoreError
from schemas import OtpChallenge

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^\+[1-9]\d{7,14}$")


@dataclass(frozen=True)
class Session:
    token: str
    phone: Optional[str] = None


SessionCallback = Callable[[Optional[Session]], None]


def normalize_phone(phone: str) -> str:
    p = re.sub(r"[\s\-()]", "", phone or "")
    if not PHONE_RE.match(p):
        raise InputError("Phone number must be in international format, e.g. +911234567890")
    return p


def _hash_code(phone: str, code: str) -> str:
    return hashlib.sha256(f"{phone}:{code}".encode()).hexdigest()


class OtpService:
    def __init__(self, db: Database, ttl_seconds: Optional[int] = None, max_attempts: Optional[int] = None):
        self.col = db["otp_challenges"]
        self.ttl = timedelta(seconds=ttl_seconds or config.OTP_TTL_SECONDS)
        self.max_attempts = max_attempts or config.OTP_MAX_ATTEMPTS

    def issue(self, phone: str) -> str:
        phone = normalize_phone(phone)
        code = f"{secrets.randbelow(10 ** 6):06d}"
        challenge = OtpChallenge(phone=phone, code_hash=_hash_code(phone, code), expires_at=utcnow() + self.ttl)
        try:
            self.col.replace_one({"phone": phone}, challenge.model_dump(), upsert=True)
        except PyMongoError as e:
            logger.exception("otp_issue_failed phone=%s", phone)
            raise StoreError("Could not start phone verification") from e
        # SMS delivery is the provider's job; locally the code only goes to the debug log
        logger.info("otp_issued phone=%s", phone)
        logger.debug("otp_code phone=%s code=%s", phone, code)
        return code

    def verify(self, phone: str, code: str) -> bool:
        phone = normalize_phone(phone)
        try:
            doc = self.col.find_one({"phone": phone})
            if not doc:
                return False
            challenge = OtpChallenge.model_validate({k: v for k, v in doc.items() if k != "_id"})
            expires_at = challenge.expires_at
            now = utcnow()
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=now.tzinfo)
            if expires_at < now or challenge.attempts >= self.max_attempts:
                logger.info("otp_rejected phone=%s reason=%s", phone, "expired" if expires_at < now else "attempts")
                self.col.delete_one({"phone": phone})
                return False
            if not hmac.compare_digest(challenge.code_hash, _hash_code(phone, (code or "").strip())):
                self.col.update_one({"phone": phone}, {"$inc": {"attempts": 1}})
                logger.info("otp_mismatch phone=%s attempts=%s", phone, challenge.attempts + 1)
                return False
            self.col.delete_one({"phone": phone})
        except PyMongoError as e:
            logger.exception("otp_verify_failed phone=%s", phone)
            raise StoreError("Could not verify phone number") from e
        logger.info("otp_verified phone=%s", phone)
        return True


class PhoneIdentityProvider:
    """The identity side of one connected client: at most one session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._session: Optional[Session] = None
        self._observers: List[SessionCallback] = []

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def observe_session(self, callback: SessionCallback) -> Callable[[], None]:
        """Call `callback` now with the current session and on every change."""
        with self._lock:
            self._observers.append(callback)
            current = self._session
        callback(current)

        def unobserve():
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unobserve

    def sign_in(self, session: Session) -> None:
        self._set(session)

    def sign_out(self) -> None:
        self._set(None)

    def _set(self, session: Optional[Session]) -> None:
        with self._lock:
            if session == self._session:
                return
            self._session = session
            observers = list(self._observers)
        for cb in observers:
            cb(session)
