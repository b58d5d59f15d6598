from datetime import timedelta

import pytest

from database import utcnow
from errors import InputError
from identity import OtpService, PhoneIdentityProvider, Session, normalize_phone


@pytest.fixture
def otp(mongo_db):
    return OtpService(mongo_db, ttl_seconds=60, max_attempts=3)


def test_normalize_phone():
    assert normalize_phone("+91 12345-67890") == "+911234567890"
    with pytest.raises(InputError):
        normalize_phone("12345")


def test_issue_and_verify(otp):
    code = otp.issue("+911234567890")
    assert len(code) == 6
    assert otp.verify("+911234567890", code)
    # codes are single use
    assert not otp.verify("+911234567890", code)


def test_wrong_code_counts_attempts(otp):
    code = otp.issue("+911234567890")
    wrong = "000000" if code != "000000" else "111111"
    for _ in range(3):
        assert not otp.verify("+911234567890", wrong)
    assert not otp.verify("+911234567890", code)


def test_expired_code_rejected(otp, mongo_db):
    code = otp.issue("+911234567890")
    mongo_db["otp_challenges"].update_one({"phone": "+911234567890"},
                                          {"$set": {"expires_at": utcnow() - timedelta(seconds=1)}})
    assert not otp.verify("+911234567890", code)


def test_observe_session_fires_immediately_and_on_change():
    provider = PhoneIdentityProvider()
    seen = []
    stop = provider.observe_session(seen.append)
    provider.sign_in(Session(token="t", phone="+911234567890"))
    provider.sign_out()
    stop()
    provider.sign_in(Session(token="t2", phone="+911234567890"))
    assert seen == [None, Session(token="t", phone="+911234567890"), None]
