"""
Runtime settings for the Farm2Market API.

Everything comes from the environment so the same build runs locally,
in tests and on the hosting platform.
"""
import os


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))

STORE_READ_ATTEMPTS = int(os.getenv("STORE_READ_ATTEMPTS", "3"))
STORE_RETRY_BACKOFF_SECONDS = float(os.getenv("STORE_RETRY_BACKOFF_SECONDS", "0.2"))

OTP_TTL_SECONDS = int(os.getenv("OTP_TTL_SECONDS", "300"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
# Echo the code back in the verify response; only for local/test setups without SMS
OTP_DEBUG = _flag("OTP_DEBUG")

PORT = int(os.getenv("PORT", "8000"))
