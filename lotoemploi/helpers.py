import time
import re
import uuid
import unicodedata
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_identity_part(value: Optional[str]) -> str:
    # lower-case, no whitespace anywhere, no accents
    value = strip_accents(value or "").lower()
    return re.sub(r"\s+", "", value)


def make_payment_token(user_id: str, ts: float | None = None) -> str:
    ms = int((now_ts() if ts is None else ts) * 1000)
    return f"{ms}-{user_id}-{uuid.uuid4().hex[:8]}"


def positive_int(value) -> Optional[int]:
    """Coerce JSON numbers / numeric strings; None if not a positive int."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, str):
        value = value.strip()
        # isdigit() also admits superscripts such as "²"
        if not value.isdecimal():
            return None
        try:
            value = int(value)
        except ValueError:
            return None
    if not isinstance(value, int) or value <= 0:
        return None
    return value
