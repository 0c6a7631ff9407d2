import time
import re
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


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Bring a phone number into the local `0XXXXXXXXX` form the payment
    widget expects. Accepts `+254712345678`, `254712345678`, `0712345678`
    and `712345678`. Returns None if nothing usable is left.
    """
    if not phone:
        return None
    digits = re.sub(r"\D", "", str(phone))
    if len(digits) < 9:
        return None
    return f"0{digits[-9:]}"


def is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
