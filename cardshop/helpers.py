import re
import secrets
import time
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def now_iso() -> str:
    return to_iso(utcnow())


def to_iso(value: datetime | float | str | None) -> Optional[str]:
    """Render a timestamp as an ISO-8601 UTC string.

    Accepts epoch seconds, datetimes (naive ones are taken as UTC) and
    strings that are already ISO formatted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = parse_iso(value)
    elif isinstance(value, (int, float)):
        value = datetime.fromtimestamp(value, tz=timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value: datetime | str | None) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        # fromisoformat() only learned the "Z" suffix in 3.11
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def is_valid_phone(phone: Optional[str]) -> bool:
    # mainland China mobile numbers
    if not phone:
        return False
    return re.match(r"^1[3-9]\d{9}$", phone.strip()) is not None


def is_valid_contact(contact: Optional[str]) -> bool:
    return is_valid_email(contact) or is_valid_phone(contact)


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_order_number() -> str:
    stamp = utcnow().strftime("%Y%m%d%H%M%S")
    return f"ORD{stamp}{secrets.token_hex(3).upper()}"
