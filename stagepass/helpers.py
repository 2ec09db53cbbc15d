import hmac
import re
import secrets
import string
import time
from datetime import datetime, timezone
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


def parse_iso(value: Optional[str]) -> Optional[float]:
    """Accepts ISO-8601 (with trailing Z) and returns epoch seconds."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def is_valid_phone(phone: Optional[str]) -> bool:
    if not phone:
        return False
    return re.match(r"^\+?[1-9]\d{1,14}$", phone.strip()) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def slugify(text: str) -> str:
    s = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return s or secrets.token_hex(4)


def generate_reference(prefix: str = "TXN") -> str:
    # PREFIX-<epoch ms>-<7 chars>
    alphabet = string.ascii_uppercase + string.digits
    rand = "".join(secrets.choice(alphabet) for _ in range(7))
    return f"{prefix}-{int(time.time() * 1000)}-{rand}"


def booking_code() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "BK-" + "".join(secrets.choice(alphabet) for _ in range(8))


def to_kobo(amount: float) -> int:
    return int(round(amount * 100))


def from_kobo(amount: int) -> float:
    return amount / 100
