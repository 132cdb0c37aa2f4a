import time
import hmac
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


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def format_xaf(amount: float) -> str:
    # 12000 -> "12 000"
    return f"{int(round(amount)):,}".replace(",", " ")
