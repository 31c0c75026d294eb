"""
Order Service — 注文番号の採番

形式: ORD-{YYYYMMDD}-{英大文字・数字 6 桁}  例: ORD-20231215-A3F9K2
"""

import secrets
import string
from datetime import datetime, timezone

_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"ORD-{now:%Y%m%d}-{suffix}"
