"""Default clock and id generator injected into services."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

Clock = Callable[[], datetime]
IdFactory = Callable[[str], str]

CENT = Decimal("0.01")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def to_money(value: Any) -> Decimal:
    """Coerce to a 2-decimal Decimal, rounding half-up. Floats go via str."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
