from __future__ import annotations

import time
from datetime import datetime, timezone


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_timestamp_ms(value: object) -> int | None:
    """Coerce an epoch (s or ms) or ISO-8601 value into epoch milliseconds."""

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        # Anything below 10^11 cannot be a millisecond timestamp after 1973.
        if value < 100_000_000_000:
            return int(value * 1000)
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lstrip("-").isdigit():
            return parse_timestamp_ms(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None
