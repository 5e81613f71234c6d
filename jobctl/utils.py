"""Time and id helpers shared by the store and the queue."""

import secrets
import time
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_db(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so stored timestamps sort lexicographically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def generate_job_id() -> str:
    """e.g. 'job_1760870400123_9f2c1a'."""
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(3)}"
