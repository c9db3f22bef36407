"""Time source helpers.

All persisted timestamps are naive UTC, matching ``DateTime`` columns.
Components take a ``clock`` callable so SLA logic can be driven in tests.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
