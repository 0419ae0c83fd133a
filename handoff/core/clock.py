# handoff/core/clock.py
import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], int]


def system_clock() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def iso_from_ms(ms: int) -> str:
    """Epoch millis → ISO 8601 UTC with millisecond precision and a Z suffix."""
    dt = datetime.fromtimestamp(ms // 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms % 1000:03d}Z"


def utc_iso_now() -> str:
    return iso_from_ms(system_clock())
