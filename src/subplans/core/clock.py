"""Injectable time source."""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current aware UTC instant."""
    return datetime.now(UTC)
