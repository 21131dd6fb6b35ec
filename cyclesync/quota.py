"""Detection and bookkeeping of the data provider's daily API quota."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .persistence.models import utcnow

logger = logging.getLogger(__name__)

QUOTA_STATUS_CODE = 402
QUOTA_MESSAGE_MARKERS = (
    "402",
    "Payment Required",
    "exceeded your daily API requests limit",
    # the provider client raises this when it receives the quota error page
    "Cannot convert circular structure to BSON",
)


def _status_of(err: BaseException) -> Optional[int]:
    for candidate in (
        getattr(err, "status", None),
        getattr(err, "status_code", None),
        getattr(getattr(err, "response", None), "status_code", None),
    ):
        if isinstance(candidate, int):
            return candidate
    return None


def is_quota_signal(err: Optional[BaseException]) -> bool:
    """Return True when ``err`` means the provider's usage quota was hit."""
    if err is None:
        return False
    if _status_of(err) == QUOTA_STATUS_CODE:
        return True
    message = str(err)
    return any(marker in message for marker in QUOTA_MESSAGE_MARKERS)


def next_quota_reset(now: Optional[datetime] = None) -> datetime:
    """Next UTC midnight strictly after ``now``."""
    now = (now or utcnow()).astimezone(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


class QuotaLimitManager:
    """Track whether the daily quota is exhausted and when it rolls over.

    ``check_limit`` is meant to be registered as a pause condition and
    ``check_reset`` as a continue condition of a :class:`CycleEngine`.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._limit_reached = False
        self._reset_at: Optional[datetime] = None

    @property
    def is_limit_reached(self) -> bool:
        return self._limit_reached

    @property
    def reset_at(self) -> Optional[datetime]:
        return self._reset_at

    def restore(self, reset_at: Optional[datetime]) -> None:
        """Re-arm a limit hit by an earlier process until ``reset_at``."""
        if reset_at is None or self._clock() >= reset_at:
            return
        self._limit_reached = True
        self._reset_at = reset_at
        logger.info(f"Daily API quota still exhausted until {reset_at.isoformat()}")

    async def check_limit(self, error: Optional[BaseException] = None) -> bool:
        if is_quota_signal(error):
            if not self._limit_reached:
                self._reset_at = next_quota_reset(self._clock())
                logger.warning(
                    f"Daily API quota reached, next reset at {self._reset_at.isoformat()}"
                )
            self._limit_reached = True
        return self._limit_reached

    async def check_reset(self) -> bool:
        if not self._limit_reached:
            return True
        if self._reset_at is not None and self._clock() >= self._reset_at:
            logger.info("Daily API quota window rolled over")
            self._limit_reached = False
            self._reset_at = None
            return True
        return False
