"""Per-integration tracker quota bookkeeping.

The worker consults :meth:`RateLimitTracker.ready` before dequeuing, so we
slow down while quota is low instead of finding out from a 403.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from app.services.trackers.base import RateLimitInfo

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    last_call_at: Optional[datetime] = None
    deferred_until: Optional[datetime] = None


class RateLimitTracker:
    def __init__(self, *, reserve: int = 10, min_interval_seconds: float = 0.0):
        self.reserve = reserve
        self.min_interval = timedelta(seconds=max(0.0, min_interval_seconds))
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def observe(self, integration_id: str, info: Optional[RateLimitInfo], now: datetime) -> None:
        """Record a tracker call and whatever quota metadata came back with it."""
        with self._lock:
            window = self._windows.setdefault(integration_id, _Window())
            window.last_call_at = now
            if info is None:
                return
            if info.remaining is not None:
                window.remaining = info.remaining
            if info.reset_at is not None:
                window.reset_at = info.reset_at
            if window.remaining is not None and window.remaining <= self.reserve:
                logger.warning(
                    f"Tracker quota low for integration {integration_id}: "
                    f"{window.remaining} left, resets at {window.reset_at}"
                )

    def defer(self, integration_id: str, until: datetime) -> None:
        """Pause an integration (e.g. after a Retry-After)."""
        with self._lock:
            window = self._windows.setdefault(integration_id, _Window())
            if window.deferred_until is None or until > window.deferred_until:
                window.deferred_until = until

    def ready(self, integration_id: str, now: datetime) -> bool:
        with self._lock:
            window = self._windows.get(integration_id)
            if window is None:
                return True
            if window.deferred_until is not None and now < window.deferred_until:
                return False
            if (
                window.remaining is not None
                and window.remaining <= self.reserve
                and window.reset_at is not None
                and now < window.reset_at
            ):
                return False
            if window.last_call_at is not None and now - window.last_call_at < self.min_interval:
                return False
            return True

    def remaining(self, integration_id: str) -> Optional[int]:
        with self._lock:
            window = self._windows.get(integration_id)
            return window.remaining if window else None
