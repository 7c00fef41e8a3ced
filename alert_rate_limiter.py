"""alert_rate_limiter.py - Per-user cooldown for geofence warnings.

A user receives at most one danger-zone warning per cooldown window.

Two-step contract:
- should_fire(): read-only check against the last *successful* alert
- record_fired(): called by the engine only after the notifier confirmed
  delivery, so a failed push never consumes the cooldown

State is process-local and guarded by a lock (Flask serves on threads).
"""

from __future__ import annotations
import logging
import threading
from typing import Dict, Optional, Any
from datetime import datetime

logger = logging.getLogger(__name__)


class AlertThrottle:
    """Tracks last alert time per user and enforces a fixed cooldown."""

    def __init__(self, cooldown_seconds: float):
        if cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be >= 0")
        self.cooldown_seconds = float(cooldown_seconds)
        self._last_alert_at: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def should_fire(self, user_id: str, now: datetime) -> bool:
        """True iff no prior alert was recorded or the cooldown has elapsed.

        Args:
            user_id: LINE user identifier
            now: Time of the position sample being evaluated
        """
        with self._lock:
            last = self._last_alert_at.get(user_id)
        if last is None:
            return True
        return (now - last).total_seconds() >= self.cooldown_seconds

    def record_fired(self, user_id: str, now: datetime) -> None:
        """Record a confirmed alert delivery."""
        with self._lock:
            self._last_alert_at[user_id] = now
        logger.debug("[alert_rate_limiter] recorded alert for %s at %s", user_id, now.isoformat())

    def last_fired(self, user_id: str) -> Optional[datetime]:
        with self._lock:
            return self._last_alert_at.get(user_id)

    def forget(self, user_id: str) -> None:
        """Drop cooldown state (tracking disabled or evicted)."""
        with self._lock:
            self._last_alert_at.pop(user_id, None)

    def get_stats(self, user_id: str, now: datetime) -> Dict[str, Any]:
        """
        Returns:
            Dictionary with throttle stats:
            - allowed: Whether an alert would fire now
            - last_alert_at: ISO timestamp of last confirmed alert, or None
            - reset_in_seconds: Seconds until the cooldown expires
        """
        last = self.last_fired(user_id)
        reset_in = 0.0
        if last is not None:
            reset_in = max(0.0, self.cooldown_seconds - (now - last).total_seconds())
        return {
            'allowed': reset_in == 0.0,
            'last_alert_at': last.isoformat() if last else None,
            'cooldown_seconds': self.cooldown_seconds,
            'reset_in_seconds': reset_in,
        }


__all__ = ['AlertThrottle']
