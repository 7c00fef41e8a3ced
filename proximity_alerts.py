"""proximity_alerts.py

Warn opted-in users when a position sample falls inside a danger zone.

Zone membership: a dynamic zone built from historical reports (bounding box
query + exact haversine) with a fixed static zone as fallback whenever the
lookup fails or its circuit breaker is open. The static zone is always
checked too, so the fixed hazard keeps alerting while history is empty.

Gating, all required to fire: tracking enabled, sample in zone, throttle
permits. The cooldown only advances after the notifier confirmed delivery.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from alert_rate_limiter import AlertThrottle
from circuit_breaker import CircuitBreaker
from core.errors import UpstreamUnavailable
from core.models import Coordinate, DynamicZone, StaticZone, ZoneCheck
from geo_utils import distance_meters, is_within_dynamic_zone
from line_messaging import ReplyContext, send_notice
from logging_config import get_logger, get_metrics_logger

logger = get_logger("proximity_alerts")
metrics = get_metrics_logger("proximity_alerts")

ALERT_TEXT = "⚠️ 您已進入危險區域，請小心安全！"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------
# Tracking state
# ---------------------------------------------------------------------

@dataclass
class AlertState:
    tracking_enabled: bool
    enabled_at: datetime
    last_position_at: datetime
    last_alert_at: Optional[datetime] = None


class TrackingRegistry:
    """UserId -> AlertState for users who opted into tracking."""

    def __init__(self):
        self._states: Dict[str, AlertState] = {}
        self._lock = threading.Lock()

    def enable(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """Returns True when tracking was newly enabled."""
        now = now or _utcnow()
        with self._lock:
            state = self._states.get(user_id)
            if state is not None:
                state.last_position_at = now
                return False
            self._states[user_id] = AlertState(True, now, now)
            return True

    def disable(self, user_id: str) -> bool:
        with self._lock:
            return self._states.pop(user_id, None) is not None

    def is_tracking(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._states

    def get(self, user_id: str) -> Optional[AlertState]:
        with self._lock:
            return self._states.get(user_id)

    def touch(self, user_id: str, now: datetime) -> None:
        with self._lock:
            state = self._states.get(user_id)
            if state is not None:
                state.last_position_at = now

    def mark_alerted(self, user_id: str, now: datetime) -> None:
        with self._lock:
            state = self._states.get(user_id)
            if state is not None:
                state.last_alert_at = now

    def tracked_users(self) -> List[str]:
        with self._lock:
            return list(self._states)

    def evict_if_idle(self, user_id: str, now: datetime, idle_seconds: float) -> Optional[AlertState]:
        """Remove the user only if still idle; check and removal share one lock hold."""
        with self._lock:
            state = self._states.get(user_id)
            if state is None or (now - state.last_position_at).total_seconds() < idle_seconds:
                return None
            return self._states.pop(user_id)

    def idle_users(self, now: datetime, idle_seconds: float) -> List[str]:
        """Snapshot of users whose last position is older than `idle_seconds`."""
        with self._lock:
            return [
                uid for uid, state in self._states.items()
                if (now - state.last_position_at).total_seconds() >= idle_seconds
            ]


# ---------------------------------------------------------------------
# Zone evaluation
# ---------------------------------------------------------------------

class DangerZoneEvaluator:
    def __init__(self, static_zone: StaticZone, dynamic_zone: Optional[DynamicZone] = None,
                 breaker: Optional[CircuitBreaker] = None):
        self.static_zone = static_zone
        self.dynamic_zone = dynamic_zone
        self.breaker = breaker

    def evaluate(self, point: Coordinate) -> ZoneCheck:
        static_distance = distance_meters(point, self.static_zone.center)
        if static_distance <= self.static_zone.radius_m:
            return ZoneCheck(True, static_distance, self.static_zone.name)

        if self.dynamic_zone is None:
            return ZoneCheck(False, static_distance, self.static_zone.name)

        try:
            if self.breaker is not None:
                hit = self.breaker.call(is_within_dynamic_zone, point, self.dynamic_zone)
            else:
                hit = is_within_dynamic_zone(point, self.dynamic_zone)
        except Exception as e:
            # Degrade to the static zone rather than going silent
            logger.warning("zone_lookup_failed_static_fallback",
                           zone=self.dynamic_zone.name, error=str(e))
            return ZoneCheck(False, static_distance, "static-fallback")

        if hit:
            return ZoneCheck(True, None, self.dynamic_zone.name)
        return ZoneCheck(False, static_distance, self.dynamic_zone.name)


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------

@dataclass
class PositionOutcome:
    tracking: bool
    in_zone: bool
    alerted: bool
    zone_source: str = ""
    distance_m: Optional[float] = None
    reason: str = ""


class GeofenceAlertEngine:
    """Decides, per position sample, whether to warn the user."""

    def __init__(self, evaluator: DangerZoneEvaluator, throttle: AlertThrottle,
                 notifier, tracking: Optional[TrackingRegistry] = None,
                 alert_text: str = ALERT_TEXT):
        self.evaluator = evaluator
        self.throttle = throttle
        self.notifier = notifier
        self.tracking = tracking or TrackingRegistry()
        self.alert_text = alert_text
        self._user_locks: Dict[str, threading.Lock] = {}
        self._user_locks_guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    def enable_tracking(self, user_id: str, now: Optional[datetime] = None) -> bool:
        return self.tracking.enable(user_id, now)

    def _forget(self, user_id: str) -> None:
        self.throttle.forget(user_id)
        with self._user_locks_guard:
            self._user_locks.pop(user_id, None)

    def disable_tracking(self, user_id: str) -> bool:
        removed = self.tracking.disable(user_id)
        self._forget(user_id)
        return removed

    def evict_if_idle(self, user_id: str, now: datetime, idle_seconds: float) -> bool:
        """Disable tracking for `user_id` unless a sample arrived within `idle_seconds`."""
        if self.tracking.evict_if_idle(user_id, now, idle_seconds) is None:
            return False
        self._forget(user_id)
        return True

    def on_position_sample(self, user_id: str, coordinate: Coordinate,
                           now: Optional[datetime] = None,
                           reply: Optional[ReplyContext] = None) -> PositionOutcome:
        now = now or _utcnow()
        check = self.evaluator.evaluate(coordinate)
        logger.debug("position_sample", user_id=user_id, in_zone=check.in_zone,
                     distance_m=check.distance_m, zone_source=check.source)

        if not self.tracking.is_tracking(user_id):
            return PositionOutcome(False, check.in_zone, False, check.source, check.distance_m, "not_tracking")

        self.tracking.touch(user_id, now)
        if not check.in_zone:
            return PositionOutcome(True, False, False, check.source, check.distance_m, "outside_zone")

        # check -> send -> record must not interleave for one user
        with self._lock_for(user_id):
            if not self.throttle.should_fire(user_id, now):
                metrics.alert_suppressed(user_id=user_id, reason="cooldown")
                return PositionOutcome(True, True, False, check.source, check.distance_m, "cooldown")

            try:
                send_notice(self.notifier, user_id, self.alert_text, reply)
            except UpstreamUnavailable as e:
                logger.error("alert_send_failed", user_id=user_id, error=str(e))
                return PositionOutcome(True, True, False, check.source, check.distance_m, "send_failed")

            self.throttle.record_fired(user_id, now)
            self.tracking.mark_alerted(user_id, now)

        metrics.alert_sent(user_id=user_id, distance_m=check.distance_m, zone_source=check.source)
        return PositionOutcome(True, True, True, check.source, check.distance_m, "alerted")
