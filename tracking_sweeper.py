"""tracking_sweeper.py — background idle eviction.

Runs on a fixed interval, independent of request traffic:
- tracking state whose last position is older than the idle window is
  dropped and the user gets a one-time "tracking disabled" push
- optionally, report sessions with no artifact activity are cancelled

Keys are snapshotted before acting so concurrent requests can keep
mutating the stores.

Env:
  TRACKING_IDLE_SECONDS=600
  SWEEP_INTERVAL_SECONDS=60
  REPORT_SESSION_IDLE_EVICTION=false
  REPORT_SESSION_IDLE_SECONDS=1800
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from core.errors import UpstreamUnavailable
from logging_config import get_logger

logger = get_logger("tracking_sweeper")

TRACKING_DISABLED_TEXT = "ℹ️ 已一段時間未收到您的位置，定位通知已自動關閉。如需再次啟用請傳送任意訊息。"
SESSION_EXPIRED_TEXT = "ℹ️ 回報逾時未完成，已自動取消。如需回報請重新開始。"


@dataclass
class SweepResult:
    evicted_users: List[str] = field(default_factory=list)
    expired_sessions: List[str] = field(default_factory=list)
    failed_notices: int = 0


class IdleSweeper:
    def __init__(self, engine, notifier, idle_seconds: float, interval_seconds: float,
                 registry=None, session_idle_seconds: Optional[float] = None):
        self.engine = engine
        self.notifier = notifier
        self.idle_seconds = idle_seconds
        self.interval_seconds = interval_seconds
        self.registry = registry
        self.session_idle_seconds = session_idle_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or datetime.now(timezone.utc)
        result = SweepResult()

        for user_id in self.engine.tracking.idle_users(now, self.idle_seconds):
            # Another request may have refreshed or removed it since the snapshot
            if not self.engine.evict_if_idle(user_id, now, self.idle_seconds):
                continue
            result.evicted_users.append(user_id)
            if not self._push(user_id, TRACKING_DISABLED_TEXT):
                result.failed_notices += 1

        if self.registry is not None and self.session_idle_seconds:
            for session in self.registry.evict_idle(now, self.session_idle_seconds):
                result.expired_sessions.append(session.user_id)
                if not self._push(session.user_id, SESSION_EXPIRED_TEXT):
                    result.failed_notices += 1

        if result.evicted_users or result.expired_sessions:
            logger.info("idle_sweep", evicted=len(result.evicted_users),
                        expired_sessions=len(result.expired_sessions),
                        failed_notices=result.failed_notices)
        return result

    def _push(self, user_id: str, text: str) -> bool:
        try:
            self.notifier.send_deferred(user_id, text)
            return True
        except UpstreamUnavailable as e:
            logger.warning("idle_notice_failed", user_id=user_id, error=str(e))
            return False

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("idle_sweep_crashed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="idle-sweeper", daemon=True)
        self._thread.start()
        logger.info("idle_sweeper_started", interval_seconds=self.interval_seconds,
                    idle_seconds=self.idle_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
