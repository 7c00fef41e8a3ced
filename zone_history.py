"""zone_history.py

Historical field reports as a source of danger zones.

Every finalized report is recorded with its coordinate; the dynamic zone
asks for reports inside a bounding box (optionally limited to a recent
window) and confirms each candidate with the exact haversine distance.
"""

from __future__ import annotations
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from core.errors import UpstreamUnavailable
from core.models import BoundingBox, Coordinate

logger = logging.getLogger("zone_history")


def _db():
    try:
        import db_utils
        return db_utils
    except Exception as e:
        logger.error("[zone_history] DB helpers unavailable: %s", e)
        return None


class ReportHistoryStore:
    """Postgres-backed lookup of past report coordinates.

    Args:
        window_days: Only reports newer than this count; 0 means all history.
        db: Module exposing ``execute`` and ``fetch_all`` (defaults to db_utils).
    """

    def __init__(self, window_days: int = 30, db=None):
        self.window_days = window_days
        self._db = db

    @property
    def db(self):
        if self._db is None:
            self._db = _db()
        if self._db is None:
            raise UpstreamUnavailable("report-history", "database helpers not importable")
        return self._db

    def ensure_table(self) -> None:
        self.db.execute(
            """
            CREATE TABLE IF NOT EXISTS report_history (
                id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                category TEXT NOT NULL,
                latitude DOUBLE PRECISION NOT NULL,
                longitude DOUBLE PRECISION NOT NULL,
                reported_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                archive_url TEXT
            );
            CREATE INDEX IF NOT EXISTS report_history_lat_lng_idx
                ON report_history (latitude, longitude);
            """,
            (),
        )

    def _cutoff(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if not self.window_days:
            return None
        now = now or datetime.now(timezone.utc)
        return now - timedelta(days=self.window_days)

    def candidates_near(self, bbox: BoundingBox, now: Optional[datetime] = None) -> List[Coordinate]:
        """Report coordinates inside the box. Raises on any DB failure."""
        query = """
            SELECT latitude, longitude
            FROM report_history
            WHERE latitude BETWEEN %s AND %s
              AND longitude BETWEEN %s AND %s
        """
        params = [bbox.min_lat, bbox.max_lat, bbox.min_lng, bbox.max_lng]
        cutoff = self._cutoff(now)
        if cutoff is not None:
            query += " AND reported_at >= %s"
            params.append(cutoff)

        rows = self.db.fetch_all(query, tuple(params))
        return [Coordinate(float(r["latitude"]), float(r["longitude"])) for r in rows]

    def record_report(self, user_id: str, category: str, coordinate: Coordinate,
                      captured_at: datetime, archive_url: str = "") -> None:
        self.db.execute(
            """
            INSERT INTO report_history (user_id, category, latitude, longitude, reported_at, archive_url)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (user_id, category, coordinate.lat, coordinate.lng, captured_at, archive_url or None),
        )
        logger.info("[zone_history] recorded %s report at %s", category, coordinate.as_text())
