"""report_sessions.py - Per-user field report state machine.

    Idle --start--> Collecting --3rd distinct artifact--> Completed --> removed

A report needs a photo, a location and free-text notes. They may arrive in
any order from either input channel (chat webhook or the location beacon),
possibly more than once. Flags only ever go False -> True; a repeated
artifact overwrites the stored value.

Locking:
- registry lock: guards the user -> session map; never held across I/O
- session lock: serialises artifact writes for one user so two channels
  racing on the same session cannot lose a flag update

Lock order is session -> registry. start_session takes the registry lock
first but only ever acquires a brand-new session's lock, which nobody else
can hold yet.
"""

from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Union, BinaryIO

from core.errors import AlreadyActive, NoActiveSession, UpstreamUnavailable
from core.models import ArtifactKind, Coordinate, ReportCategory

logger = logging.getLogger("report_sessions")

ARTIFACT_FILES = {
    ArtifactKind.PHOTO: "photo.jpg",
    ArtifactKind.LOCATION: "location.txt",
    ArtifactKind.NOTES: "notes.txt",
}
NAME_FILE = "name.txt"

ArtifactValue = Union[bytes, BinaryIO, Coordinate, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReportSession:
    """One user's in-progress report."""

    def __init__(self, user_id: str, category: ReportCategory, started_at: datetime):
        self.user_id = user_id
        self.category = category
        self.started_at = started_at
        self.last_activity_at = started_at
        self.storage_target = None
        self.display_name = ""

        self.has_photo = False
        self.has_location = False
        self.has_notes = False
        self.coordinate: Optional[Coordinate] = None
        self.notes: Optional[str] = None

        self.completed_at: Optional[datetime] = None
        self.closed = False  # completed or evicted; never reopened
        self._lock = threading.Lock()

    @property
    def is_complete(self) -> bool:
        return self.has_photo and self.has_location and self.has_notes

    def has(self, kind: ArtifactKind) -> bool:
        return {
            ArtifactKind.PHOTO: self.has_photo,
            ArtifactKind.LOCATION: self.has_location,
            ArtifactKind.NOTES: self.has_notes,
        }[kind]

    def missing(self) -> List[ArtifactKind]:
        return [kind for kind in ArtifactKind if not self.has(kind)]

    def _apply(self, kind: ArtifactKind, value: ArtifactValue) -> None:
        if kind is ArtifactKind.PHOTO:
            self.has_photo = True
        elif kind is ArtifactKind.LOCATION:
            self.coordinate = value
            self.has_location = True
        elif kind is ArtifactKind.NOTES:
            self.notes = value
            self.has_notes = True

    def __repr__(self) -> str:
        flags = "".join(k.value[0].upper() if self.has(k) else "-" for k in ArtifactKind)
        return f"ReportSession({self.user_id!r}, {self.category.value}, [{flags}])"


@dataclass
class SubmitResult:
    accepted: bool
    completed: bool
    session: ReportSession
    replaced: bool = False  # same kind had already been stored


def _serialize(kind: ArtifactKind, value: ArtifactValue):
    if kind is ArtifactKind.LOCATION:
        if not isinstance(value, Coordinate):
            raise TypeError("LOCATION artifact must be a Coordinate")
        return value.as_text()
    if kind is ArtifactKind.NOTES:
        if not isinstance(value, str):
            raise TypeError("NOTES artifact must be a str")
        return value
    return value


class ReportRegistry:
    """Process-wide map of user -> at most one live ReportSession."""

    def __init__(self):
        self._sessions: Dict[str, ReportSession] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[ReportSession]:
        with self._lock:
            return self._sessions.get(user_id)

    def has_active(self, user_id: str) -> bool:
        return self.get(user_id) is not None

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def start_session(self, user_id: str, category: ReportCategory,
                      resolve_display_name: Callable[[str], str],
                      provision_storage: Callable[[ReportCategory, str, datetime], object],
                      now: Optional[datetime] = None) -> ReportSession:
        """
        Open a report for `user_id`.

        Raises:
            AlreadyActive: a session is live; it is left untouched.
            UpstreamUnavailable: storage could not be provisioned; no session remains.
        """
        now = now or _utcnow()
        session = ReportSession(user_id, category, now)
        session._lock.acquire()
        try:
            with self._lock:
                if user_id in self._sessions:
                    raise AlreadyActive(user_id)
                self._sessions[user_id] = session

            try:
                session.display_name = resolve_display_name(user_id) or ""
            except Exception as e:
                logger.warning("Display name lookup failed for %s: %s", user_id, e)
                session.display_name = ""

            try:
                session.storage_target = provision_storage(category, user_id, now)
            except Exception as e:
                with self._lock:
                    if self._sessions.get(user_id) is session:
                        del self._sessions[user_id]
                session.closed = True
                if isinstance(e, UpstreamUnavailable):
                    raise
                raise UpstreamUnavailable("report-storage", str(e)) from e

            try:
                session.storage_target.write(NAME_FILE, session.display_name)
            except Exception as e:
                logger.warning("Name record write failed for %s: %s", user_id, e)
        finally:
            session._lock.release()

        logger.info("Report session started: user=%s category=%s", user_id, category.value)
        return session

    def submit_artifact(self, user_id: str, kind: ArtifactKind, value: ArtifactValue,
                        now: Optional[datetime] = None) -> SubmitResult:
        """
        Store one artifact and evaluate completion.

        The value is written through storage first; the flag is set only if
        the write succeeded. When the third distinct flag is set the session
        is removed from the registry before returning, and this call is the
        only one that ever reports completed=True.

        Raises:
            NoActiveSession: no live session (never started, or already completed).
            UpstreamUnavailable: storage write failed; flag left unset.
        """
        session = self.get(user_id)
        if session is None:
            raise NoActiveSession(user_id)

        payload = _serialize(kind, value)
        with session._lock:
            if session.closed:
                raise NoActiveSession(user_id)

            try:
                session.storage_target.write(ARTIFACT_FILES[kind], payload)
            except UpstreamUnavailable:
                raise
            except Exception as e:
                raise UpstreamUnavailable("report-storage", str(e)) from e

            was_set = session.has(kind)
            session._apply(kind, value)
            session.last_activity_at = now or _utcnow()
            logger.info("Artifact %s %s for %s (%r)",
                        kind.value, "replaced" if was_set else "accepted", user_id, session)

            if not session.is_complete:
                return SubmitResult(accepted=True, completed=False, session=session, replaced=was_set)

            session.closed = True
            session.completed_at = session.last_activity_at
            with self._lock:
                if self._sessions.get(user_id) is session:
                    del self._sessions[user_id]

        logger.info("Report session completed: user=%s category=%s", user_id, session.category.value)
        return SubmitResult(accepted=True, completed=True, session=session)

    def cancel(self, user_id: str) -> Optional[ReportSession]:
        """Drop a live session without finalizing it. Waits for an in-flight write."""
        session = self.get(user_id)
        if session is None:
            return None
        with session._lock:
            if session.closed:
                return None
            session.closed = True
            with self._lock:
                if self._sessions.get(user_id) is session:
                    del self._sessions[user_id]
        logger.info("Report session cancelled: user=%s", user_id)
        return session

    def evict_idle(self, now: datetime, idle_seconds: float) -> List[ReportSession]:
        """Remove sessions with no artifact activity for `idle_seconds`.

        Works on a snapshot; sessions busy with a write are skipped this round.
        """
        with self._lock:
            snapshot = list(self._sessions.values())

        evicted = []
        for session in snapshot:
            if (now - session.last_activity_at).total_seconds() < idle_seconds:
                continue
            if not session._lock.acquire(blocking=False):
                continue
            try:
                if session.closed:
                    continue
                if (now - session.last_activity_at).total_seconds() < idle_seconds:
                    continue
                session.closed = True
                with self._lock:
                    if self._sessions.get(session.user_id) is session:
                        del self._sessions[session.user_id]
                evicted.append(session)
            finally:
                session._lock.release()

        if evicted:
            logger.info("Evicted %d idle report sessions", len(evicted))
        return evicted
