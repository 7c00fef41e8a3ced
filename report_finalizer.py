# report_finalizer.py — one-time packaging and delivery of a completed report
from __future__ import annotations
import time
from datetime import datetime, timezone
from typing import Optional

from core.errors import UpstreamUnavailable
from core.models import DownloadReference
from line_messaging import ReplyContext, send_notice
from logging_config import get_logger, get_metrics_logger
from report_sessions import ReportSession

logger = get_logger("report_finalizer")
metrics = get_metrics_logger("report_finalizer")

METADATA_FILE = "metadata.txt"
METADATA_FIELDS = ("name", "location", "captured_at", "notes")

COMPLETION_TEXT = "✅ 回報已完成，感謝您的協助！"
COMPLETION_LINK_TEXT = "✅ 回報已完成，感謝您的協助！\n下載：{link}"


def _one_line(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.splitlines()).strip()


def build_metadata(session: ReportSession, captured_at: datetime) -> str:
    """
    Metadata record: one `field: value` per line in fixed order. Absent
    values are written as empty strings; no line is ever omitted.
    """
    values = {
        "name": _one_line(session.display_name),
        "location": session.coordinate.as_text() if session.coordinate else "",
        "captured_at": captured_at.isoformat(),
        "notes": _one_line(session.notes),
    }
    return "".join(f"{key}: {values[key]}\n" for key in METADATA_FIELDS)


class ReportFinalizer:
    """
    Persists metadata, packages the report and announces it.

    Exactly-once invocation is the registry's job (only one submit call
    sees completed=True); this class does not deduplicate.

    Collaborators:
        archiver: ``package_directory(target) -> DownloadReference``
        notifier: ``send_immediate`` / ``send_deferred``
        delivery_webhook: optional ``notify(reference, filename, category)``
        history: optional ``record_report(...)`` feeding dynamic zones
    """

    def __init__(self, archiver, notifier, delivery_webhook=None, history=None):
        self.archiver = archiver
        self.notifier = notifier
        self.delivery_webhook = delivery_webhook
        self.history = history

    def finalize(self, session: ReportSession, reply: Optional[ReplyContext] = None,
                 now: Optional[datetime] = None) -> DownloadReference:
        """
        Raises UpstreamUnavailable if the metadata record or archive could not
        be written. Failures of the follow-up side effects are only logged.
        """
        started = time.time()
        captured_at = session.completed_at or now or datetime.now(timezone.utc)
        category = session.category.value

        session.storage_target.write(METADATA_FILE, build_metadata(session, captured_at))
        reference = self.archiver.package_directory(session.storage_target)

        metrics.report_finalized(
            user_id=session.user_id,
            category=category,
            archive=reference.filename,
            duration_ms=int((time.time() - started) * 1000),
        )

        self._record_history(session, captured_at, reference)
        self._notify_user(session, reference, reply)
        self._forward(session, reference)
        return reference

    def _record_history(self, session: ReportSession, captured_at: datetime,
                        reference: DownloadReference) -> None:
        if self.history is None or session.coordinate is None:
            return
        try:
            self.history.record_report(session.user_id, session.category.value,
                                       session.coordinate, captured_at, reference.url)
        except Exception as e:
            logger.warning("report_history_record_failed", user_id=session.user_id, error=str(e))

    def _notify_user(self, session: ReportSession, reference: DownloadReference,
                     reply: Optional[ReplyContext]) -> None:
        text = COMPLETION_LINK_TEXT.format(link=reference.url) if reference.url else COMPLETION_TEXT
        try:
            send_notice(self.notifier, session.user_id, text, reply)
        except UpstreamUnavailable as e:
            logger.error("report_completion_notice_failed", user_id=session.user_id, error=str(e))

    def _forward(self, session: ReportSession, reference: DownloadReference) -> None:
        if self.delivery_webhook is None:
            return
        try:
            self.delivery_webhook.notify(reference, reference.filename, session.category.value)
        except UpstreamUnavailable as e:
            logger.error("delivery_webhook_failed", filename=reference.filename, error=str(e))
