# chat_handler.py — LINE event boundary and bot orchestration
#
# Raw webhook events are classified exactly once into a closed set of
# intents (IntentKind); everything below parse_event works on that enum.
# Position samples and report artifacts reach the core from two channels:
#   - chat events (POST /webhook): carry a single-use reply token
#   - the LIFF beacon (POST /location): push-only

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from core.errors import AlreadyActive, NoActiveSession, UpstreamUnavailable
from core.models import ArtifactKind, Coordinate, ReportCategory
from geo_utils import validate_coordinates
from line_messaging import ReplyContext, send_notice
from logging_config import get_logger

log = get_logger("chat_handler")

TRACKING_ENABLED_TEXT = "✅ 你已啟用定位通知功能！請開啟 LIFF 開始追蹤"
TRACKING_DISABLED_TEXT = "🛑 已關閉定位通知功能。"
TRACKING_NOT_ENABLED_TEXT = "ℹ️ 定位通知尚未啟用。"
REPORT_STARTED_TEXT = "📝 開始回報（{category}）！請傳送：照片、位置、文字說明（順序不拘）。"
REPORT_ALREADY_ACTIVE_TEXT = "ℹ️ 您已有進行中的回報，尚缺：{missing}"
REPORT_PROGRESS_TEXT = "👍 已收到{received}。尚缺：{missing}"
REPORT_START_FAILED_TEXT = "⚠️ 目前無法建立回報，請稍後再試。"
ARTIFACT_SAVE_FAILED_TEXT = "⚠️ {kind}儲存失敗，請重新傳送。"
REPORT_FINALIZE_FAILED_TEXT = "⚠️ 回報封存失敗，我們會儘快處理。"

ARTIFACT_LABELS = {
    ArtifactKind.PHOTO: "照片",
    ArtifactKind.LOCATION: "位置",
    ArtifactKind.NOTES: "文字說明",
}
CATEGORY_LABELS = {
    ReportCategory.HAZARD: "危險地點",
    ReportCategory.SIGHTING: "目擊",
}


class IntentKind(Enum):
    START_TRACKING = "start_tracking"
    STOP_TRACKING = "stop_tracking"
    START_REPORT = "start_report"
    PHOTO = "photo"
    LOCATION = "location"
    NOTES = "notes"


TRACKING_COMMANDS = {
    "start tracking": IntentKind.START_TRACKING,
    "開始追蹤": IntentKind.START_TRACKING,
    "啟用定位": IntentKind.START_TRACKING,
    "stop tracking": IntentKind.STOP_TRACKING,
    "停止追蹤": IntentKind.STOP_TRACKING,
    "關閉定位": IntentKind.STOP_TRACKING,
}
REPORT_COMMANDS = {
    "report hazard": ReportCategory.HAZARD,
    "回報危險": ReportCategory.HAZARD,
    "report sighting": ReportCategory.SIGHTING,
    "回報目擊": ReportCategory.SIGHTING,
}


@dataclass
class ChatIntent:
    kind: IntentKind
    user_id: str
    reply_token: Optional[str] = None
    event_type: str = "message"
    text: Optional[str] = None
    category: Optional[ReportCategory] = None
    coordinate: Optional[Coordinate] = None
    message_id: Optional[str] = None


def _normalize_command(text: str) -> str:
    return " ".join(text.strip().lower().split())


def parse_event(event: Dict[str, Any]) -> Optional[ChatIntent]:
    """Classify a LINE webhook event. None for events the bot does not act on."""
    user_id = (event.get("source") or {}).get("userId")
    if not user_id:
        return None
    event_type = event.get("type")
    reply_token = event.get("replyToken")

    if event_type == "unfollow":
        return ChatIntent(IntentKind.STOP_TRACKING, user_id, None, event_type="unfollow")
    if event_type != "message":
        return None

    message = event.get("message") or {}
    mtype = message.get("type")

    if mtype == "text":
        text = message.get("text") or ""
        command = _normalize_command(text)
        if command in TRACKING_COMMANDS:
            return ChatIntent(TRACKING_COMMANDS[command], user_id, reply_token)
        if command in REPORT_COMMANDS:
            return ChatIntent(IntentKind.START_REPORT, user_id, reply_token,
                              category=REPORT_COMMANDS[command])
        return ChatIntent(IntentKind.NOTES, user_id, reply_token, text=text)

    if mtype == "image":
        return ChatIntent(IntentKind.PHOTO, user_id, reply_token, message_id=message.get("id"))

    if mtype == "location":
        lat, lng = message.get("latitude"), message.get("longitude")
        if not validate_coordinates(lat, lng):
            log.warning("invalid_location_message", user_id=user_id, lat=lat, lng=lng)
            return None
        return ChatIntent(IntentKind.LOCATION, user_id, reply_token,
                          coordinate=Coordinate(float(lat), float(lng)),
                          message_id=message.get("id"))

    return None


def _missing_text(session) -> str:
    return "、".join(ARTIFACT_LABELS[k] for k in session.missing())


class BotService:
    """
    Glue between the two input channels and the core.

    Collaborators:
        engine: GeofenceAlertEngine (owns tracking state)
        registry: ReportRegistry
        finalizer: ReportFinalizer
        notifier: send_immediate / send_deferred
        profiles: resolve_display_name(user_id)
        provisioner: provision(category, user_id, timestamp)
        content: get_message_content(message_id) -> bytes
    """

    def __init__(self, engine, registry, finalizer, notifier, profiles, provisioner,
                 content, auto_enable_tracking: bool = True):
        self.engine = engine
        self.registry = registry
        self.finalizer = finalizer
        self.notifier = notifier
        self.profiles = profiles
        self.provisioner = provisioner
        self.content = content
        self.auto_enable_tracking = auto_enable_tracking
        self._handlers = {
            IntentKind.START_TRACKING: self._start_tracking,
            IntentKind.STOP_TRACKING: self._stop_tracking,
            IntentKind.START_REPORT: self._start_report,
            IntentKind.PHOTO: self._photo,
            IntentKind.LOCATION: self._location,
            IntentKind.NOTES: self._notes,
        }

    # ---------------- entry points ----------------

    def handle_event(self, event: Dict[str, Any], now: Optional[datetime] = None) -> Optional[ChatIntent]:
        intent = parse_event(event)
        if intent is None:
            log.debug("event_ignored", event_type=event.get("type"))
            return None
        now = now or datetime.now(timezone.utc)
        reply = ReplyContext(intent.reply_token)
        log.info("chat_event", user_id=intent.user_id, intent=intent.kind.value)
        self._handlers[intent.kind](intent, reply, now)
        return intent

    def handle_position_report(self, user_id: str, coordinate: Coordinate,
                               now: Optional[datetime] = None):
        """Beacon sample: geofence check, plus LOCATION artifact when a report is open."""
        now = now or datetime.now(timezone.utc)
        outcome = self.engine.on_position_sample(user_id, coordinate, now)
        if self.registry.has_active(user_id):
            self._submit(user_id, ArtifactKind.LOCATION, coordinate, None, now, quiet_repeats=True)
        return outcome

    # ---------------- intent handlers ----------------

    def _notify(self, user_id: str, text: str, reply: Optional[ReplyContext]) -> None:
        try:
            send_notice(self.notifier, user_id, text, reply)
        except UpstreamUnavailable as e:
            log.error("notice_failed", user_id=user_id, error=str(e))

    def _start_tracking(self, intent: ChatIntent, reply: ReplyContext, now: datetime) -> None:
        self.engine.enable_tracking(intent.user_id, now)
        self._notify(intent.user_id, TRACKING_ENABLED_TEXT, reply)

    def _stop_tracking(self, intent: ChatIntent, reply: ReplyContext, now: datetime) -> None:
        removed = self.engine.disable_tracking(intent.user_id)
        if intent.event_type == "unfollow":
            # Blocked by the user: nothing can be delivered any more
            self.registry.cancel(intent.user_id)
            return
        self._notify(intent.user_id, TRACKING_DISABLED_TEXT if removed else TRACKING_NOT_ENABLED_TEXT, reply)

    def _start_report(self, intent: ChatIntent, reply: ReplyContext, now: datetime) -> None:
        try:
            self.registry.start_session(
                intent.user_id, intent.category,
                self.profiles.resolve_display_name,
                self.provisioner.provision,
                now=now,
            )
        except AlreadyActive:
            session = self.registry.get(intent.user_id)
            missing = _missing_text(session) if session else ""
            self._notify(intent.user_id, REPORT_ALREADY_ACTIVE_TEXT.format(missing=missing), reply)
            return
        except UpstreamUnavailable as e:
            log.error("report_start_failed", user_id=intent.user_id, error=str(e))
            self._notify(intent.user_id, REPORT_START_FAILED_TEXT, reply)
            return
        label = CATEGORY_LABELS.get(intent.category, intent.category.value)
        self._notify(intent.user_id, REPORT_STARTED_TEXT.format(category=label), reply)

    def _auto_enable(self, intent: ChatIntent, reply: ReplyContext, now: datetime) -> None:
        # Any message outside a report opts the user in
        if self.auto_enable_tracking:
            self._start_tracking(intent, reply, now)

    def _photo(self, intent: ChatIntent, reply: ReplyContext, now: datetime) -> None:
        if not self.registry.has_active(intent.user_id):
            self._auto_enable(intent, reply, now)
            return
        try:
            data = self.content.get_message_content(intent.message_id)
        except UpstreamUnavailable as e:
            log.error("photo_download_failed", user_id=intent.user_id, error=str(e))
            self._notify(intent.user_id, ARTIFACT_SAVE_FAILED_TEXT.format(kind=ARTIFACT_LABELS[ArtifactKind.PHOTO]), reply)
            return
        self._submit(intent.user_id, ArtifactKind.PHOTO, data, reply, now)

    def _location(self, intent: ChatIntent, reply: ReplyContext, now: datetime) -> None:
        if not self.registry.has_active(intent.user_id):
            self._auto_enable(intent, reply, now)
        self.engine.on_position_sample(intent.user_id, intent.coordinate, now, reply)
        self._submit(intent.user_id, ArtifactKind.LOCATION, intent.coordinate, reply, now)

    def _notes(self, intent: ChatIntent, reply: ReplyContext, now: datetime) -> None:
        if self.registry.has_active(intent.user_id):
            self._submit(intent.user_id, ArtifactKind.NOTES, intent.text, reply, now)
            return
        self._auto_enable(intent, reply, now)

    # ---------------- report plumbing ----------------

    def _submit(self, user_id: str, kind: ArtifactKind, value, reply: Optional[ReplyContext],
                now: datetime, quiet_repeats: bool = False) -> None:
        try:
            result = self.registry.submit_artifact(user_id, kind, value, now=now)
        except NoActiveSession:
            return
        except UpstreamUnavailable as e:
            log.error("artifact_store_failed", user_id=user_id, kind=kind.value, error=str(e))
            self._notify(user_id, ARTIFACT_SAVE_FAILED_TEXT.format(kind=ARTIFACT_LABELS[kind]), reply)
            return

        if result.completed:
            try:
                self.finalizer.finalize(result.session, reply=reply, now=now)
            except UpstreamUnavailable as e:
                log.error("report_finalize_failed", user_id=user_id, error=str(e))
                self._notify(user_id, REPORT_FINALIZE_FAILED_TEXT, reply)
            return

        if quiet_repeats and result.replaced:
            return
        self._notify(user_id, REPORT_PROGRESS_TEXT.format(
            received=ARTIFACT_LABELS[kind], missing=_missing_text(result.session)), reply)
