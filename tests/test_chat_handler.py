"""End-to-end flows through BotService with fake LINE collaborators."""
import zipfile

import pytest

from chat_handler import (
    ARTIFACT_SAVE_FAILED_TEXT,
    IntentKind,
    REPORT_START_FAILED_TEXT,
    TRACKING_DISABLED_TEXT,
    TRACKING_ENABLED_TEXT,
    parse_event,
)
from core.models import Coordinate, ReportCategory
from fakes import INSIDE, OUTSIDE, at
from proximity_alerts import ALERT_TEXT
from report_finalizer import METADATA_FILE


def text_event(text, user_id="U1", token="tok"):
    return {"type": "message", "replyToken": token, "source": {"userId": user_id},
            "message": {"type": "text", "id": "m1", "text": text}}


def image_event(message_id="img1", user_id="U1", token="tok"):
    return {"type": "message", "replyToken": token, "source": {"userId": user_id},
            "message": {"type": "image", "id": message_id}}


def location_event(lat, lng, user_id="U1", token="tok"):
    return {"type": "message", "replyToken": token, "source": {"userId": user_id},
            "message": {"type": "location", "id": "loc1", "latitude": lat, "longitude": lng}}


# ---------------- parse_event ----------------

@pytest.mark.parametrize("text,kind", [
    ("start tracking", IntentKind.START_TRACKING),
    ("  Start   Tracking ", IntentKind.START_TRACKING),
    ("停止追蹤", IntentKind.STOP_TRACKING),
    ("回報危險", IntentKind.START_REPORT),
    ("hello there", IntentKind.NOTES),
])
def test_parse_text_commands(text, kind):
    assert parse_event(text_event(text)).kind is kind


def test_parse_report_category():
    intent = parse_event(text_event("report sighting"))
    assert intent.category is ReportCategory.SIGHTING


def test_parse_location_and_image():
    loc = parse_event(location_event(25.0, 121.5))
    assert loc.kind is IntentKind.LOCATION and loc.coordinate == Coordinate(25.0, 121.5)
    img = parse_event(image_event("abc"))
    assert img.kind is IntentKind.PHOTO and img.message_id == "abc"


@pytest.mark.parametrize("event", [
    location_event(95.0, 121.5),
    {"type": "follow", "source": {"userId": "U1"}, "replyToken": "t"},
    {"type": "message", "source": {}, "message": {"type": "text", "text": "hi"}},
    {"type": "message", "source": {"userId": "U1"}, "message": {"type": "sticker"}},
])
def test_parse_ignores_unsupported(event):
    assert parse_event(event) is None


def test_parse_unfollow():
    intent = parse_event({"type": "unfollow", "source": {"userId": "U1"}})
    assert intent.kind is IntentKind.STOP_TRACKING
    assert intent.reply_token is None


# ---------------- tracking ----------------

def test_any_message_enables_tracking(bot, notifier):
    bot.handle_event(text_event("hi"), now=at(0))
    assert bot.engine.tracking.is_tracking("U1")
    assert notifier.immediate == [("U1", TRACKING_ENABLED_TEXT, "tok")]


def test_auto_enable_can_be_turned_off(bot, notifier):
    bot.auto_enable_tracking = False
    bot.handle_event(text_event("hi"), now=at(0))
    assert not bot.engine.tracking.is_tracking("U1")
    assert notifier.texts == []


def test_stop_tracking_command(bot, notifier):
    bot.handle_event(text_event("start tracking"), now=at(0))
    bot.handle_event(text_event("stop tracking", token="tok2"), now=at(1))
    assert not bot.engine.tracking.is_tracking("U1")
    assert notifier.immediate[-1] == ("U1", TRACKING_DISABLED_TEXT, "tok2")


def test_beacon_alerts_via_push(bot, notifier):
    bot.handle_event(text_event("start tracking"), now=at(0))
    outcome = bot.handle_position_report("U1", INSIDE, now=at(5))
    assert outcome.alerted
    assert notifier.deferred == [("U1", ALERT_TEXT)]


def test_beacon_for_untracked_user_is_silent(bot, notifier):
    outcome = bot.handle_position_report("U9", INSIDE, now=at(5))
    assert not outcome.alerted
    assert notifier.texts == []


def test_unfollow_drops_tracking_and_report_silently(bot, notifier):
    bot.handle_event(text_event("start tracking"), now=at(0))
    bot.handle_event(text_event("回報危險"), now=at(1))
    sent = len(notifier.texts)

    bot.handle_event({"type": "unfollow", "source": {"userId": "U1"}}, now=at(2))
    assert not bot.engine.tracking.is_tracking("U1")
    assert not bot.registry.has_active("U1")
    assert len(notifier.texts) == sent


# ---------------- reports ----------------

def test_full_report_flow_finalizes_once(bot, notifier):
    bot.handle_event(text_event("report hazard"), now=at(0))
    bot.handle_event(image_event("img1"), now=at(1))
    bot.handle_event(text_event("sidewalk collapsed"), now=at(2))
    bot.handle_event(location_event(25.02, 121.55), now=at(3))

    assert not bot.registry.has_active("U1")
    assert len(bot.webhook.calls) == 1
    ref, filename, category = bot.webhook.calls[0]
    assert category == "hazard"

    with zipfile.ZipFile(ref.path) as zf:
        assert zf.read("photo.jpg") == b"\xff\xd8jpeg-img1"
        assert zf.read("notes.txt").decode("utf-8") == "sidewalk collapsed"
        meta = zf.read(METADATA_FILE).decode("utf-8").splitlines()
    assert meta == [
        "name: Alice",
        "location: 25.02,121.55",
        f"captured_at: {at(3).isoformat()}",
        "notes: sidewalk collapsed",
    ]
    assert bot.history.recorded[0][2] == Coordinate(25.02, 121.55)
    assert any(ref.url in text for text in notifier.texts)

    # a late duplicate after completion is ignored
    bot.handle_event(text_event("one more thing"), now=at(4))
    assert len(bot.webhook.calls) == 1


def test_beacon_location_completes_report(bot, notifier):
    bot.handle_event(text_event("report sighting"), now=at(0))
    bot.handle_event(image_event(), now=at(1))
    bot.handle_event(text_event("deer near the trail"), now=at(2))

    bot.handle_position_report("U1", OUTSIDE, now=at(3))
    assert not bot.registry.has_active("U1")
    assert len(bot.webhook.calls) == 1
    assert bot.webhook.calls[0][2] == "sighting"


def test_repeated_beacon_samples_are_quiet(bot, notifier):
    bot.handle_event(text_event("report hazard"), now=at(0))
    before = len(notifier.texts)
    bot.handle_position_report("U1", OUTSIDE, now=at(1))
    bot.handle_position_report("U1", OUTSIDE, now=at(2))
    bot.handle_position_report("U1", OUTSIDE, now=at(3))
    # first sample gets a progress notice, repeats do not
    assert len(notifier.texts) == before + 1


def test_second_report_start_is_rejected(bot, notifier):
    bot.handle_event(text_event("report hazard"), now=at(0))
    bot.handle_event(image_event(), now=at(1))
    session = bot.registry.get("U1")
    bot.handle_event(text_event("report sighting"), now=at(2))
    assert bot.registry.get("U1") is session
    assert session.category is ReportCategory.HAZARD
    assert session.has_photo


def test_photo_without_report_enables_tracking(bot, notifier):
    bot.handle_event(image_event(), now=at(0))
    assert bot.content.requested == []
    assert bot.engine.tracking.is_tracking("U1")
    assert notifier.immediate == [("U1", TRACKING_ENABLED_TEXT, "tok")]


def test_photo_without_report_is_ignored_when_auto_enable_off(bot, notifier):
    bot.auto_enable_tracking = False
    bot.handle_event(image_event(), now=at(0))
    assert not bot.engine.tracking.is_tracking("U1")
    assert notifier.texts == []


def test_location_without_report_enables_tracking_then_alerts(bot, notifier):
    bot.handle_event(location_event(INSIDE.lat, INSIDE.lng), now=at(0))
    assert bot.engine.tracking.is_tracking("U1")
    # enable notice takes the reply token, the alert is pushed
    assert notifier.immediate == [("U1", TRACKING_ENABLED_TEXT, "tok")]
    assert notifier.deferred == [("U1", ALERT_TEXT)]


def test_photo_download_failure_keeps_session(bot, notifier):
    bot.handle_event(text_event("report hazard"), now=at(0))
    bot.content.fail = True
    bot.handle_event(image_event(token="tok2"), now=at(1))
    session = bot.registry.get("U1")
    assert session is not None and not session.has_photo
    assert notifier.immediate[-1] == ("U1", ARTIFACT_SAVE_FAILED_TEXT.format(kind="照片"), "tok2")


def test_report_start_failure_is_reported(bot, notifier, tmp_path):
    blocker = tmp_path / "reports"
    blocker.write_text("not a directory")
    bot.handle_event(text_event("report hazard"), now=at(0))
    assert not bot.registry.has_active("U1")
    assert notifier.immediate[-1][1] == REPORT_START_FAILED_TEXT


def test_location_message_both_alerts_and_records(bot, notifier):
    bot.handle_event(text_event("start tracking"), now=at(0))
    bot.handle_event(text_event("report hazard"), now=at(1))
    bot.handle_event(location_event(INSIDE.lat, INSIDE.lng, token="tok3"), now=at(2))

    # alert consumed the reply token, progress notice went out as a push
    assert ("U1", ALERT_TEXT, "tok3") in notifier.immediate
    assert notifier.deferred and notifier.deferred[-1][0] == "U1"
    assert bot.registry.get("U1").has_location
