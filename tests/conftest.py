"""Shared fixtures for the bot core tests."""
import pytest

from alert_rate_limiter import AlertThrottle
from chat_handler import BotService
from core.models import StaticZone
from fakes import FakeContent, FakeHistory, FakeNotifier, FakeProfiles, FakeWebhook, ZONE_CENTER
from proximity_alerts import DangerZoneEvaluator, GeofenceAlertEngine, TrackingRegistry
from report_finalizer import ReportFinalizer
from report_sessions import ReportRegistry
from report_storage import LocalStorageProvisioner, ZipArchiver


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def static_zone():
    return StaticZone(ZONE_CENTER, 5.0)


@pytest.fixture
def make_engine(notifier, static_zone):
    def _make(cooldown=15, dynamic_zone=None, breaker=None, tracking=None):
        return GeofenceAlertEngine(
            DangerZoneEvaluator(static_zone, dynamic_zone, breaker),
            AlertThrottle(cooldown),
            notifier,
            tracking or TrackingRegistry(),
        )
    return _make


@pytest.fixture
def provisioner(tmp_path):
    return LocalStorageProvisioner(tmp_path / "reports")


@pytest.fixture
def archiver(tmp_path):
    return ZipArchiver(tmp_path / "archives", public_base_url="https://bot.example.com")


@pytest.fixture
def registry():
    return ReportRegistry()


@pytest.fixture
def bot(make_engine, registry, notifier, provisioner, archiver):
    webhook = FakeWebhook()
    history = FakeHistory()
    finalizer = ReportFinalizer(archiver, notifier, delivery_webhook=webhook, history=history)
    service = BotService(
        engine=make_engine(),
        registry=registry,
        finalizer=finalizer,
        notifier=notifier,
        profiles=FakeProfiles({"U1": "Alice"}),
        provisioner=provisioner,
        content=FakeContent(),
    )
    service.webhook = webhook
    service.history = history
    return service
