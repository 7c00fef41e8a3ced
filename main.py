# main.py — ZoneGuard LINE bot API (webhook + location beacon)
from __future__ import annotations
import os
from dotenv import load_dotenv

# Load .env.dev if present (for local dev), otherwise fall back to .env
if os.path.exists('.env.dev'):
    load_dotenv('.env.dev', override=True)
else:
    load_dotenv()

# Notes:
# - /webhook and /location always acknowledge with 200 once the request is
#   valid; downstream failures are logged, never surfaced, so LINE and the
#   LIFF page do not retry-storm us.
# - Per-user state is process-local; run a single worker process.

import json
import time
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, request, jsonify, make_response, send_from_directory, abort
from marshmallow import ValidationError

from logging_config import get_logger, get_metrics_logger, setup_logging
from config import CONFIG, Config
from core.models import Coordinate, DynamicZone, StaticZone
from core.schemas import PositionReportSchema
from alert_rate_limiter import AlertThrottle
from chat_handler import BotService
from circuit_breaker import CircuitBreaker
from delivery_webhook import build_delivery_webhook
from line_messaging import LineMessagingClient, verify_signature
from proximity_alerts import DangerZoneEvaluator, GeofenceAlertEngine, TrackingRegistry
from report_finalizer import ReportFinalizer
from report_sessions import ReportRegistry
from report_storage import LocalStorageProvisioner, ZipArchiver
from tracking_sweeper import IdleSweeper
from zone_history import ReportHistoryStore

logger = get_logger("zoneguard.main")
metrics = get_metrics_logger("zoneguard.main")

_POSITION_SCHEMA = PositionReportSchema()


def build_services(config: Config):
    """Wire collaborators from configuration. Returns (BotService, IdleSweeper)."""
    line = LineMessagingClient.from_config(config.line)
    geo = config.geofence

    static_zone = StaticZone(Coordinate(geo.zone_lat, geo.zone_lng), geo.zone_radius_m, name="static")
    history = None
    dynamic_zone = None
    breaker = None
    if geo.dynamic_zones_enabled:
        history = ReportHistoryStore(window_days=geo.history_window_days)
        dynamic_zone = DynamicZone(geo.dynamic_radius_m, history)
        breaker = CircuitBreaker("zone-history",
                                 consecutive_failures_threshold=geo.cb_failure_threshold,
                                 recovery_timeout=geo.cb_recovery_timeout_sec)

    engine = GeofenceAlertEngine(
        DangerZoneEvaluator(static_zone, dynamic_zone, breaker),
        AlertThrottle(geo.cooldown_seconds),
        line,
        TrackingRegistry(),
    )
    registry = ReportRegistry()
    finalizer = ReportFinalizer(
        archiver=ZipArchiver(config.report.archive_root, config.report.public_base_url),
        notifier=line,
        delivery_webhook=build_delivery_webhook(config.report.delivery_webhook_url,
                                                config.report.delivery_webhook_timeout),
        history=history,
    )
    service = BotService(
        engine=engine,
        registry=registry,
        finalizer=finalizer,
        notifier=line,
        profiles=line,
        provisioner=LocalStorageProvisioner(config.report.storage_root),
        content=line,
        auto_enable_tracking=geo.auto_enable_tracking,
    )
    sweeper = IdleSweeper(
        engine, line,
        idle_seconds=geo.idle_seconds,
        interval_seconds=geo.sweep_interval_seconds,
        registry=registry,
        session_idle_seconds=config.report.session_idle_seconds if config.report.session_idle_eviction else None,
    )
    return service, sweeper


def create_app(service: Optional[BotService] = None, config: Optional[Config] = None) -> Flask:
    config = config or CONFIG
    if service is None:
        service, _ = build_services(config)

    app = Flask(__name__)
    app.extensions["zoneguard"] = service

    @app.errorhandler(500)
    def handle_500_error(e):
        logger.error("server_error_500", url=request.url, method=request.method, error=str(e))
        return jsonify({"error": "Internal server error"}), 500

    @app.route("/webhook", methods=["POST"])
    def line_webhook():
        """LINE webhook: verify signature on the raw body, then handle each event independently."""
        body = request.get_data()
        signature = request.headers.get("X-Line-Signature")
        if not verify_signature(config.line.channel_secret, body, signature):
            logger.warning("webhook_signature_invalid", remote=request.remote_addr)
            return make_response("Invalid signature", 400)

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return make_response("Invalid body", 400)
        if not isinstance(payload, dict):
            return make_response("Invalid body", 400)

        for event in payload.get("events") or []:
            if not isinstance(event, dict):
                logger.warning("webhook_event_malformed", event=repr(event)[:200])
                continue
            try:
                service.handle_event(event)
            except Exception:
                logger.exception("webhook_event_failed", event_type=event.get("type"))
        return make_response("OK", 200)

    @app.route("/location", methods=["POST"])
    def location_report():
        """LIFF beacon: {userId, latitude, longitude}."""
        started = time.time()
        try:
            data = _POSITION_SCHEMA.load(request.get_json(silent=True) or {})
        except ValidationError as e:
            logger.info("location_rejected", errors=e.messages)
            return make_response("Missing required fields", 400)

        coordinate = Coordinate(data["latitude"], data["longitude"])
        try:
            outcome = service.handle_position_report(data["user_id"], coordinate)
            logger.info("position_report", user_id=data["user_id"],
                        distance_m=outcome.distance_m, in_zone=outcome.in_zone, alerted=outcome.alerted)
        except Exception:
            logger.exception("position_report_failed", user_id=data["user_id"])

        metrics.api_request(endpoint="/location", method="POST", status_code=200,
                            duration_ms=int((time.time() - started) * 1000))
        return make_response("OK", 200)

    @app.route("/downloads/<path:filename>", methods=["GET"])
    def download_archive(filename: str):
        if not filename.endswith(".zip"):
            abort(404)
        return send_from_directory(os.path.abspath(config.report.archive_root), filename, as_attachment=True)

    @app.route("/health", methods=["GET"])
    def health_check():
        return jsonify({
            "status": "ok",
            "tracked_users": len(service.engine.tracking.tracked_users()),
            "active_reports": service.registry.active_count(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @app.route("/ping", methods=["GET"])
    def ping():
        """Simple liveness probe."""
        return jsonify({"status": "ok", "message": "pong"})

    return app


def main():
    setup_logging("zoneguard-api", CONFIG.app.log_level, CONFIG.app.structured_logging)
    try:
        CONFIG.validate(require_credentials=True)
    except ValueError as e:
        raise SystemExit(f"Configuration error: {e}")

    service, sweeper = build_services(CONFIG)
    if CONFIG.geofence.dynamic_zones_enabled:
        try:
            ReportHistoryStore(CONFIG.geofence.history_window_days).ensure_table()
        except Exception as e:
            logger.warning("report_history_table_unavailable", error=str(e))

    app = create_app(service, CONFIG)
    sweeper.start()
    logger.info("server_starting", port=CONFIG.app.port)
    app.run(host="0.0.0.0", port=CONFIG.app.port, threaded=True)


if __name__ == "__main__":
    main()
