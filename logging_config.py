# logging_config.py - Structured logging for production observability
import structlog
import logging
import os
import sys
from typing import Optional


def setup_logging(service_name: Optional[str] = None, level: Optional[str] = None,
                  structured: Optional[bool] = None) -> None:
    """
    Configure structured logging

    Args:
        service_name: Name of the service (e.g., "zoneguard-api", "idle-sweeper")
        level: Log level name; falls back to LOG_LEVEL
        structured: JSON output; falls back to STRUCTURED_LOGGING / ENV
    """

    # Clear existing handlers to avoid duplicates
    logging.root.handlers.clear()

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if service_name:
        processors.insert(0, lambda logger, method_name, event_dict:
                          dict(event_dict, service=service_name))

    # JSON in production, console renderer for local development
    use_json = structured
    if use_json is None:
        is_production = os.getenv("ENV", "development").lower() == "production"
        use_json = os.getenv("STRUCTURED_LOGGING", "true" if is_production else "false").lower() == "true"

    if use_json:
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level, logging.INFO),
        handlers=[logging.StreamHandler()],
        force=True
    )

    # Reduce noise from verbose libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance

    Args:
        name: Logger name (usually module name)
    """
    return structlog.get_logger(name)


class MetricsLogger:
    """Helper class for consistent metrics logging"""

    def __init__(self, logger: structlog.stdlib.BoundLogger):
        self.logger = logger

    def alert_sent(self, user_id: str, distance_m: float, zone_source: str, **kwargs):
        self.logger.info(
            "alert_sent",
            user_id=user_id,
            distance_m=distance_m,
            zone_source=zone_source,
            **kwargs
        )

    def alert_suppressed(self, user_id: str, reason: str, **kwargs):
        self.logger.info(
            "alert_suppressed",
            user_id=user_id,
            reason=reason,
            **kwargs
        )

    def report_finalized(self, user_id: str, category: str, archive: str,
                         duration_ms: int, **kwargs):
        self.logger.info(
            "report_finalized",
            user_id=user_id,
            category=category,
            archive=archive,
            duration_ms=duration_ms,
            **kwargs
        )

    def api_request(self, endpoint: str, method: str, status_code: int,
                    duration_ms: int, **kwargs):
        self.logger.info(
            "api_request",
            endpoint=endpoint,
            method=method,
            status_code=status_code,
            duration_ms=duration_ms,
            **kwargs
        )


def get_metrics_logger(name: str) -> MetricsLogger:
    """Get a metrics logger instance"""
    return MetricsLogger(get_logger(name))
