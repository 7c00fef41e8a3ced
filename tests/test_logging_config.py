from unittest.mock import patch

import structlog

from config import ApplicationConfig
from logging_config import setup_logging


def _renderer(**kwargs):
    with patch("logging_config.structlog.configure") as configure, \
            patch("logging_config.logging.basicConfig"):
        setup_logging("zoneguard-test", "INFO", **kwargs)
    return configure.call_args.kwargs["processors"][-1]


def test_structured_flag_selects_json_renderer():
    assert isinstance(_renderer(structured=True), structlog.processors.JSONRenderer)
    assert isinstance(_renderer(structured=False), structlog.dev.ConsoleRenderer)


def test_env_decides_when_flag_not_given(monkeypatch):
    monkeypatch.setenv("STRUCTURED_LOGGING", "true")
    assert isinstance(_renderer(), structlog.processors.JSONRenderer)


def test_config_flag_is_passed_through():
    app = ApplicationConfig(structured_logging=True)
    assert isinstance(_renderer(structured=app.structured_logging), structlog.processors.JSONRenderer)
