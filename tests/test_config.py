"""Unit tests for Settings."""

from __future__ import annotations

import logging

from autoflow.config import Settings, configure_logging


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.port == 3003
        assert settings.min_selector_timeout_ms == 30000
        assert settings.max_execution_duration_ms == 300000
        assert settings.event_buffer_size == 1000

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("AUTOFLOW_PORT", "9000")
        monkeypatch.setenv("AUTOFLOW_HEADLESS", "false")
        settings = Settings(_env_file=None)
        assert settings.port == 9000
        assert settings.headless is False

    def test_llm_configured(self):
        assert not Settings(_env_file=None, openai_api_key=None).llm_configured
        assert Settings(_env_file=None, openai_api_key="sk-test").llm_configured

    def test_configure_logging(self, monkeypatch):
        calls = []
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
        configure_logging("debug")
        assert calls[0]["level"] == logging.DEBUG
