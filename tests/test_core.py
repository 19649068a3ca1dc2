"""Tests for settings, logging setup and the workspace auth dependency."""

import logging

import pytest
from fastapi import HTTPException

from app.core.auth import require_workspace
from app.core.log_config import configure_logging
from app.core.settings import Settings


class TestSettings:
    def test_tokens_parsed_from_json_env(self, monkeypatch):
        monkeypatch.setenv("TOKENS", '{"abc": "ws_1"}')
        monkeypatch.setenv("LOG_LEVEL", "debug")
        settings = Settings()
        assert settings.TOKENS == {"abc": "ws_1"}
        assert settings.LOG_LEVEL == "debug"

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("TOKENS", raising=False)
        settings = Settings(_env_file=None)
        assert settings.TOKENS == {}
        assert settings.SQL_ECHO is False


class TestConfigureLogging:
    def test_sets_root_level(self):
        root = logging.getLogger()
        previous_level, previous_handlers = root.level, list(root.handlers)
        try:
            configure_logging("debug")
            assert root.level == logging.DEBUG
        finally:
            root.handlers = previous_handlers
            root.setLevel(previous_level)


class TestRequireWorkspace:
    def test_known_token_resolves_workspace(self):
        assert require_workspace("test-token") == "ws_test"

    def test_unknown_token_rejected(self):
        with pytest.raises(HTTPException) as excinfo:
            require_workspace("nope")
        assert excinfo.value.status_code == 401
        assert excinfo.value.headers == {"WWW-Authenticate": "Bearer"}
