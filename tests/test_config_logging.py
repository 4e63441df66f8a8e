"""Tests for settings validation and logging setup."""

import logging
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from app.config import Settings
from app.logging import LOG_FORMAT, configure_logging


class TestSettings:
    def test_queue_backend_is_normalized(self):
        assert Settings(queue_backend=" Redis ").queue_backend == "redis"

    def test_unknown_queue_backend(self):
        with pytest.raises(ValidationError):
            Settings(queue_backend="carrier-pigeon")

    def test_handler_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(event_handler_timeout_seconds=0)


class TestConfigureLogging:
    def test_uses_requested_level(self):
        with patch("app.logging.logging.basicConfig") as mock_config:
            configure_logging("debug")
        mock_config.assert_called_once_with(level="DEBUG", format=LOG_FORMAT)

    def test_defaults_to_settings_level(self):
        with patch("app.logging.logging.basicConfig") as mock_config:
            configure_logging()
        assert mock_config.call_args.kwargs["level"] in logging.getLevelNamesMapping()
