"""Tests for structured logging setup."""

from uuid import uuid4

import pytest
import structlog

from peerflow.logging_config import bind_activity_context, clear_activity_context, configure_logging


class TestConfigureLogging:
    def test_unknown_format_rejected(self):
        with pytest.raises(ValueError, match="Unknown log format"):
            configure_logging(log_format="xml")

    @pytest.mark.parametrize("log_format", ["json", "console"])
    def test_binds_service_name(self, log_format):
        configure_logging(level="debug", log_format=log_format)
        assert structlog.contextvars.get_contextvars() == {"service": "peerflow"}


class TestActivityContext:
    def test_bind_and_clear(self):
        configure_logging()
        activity_id, actor = uuid4(), uuid4()

        bind_activity_context(activity_id, actor=actor, action="review")
        assert structlog.contextvars.get_contextvars() == {
            "service": "peerflow",
            "activity_id": str(activity_id),
            "actor": str(actor),
            "action": "review",
        }

        clear_activity_context()
        assert structlog.contextvars.get_contextvars() == {"service": "peerflow"}
