"""
Unit tests for log output configuration.
"""

import io
import json
import logging

import pytest

import wsoos.logging_setup as logging_setup


@pytest.fixture
def fresh_logging(monkeypatch):
    """Reset the one-time setup and provide a stream to log into."""
    stream = io.StringIO()
    monkeypatch.setattr(logging_setup, "_LOG_SETUP_DONE", False)
    monkeypatch.setattr(logging_setup, "_HANDLER", None)

    logger = logging.getLogger("wsoos")
    saved = (list(logger.handlers), logger.propagate, logger.level)

    yield stream

    handlers, propagate, level = saved
    logger.handlers = handlers
    logger.propagate = propagate
    logger.setLevel(level)


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_text_format(self, fresh_logging):
        logging_setup.setup_logging(logging.INFO, "text", stream=fresh_logging)
        logging.getLogger("wsoos.server").info("HTTP Server listening on :2086")

        line = fresh_logging.getvalue().strip()
        assert "[INFO] wsoos.server: HTTP Server listening on :2086" in line

    def test_json_format(self, fresh_logging):
        logging_setup.setup_logging(logging.INFO, "json", stream=fresh_logging)
        logging.getLogger("wsoos.tunnel.handler").error("Handshake failed")

        entry = json.loads(fresh_logging.getvalue().strip())
        assert entry["level"] == "ERROR"
        assert entry["logger"] == "wsoos.tunnel.handler"
        assert entry["message"] == "Handshake failed"

    def test_json_includes_exception(self, fresh_logging):
        logging_setup.setup_logging(logging.INFO, "json", stream=fresh_logging)
        try:
            raise ConnectionResetError("reset")
        except ConnectionResetError:
            logging.getLogger("wsoos").exception("relay crashed")

        entry = json.loads(fresh_logging.getvalue().strip().splitlines()[0])
        assert "ConnectionResetError" in entry["exception"]

    def test_level_filters(self, fresh_logging):
        logging_setup.setup_logging(logging.WARNING, "text", stream=fresh_logging)
        logging.getLogger("wsoos.core").info("hidden")
        logging.getLogger("wsoos.core").warning("shown")

        output = fresh_logging.getvalue()
        assert "hidden" not in output
        assert "shown" in output

    def test_repeated_setup_does_not_stack_handlers(self, fresh_logging):
        logger = logging_setup.setup_logging(logging.INFO, "text", stream=fresh_logging)
        count = len(logger.handlers)
        logging_setup.setup_logging(logging.DEBUG, "json", stream=fresh_logging)

        assert len(logger.handlers) == count
        assert logger.level == logging.DEBUG

    def test_defaults_to_stdout(self, fresh_logging, capsys):
        logging_setup.setup_logging(logging.INFO, "text")
        logging.getLogger("wsoos").info("to stdout")

        assert "to stdout" in capsys.readouterr().out
        assert fresh_logging.getvalue() == ""
