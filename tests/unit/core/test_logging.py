"""Tests for log output configuration."""

import json
import logging

import pytest
import structlog

from plinth.core.config import LoggingSettings
from plinth.core.logging import configure_logging, render_call_context


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def _last_json(capsys: pytest.CaptureFixture[str]) -> dict:
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


class TestJsonOutput:
    def test_call_context_kept_as_separate_keys(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(LoggingSettings(json_output=True))

        with structlog.contextvars.bound_contextvars(request_id="req-42", provider="search", attempt=1):
            structlog.get_logger("plinth.engine.executor").warning("Retrying external call", delay_ms=312.5)

        event = _last_json(capsys)
        assert event["event"] == "Retrying external call"
        assert event["request_id"] == "req-42"
        assert event["provider"] == "search"
        assert event["attempt"] == 1
        assert event["delay_ms"] == 312.5
        assert event["level"] == "warning"
        assert event["logger"] == "plinth.engine.executor"
        assert event["timestamp"].endswith("Z")
        assert "_record" not in event

    def test_stdlib_records_share_the_format(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(LoggingSettings(json_output=True))

        logging.getLogger("some.library").warning("pool exhausted after %d tries", 3)

        event = _last_json(capsys)
        assert event["event"] == "pool exhausted after 3 tries"
        assert event["logger"] == "some.library"
        assert event["level"] == "warning"

    def test_level_filters_events(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(LoggingSettings(json_output=True, level="WARNING"))

        structlog.get_logger("plinth.test").info("hidden")

        assert "hidden" not in capsys.readouterr().out


class TestConsoleOutput:
    def test_call_context_folded_into_call_field(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(LoggingSettings(level="INFO"))

        with structlog.contextvars.bound_contextvars(request_id="0123456789abcdef", provider="search", attempt=2):
            structlog.get_logger("plinth.test").info("Search call started")

        out = capsys.readouterr().out
        assert "Search call started" in out
        assert "call=search/01234567#2" in out
        assert "request_id=" not in out
        assert "provider=" not in out

    def test_events_outside_a_call_have_no_call_field(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(LoggingSettings(level="INFO"))

        structlog.get_logger("plinth.test").info("Run store ready", attempt=3)

        out = capsys.readouterr().out
        assert "call=" not in out
        assert "attempt=3" in out


class TestRenderCallContext:
    def test_without_attempt(self) -> None:
        event = render_call_context(None, "info", {"event": "x", "provider": "generation", "request_id": "abcdef0123"})

        assert event == {"event": "x", "call": "generation/abcdef01"}

    def test_missing_provider_is_marked(self) -> None:
        event = render_call_context(None, "info", {"event": "x", "request_id": "abc"})

        assert event == {"event": "x", "call": "-/abc"}

    def test_unrelated_event_untouched(self) -> None:
        event = render_call_context(None, "info", {"event": "x", "run_id": "r1"})

        assert event == {"event": "x", "run_id": "r1"}


def test_quiet_libraries_clamped_to_warning() -> None:
    configure_logging(LoggingSettings(level="DEBUG"))

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_quiet_libraries_follow_a_stricter_root_level() -> None:
    configure_logging(LoggingSettings(level="ERROR"))

    assert logging.getLogger("httpcore").level == logging.ERROR
