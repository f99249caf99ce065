"""
Tests for structured logging setup.

Tests verify:
- JSON output carries ECS-style field names and the service name
- DEBUG logs are suppressed at INFO level
- LogContext binds fields for its scope only
"""

import json

import pytest
import structlog

from chat_spine.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    clear_context()
    structlog.reset_defaults()


def last_json_line(out: str) -> dict:
    return json.loads(out.strip().splitlines()[-1])


class TestJsonOutput:
    def test_ecs_fields(self, capsys):
        configure_logging(level="INFO", json_format=True, service="trade-bot")
        get_logger("chat_spine.test").info("state_transition", entity_id=42)

        record = last_json_line(capsys.readouterr().out)
        assert record["event"] == "state_transition"
        assert record["entity_id"] == 42
        assert record["service.name"] == "trade-bot"
        assert record["log.level"] == "info"
        assert "@timestamp" in record

    def test_debug_suppressed_at_info(self, capsys):
        configure_logging(level="INFO", json_format=True)
        get_logger("chat_spine.test").debug("idempotency_cache_hit")
        assert capsys.readouterr().out == ""

    def test_bound_context_merged(self, capsys):
        configure_logging(level="INFO", json_format=True)
        with LogContext(entity_id=7, command="buy"):
            get_logger("chat_spine.test").info("dispatch_started")

        record = last_json_line(capsys.readouterr().out)
        assert record["entity_id"] == 7
        assert record["command"] == "buy"


class TestContext:
    def test_log_context_scoped(self):
        with LogContext(entity_id=42, operation_key="msg:42:1"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["entity_id"] == 42
            assert bound["operation_key"] == "msg:42:1"
        assert "entity_id" not in structlog.contextvars.get_contextvars()

    def test_bind_and_unbind(self):
        bind_context(entity_id=1, command="buy")
        unbind_context("command")
        assert structlog.contextvars.get_contextvars() == {"entity_id": 1}

    def test_clear(self):
        bind_context(entity_id=1)
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_nested_context_restores_outer_value(self):
        with LogContext(command="buy"):
            with LogContext(command="sell"):
                assert structlog.contextvars.get_contextvars()["command"] == "sell"
            assert structlog.contextvars.get_contextvars()["command"] == "buy"

    def test_unknown_level_rejected(self):
        with pytest.raises(ValueError):
            configure_logging(level="LOUD")
