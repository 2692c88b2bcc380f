"""
Unit tests for the logging helpers: context propagation and formatters.
"""

import json
import logging
import queue

import pytest

from backstube.core.logging.logger import (
    ColoredFormatter,
    ContextFilter,
    DroppingQueueHandler,
    JSONFormatter,
    LoggingSettings,
    LogContext,
    clear_log_context,
    get_log_context,
    get_logging_health,
    set_log_context,
    setup_logging,
    shutdown_logging,
)


def make_record(message="Gateway session ready", **extra):
    record = logging.LogRecord(
        name="backstube.core.gateway.state_machine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def empty_context():
    clear_log_context()
    yield
    clear_log_context()


class TestLogContext:
    def test_context_scoped_to_block(self):
        set_log_context(session_id="session-1")

        with LogContext(event_name="VOICE_STATE_UPDATE", guild_id=1) as scope:
            inner = get_log_context()

        assert inner["event_name"] == "VOICE_STATE_UPDATE"
        assert inner["guild_id"] == "1"
        assert inner["session_id"] == "session-1"
        assert len(scope.context["correlation_id"]) == 8
        assert get_log_context() == {"session_id": "session-1"}

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with LogContext(command="slowmode", correlation_id="abc"):
            assert get_log_context()["correlation_id"] == "abc"

        assert get_log_context() == {}

    def test_filter_fills_missing_attributes(self):
        record = make_record(user_id=7)

        with LogContext(user_id=99, event_name="INTERACTION_CREATE", correlation_id="c0ffee"):
            ContextFilter().filter(record)

        assert record.user_id == 7
        assert record.event_name == "INTERACTION_CREATE"
        assert record.correlation_id == "c0ffee"
        assert record.guild_id is None
        assert record.component == "gateway.state_machine"


class TestFormatters:
    def test_json_formatter_includes_context_and_extra(self):
        record = make_record(session_id="session-1", sequence=41, attempt=2)

        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "Gateway session ready"
        assert payload["level"] == "INFO"
        assert payload["session_id"] == "session-1"
        assert payload["sequence"] == 41
        assert "guild_id" not in payload
        assert payload["extra"] == {"attempt": 2}

    def test_json_formatter_serializes_unknown_types(self):
        record = make_record(error={"status": 403}, when=object())

        payload = json.loads(JSONFormatter().format(record))

        assert payload["extra"]["error"] == {"status": 403}
        assert isinstance(payload["extra"]["when"], str)

    def test_colored_formatter_restores_levelname(self):
        record = make_record()

        output = ColoredFormatter("%(levelname)s %(message)s").format(record)

        assert "\033[94mINFO\033[0m" in output
        assert record.levelname == "INFO"

    def test_colored_formatter_appends_gateway_suffix(self):
        record = make_record(session_id="session-1", sequence=5, handler_id=None)

        output = ColoredFormatter("%(message)s%(context_suffix)s", colors=False).format(record)

        assert output == "Gateway session ready [session_id=session-1 sequence=5]"


class TestContextValidation:
    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError):
            LogContext(shard=0)

        with pytest.raises(TypeError):
            set_log_context(shard=0)

    def test_none_values_do_not_override(self):
        set_log_context(session_id="session-1")
        set_log_context(session_id=None, sequence=3)

        assert get_log_context() == {"session_id": "session-1", "sequence": 3}


class TestQueueing:
    def test_full_queue_drops_instead_of_blocking(self):
        handler = DroppingQueueHandler(queue.Queue(1))

        handler.emit(make_record("first"))
        handler.emit(make_record("second"))

        assert handler.queue.qsize() == 1

    def test_setup_writes_json_file_and_reports_health(self, tmp_path):
        settings = LoggingSettings(level=logging.INFO, json_output=True, logs_dir=tmp_path)

        root_level = logging.getLogger().level
        setup_logging(settings)
        try:
            health = get_logging_health()
            logging.getLogger("backstube.tests").info("hello", extra={"attempt": 1})
        finally:
            shutdown_logging()
            logging.getLogger().setLevel(root_level)

        assert health.initialized
        assert health.queue_max_size == settings.queue_max_size
        assert get_logging_health().initialized is False

        lines = (tmp_path / settings.file_basename).read_text(encoding="utf-8").splitlines()
        messages = [json.loads(line)["message"] for line in lines]
        assert "hello" in messages
