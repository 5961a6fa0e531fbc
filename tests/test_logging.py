"""Tests for the logging configuration."""

import json
import logging
import sys
from logging.handlers import SysLogHandler
from unittest.mock import patch

from whisperer.config import logging as log_mod
from whisperer.config.model import EngineConfig


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="whisperer.engine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="frame from %s",
        args=("dev-1",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_json_with_relative_logger() -> None:
    payload = json.loads(log_mod.StructuredLogFormatter().format(_record(uuid="dev-1")))

    assert payload["logger"] == "engine"
    assert payload["level"] == "INFO"
    assert payload["message"] == "frame from dev-1"
    assert payload["uuid"] == "dev-1"
    assert payload["ts"].endswith("Z")
    assert "extra" not in payload


def test_formatter_renders_bytes_as_hex() -> None:
    marker = object()
    payload = json.loads(log_mod.StructuredLogFormatter().format(_record(payload=b"\xc0\x61", obj=marker)))

    assert payload["extra"]["payload"] == "[C0 61]"
    assert payload["extra"]["obj"] == str(marker)


def test_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("port vanished")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(log_mod.StructuredLogFormatter().format(record))

    assert "port vanished" in payload["exception"]


def test_render_value_passthrough() -> None:
    assert log_mod.render_value(None) is None
    assert log_mod.render_value(3) == 3
    assert log_mod.render_value("x") == "x"
    assert log_mod.render_value(bytearray(b"\x00\xff")) == "[00 FF]"


def test_build_handler_prefers_syslog(tmp_path) -> None:
    fake_socket = tmp_path / "log"
    fake_socket.touch()

    with patch.object(log_mod, "SYSLOG_SOCKETS", (fake_socket,)), patch.dict("os.environ", {}, clear=False) as env:
        env.pop(log_mod.STREAM_ENV, None)
        with patch("whisperer.config.logging.SysLogHandler") as mock_handler:
            handler = log_mod.build_handler()

    mock_handler.assert_called_once_with(address=str(fake_socket), facility=SysLogHandler.LOG_DAEMON)
    assert handler is mock_handler.return_value


def test_build_handler_falls_back_to_stream(tmp_path) -> None:
    with patch.object(log_mod, "SYSLOG_SOCKETS", (tmp_path / "missing",)):
        handler = log_mod.build_handler()

    assert isinstance(handler, logging.StreamHandler)


def test_build_handler_stream_override(tmp_path) -> None:
    fake_socket = tmp_path / "log"
    fake_socket.touch()

    with patch.object(log_mod, "SYSLOG_SOCKETS", (fake_socket,)), patch.dict(
        "os.environ", {log_mod.STREAM_ENV: "1"}
    ):
        handler = log_mod.build_handler()

    assert type(handler) is logging.StreamHandler


def test_configure_logging_levels() -> None:
    with patch("whisperer.config.logging.dictConfig") as mock_dict_config:
        log_mod.configure_logging(EngineConfig(debug_logging=True))
        config_arg = mock_dict_config.call_args[0][0]

    assert config_arg["root"]["level"] == "DEBUG"
    assert config_arg["handlers"]["whisperer"]["formatter"] == "structured"
    assert config_arg["loggers"]["whisperer.transport.mqtt.client"]["level"] == "INFO"


def test_configure_logging_installs_structured_handler(tmp_path) -> None:
    with patch.object(log_mod, "SYSLOG_SOCKETS", (tmp_path / "missing",)):
        log_mod.configure_logging()

    root = logging.getLogger()
    assert root.level == logging.INFO
    assert any(isinstance(handler.formatter, log_mod.StructuredLogFormatter) for handler in root.handlers)
