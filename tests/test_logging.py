"""Tests for gridsens.core.logging."""

from __future__ import annotations

import json
import logging

from gridsens.core.logging import JSONFormatter, StateContextFilter, log_context, setup_logging, state_id_var


def _record(message: str = "solved", **extra) -> logging.LogRecord:
    record = logging.LogRecord("gridsens.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_extra_fields(self):
        entry = json.loads(JSONFormatter().format(_record(network="grid_0_0", iterations=3, status="converged")))
        assert entry["message"] == "solved"
        assert entry["network"] == "grid_0_0"
        assert entry["iterations"] == 3
        assert entry["status"] == "converged"
        assert "state" not in entry

    def test_state_injected(self):
        with log_context("L12"):
            entry = json.loads(JSONFormatter().format(_record()))
        assert entry["state"] == "L12"


class TestLogContext:
    def test_reset_after_block(self):
        with log_context("C1"):
            with log_context("C1/S1"):
                assert state_id_var.get() == "C1/S1"
            assert state_id_var.get() == "C1"
        assert state_id_var.get() == ""

    def test_text_prefix(self):
        record = _record()
        with log_context("C1"):
            StateContextFilter().filter(record)
        assert record.state == "[C1] "


class TestSetupLogging:
    def test_json_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(json_format=True, level="DEBUG")
            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    def test_defaults_from_settings(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging()
            assert root.level == logging.INFO
            assert any(isinstance(f, StateContextFilter) for f in root.handlers[0].filters)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
