"""Tests for process logging helpers."""

import json
import logging

from forgeflow.core.logging import RecoveryLogger, RunContextFilter, StructuredFormatter


def make_record(message, level=logging.INFO, **fields):
    record = logging.LogRecord("forgeflow.test", level, __file__, 10, message, None, None)
    for key, value in fields.items():
        setattr(record, key, value)
    return record


class TestStructuredLogging:
    """Test cases for the JSON formatter and the run context filter."""

    def test_context_is_stamped(self):
        """Test that the active run context reaches the JSON payload."""
        context_filter = RunContextFilter()
        context_filter.context.update(run_id="run-1", workflow_id="wf-1")
        record = make_record("Starting workflow")
        assert context_filter.filter(record)

        payload = json.loads(StructuredFormatter().format(record))
        assert payload["msg"] == "Starting workflow"
        assert payload["level"] == "INFO"
        assert payload["run_id"] == "run-1"
        assert payload["workflow_id"] == "wf-1"

    def test_explicit_fields_win(self):
        """Test that fields passed through ``extra`` are not overwritten."""
        context_filter = RunContextFilter()
        context_filter.context.update(run_id="run-1")
        record = make_record("step output", run_id="run-2", step_id="build")
        context_filter.filter(record)

        payload = json.loads(StructuredFormatter().format(record))
        assert payload["run_id"] == "run-2"
        assert payload["step_id"] == "build"

    def test_placeholder_outside_a_run(self):
        """Test that records outside a run get a placeholder run id."""
        record = make_record("idle")
        RunContextFilter().filter(record)
        assert record.run_id == "-"
        assert "run_id" not in json.loads(StructuredFormatter().format(record))


class TestRecoveryLogger:
    """Test cases for RecoveryLogger."""

    def test_retry_trail(self, caplog):
        caplog.set_level(logging.INFO, logger="forgeflow.recovery.git")
        recovery = RecoveryLogger("git")
        recovery.retrying("push", "non_fast_forward")
        recovery.recovered("push")

        assert [r.levelno for r in caplog.records] == [logging.WARNING, logging.INFO]
        assert caplog.records[0].operation == "push"
        assert caplog.records[0].reason == "non_fast_forward"
        assert caplog.records[1].component == "git"
