"""Tests for copilot_pool/logging/audit.py — JSON audit logging."""

import json
import logging

from copilot_pool.logging.audit import (
    JSONFormatter,
    RequestTimer,
    account_id_var,
    generate_request_id,
    get_audit_logger,
    get_logger,
    request_id_var,
    setup_logging,
)


def _record(msg: str = "test") -> logging.LogRecord:
    return logging.LogRecord(
        name="test", level=logging.INFO, pathname="",
        lineno=0, msg=msg, args=(), exc_info=None,
    )


class TestJSONFormatter:

    def test_output_is_valid_json(self):
        parsed = json.loads(JSONFormatter().format(_record("hello")))
        assert parsed["message"] == "hello"
        assert parsed["level"] == "INFO"
        assert "timestamp" in parsed

    def test_includes_request_id(self):
        token = request_id_var.set("req-abc123")
        try:
            parsed = json.loads(JSONFormatter().format(_record()))
            assert parsed["request_id"] == "req-abc123"
        finally:
            request_id_var.reset(token)

    def test_includes_account_id_when_bound(self):
        token = account_id_var.set("acct-1")
        try:
            parsed = json.loads(JSONFormatter().format(_record()))
            assert parsed["account_id"] == "acct-1"
        finally:
            account_id_var.reset(token)

    def test_omits_account_id_when_unbound(self):
        parsed = json.loads(JSONFormatter().format(_record()))
        assert "account_id" not in parsed

    def test_includes_audit_data(self):
        record = _record()
        record.audit_data = {"endpoint": "chat/completions", "attempts": 2}
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["endpoint"] == "chat/completions"
        assert parsed["attempts"] == 2


class TestGenerateRequestId:

    def test_length(self):
        assert len(generate_request_id()) == 12

    def test_uniqueness(self):
        ids = {generate_request_id() for _ in range(100)}
        assert len(ids) == 100


class TestRequestTimer:

    def test_measures_elapsed(self):
        with RequestTimer() as timer:
            _ = sum(range(1000))
        assert timer.elapsed_ms >= 0
        assert isinstance(timer.elapsed_ms, float)


class TestSetupLogging:

    def test_configures_package_root(self, override_settings):
        override_settings(AUDIT_LOG_FILE="")
        setup_logging()
        root = logging.getLogger("copilot_pool")
        assert any(isinstance(h, logging.StreamHandler) for h in root.handlers)
        assert root.propagate is False

    def test_component_loggers_are_namespaced(self):
        assert get_logger("instances").name == "copilot_pool.instances"
        assert get_audit_logger().name == "copilot_pool.audit"
