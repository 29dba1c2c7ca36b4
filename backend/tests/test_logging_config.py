"""
Tests for logging configuration
"""
import json
import logging

import pytest
from pydantic import ValidationError

from caseflow.core.config import Settings
from caseflow.core.logging_config import (ContextualFormatter, LoggingConfig,
                                          SensitiveDataFilter)


def _record(msg, args=None, **extra):
    record = logging.LogRecord("caseflow.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_sensitive_data_is_masked():
    """Test tokens, bearer credentials and database passwords are masked"""
    masking = SensitiveDataFilter()
    record = _record(
        "webhook http://hooks.local/notify?token=abc123 with Bearer xyz "
        "on postgresql://caseflow:s3cret@db:5432/caseflow"
    )

    masking.filter(record)

    assert "abc123" not in record.msg
    assert "xyz" not in record.msg
    assert "s3cret" not in record.msg
    assert "token=***" in record.msg
    assert "postgresql://caseflow:***@db:5432/caseflow" in record.msg


def test_masking_can_be_disabled():
    """Test log_sensitive_data keeps messages untouched"""
    record = _record("token=abc123")

    SensitiveDataFilter(enabled=False).filter(record)

    assert record.msg == "token=abc123"


def test_json_formatter_includes_context_and_extra():
    """Test request context and extra= fields in JSON output"""
    LoggingConfig.set_context(request_id="req-1", actor_id="planner-1")
    try:
        line = ContextualFormatter().format(
            _record("Case stage %s -> %s", ("planning", "counseling"), case_id="c-1", from_stage="planning")
        )
    finally:
        LoggingConfig.clear_context()

    data = json.loads(line)
    assert data["message"] == "Case stage planning -> counseling"
    assert data["request_id"] == "req-1"
    assert data["actor_id"] == "planner-1"
    assert data["case_id"] == "c-1"
    assert data["from_stage"] == "planning"


def test_module_levels_must_be_json_object():
    """Test invalid module level settings are rejected"""
    assert Settings(log_module_levels='{"caseflow.services": "DEBUG"}').log_module_levels

    with pytest.raises(ValidationError):
        Settings(log_module_levels="caseflow=DEBUG")
    with pytest.raises(ValidationError):
        Settings(log_module_levels='["DEBUG"]')
