import json
import logging
import sys

import pytest

from conversation_scheduler.core.logging_config import LoggerMixin, StructuredFormatter


class CapturingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class Worker(LoggerMixin):
    pass


def make_record(**extra):
    record = logging.LogRecord(
        name="conversation_scheduler.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Recovered conversation %s",
        args=(42,),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.mark.unit
def test_formatter_emits_scheduler_context():
    payload = json.loads(StructuredFormatter().format(make_record(
        conversation_id=42,
        stuck_reason="lock_expired",
        action="cleared_lock_and_requeued",
    )))

    assert payload["message"] == "Recovered conversation 42"
    assert payload["level"] == "INFO"
    assert payload["conversation_id"] == 42
    assert payload["stuck_reason"] == "lock_expired"
    assert payload["action"] == "cleared_lock_and_requeued"
    assert "organization_id" not in payload


@pytest.mark.unit
def test_formatter_includes_exception_text():
    try:
        raise ValueError("bad row")
    except ValueError:
        record = make_record()
        record.exc_info = sys.exc_info()

    payload = json.loads(StructuredFormatter().format(record))

    assert "ValueError: bad row" in payload["exception"]


@pytest.mark.unit
def test_logger_mixin_passes_context_as_extra():
    handler = CapturingHandler()
    logger = logging.getLogger("Worker")
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        Worker().log_info("tick finished", job="stale_sweep")
    finally:
        logger.removeHandler(handler)

    assert handler.records[0].job == "stale_sweep"
