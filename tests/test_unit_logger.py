import json
import logging

import pytest

from round_settlement.utils.logger import ContextFormatter, JSONFormatter, get_logger


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture()
def captured():
    handler = _ListHandler()
    target = logging.getLogger("round_settlement.tests.logger")
    target.addHandler(handler)
    target.setLevel(logging.DEBUG)
    yield handler
    target.removeHandler(handler)
    target.setLevel(logging.NOTSET)


def test_get_logger_namespaces_name():
    assert get_logger("tests.logger").logger.name == "round_settlement.tests.logger"
    assert get_logger("round_settlement.jobs").logger.name == "round_settlement.jobs"


def test_context_drops_none_and_renames_reserved(captured):
    get_logger("tests.logger").info("hello", round_id=7, tx_hash=None, name="clash")
    record = captured.records[-1]
    assert record.context == {"round_id": 7, "ctx_name": "clash"}


def test_bind_adds_fixed_context(captured):
    log = get_logger("tests.logger").bind(job_id="j1", round_id=3)
    log.warning("retrying", attempt=2, round_id=4)
    record = captured.records[-1]
    assert record.levelno == logging.WARNING
    assert record.context == {"job_id": "j1", "round_id": 4, "attempt": 2}


def test_formatters_render_context(captured):
    get_logger("tests.logger").error("boom", round_id=9)
    record = captured.records[-1]

    entry = json.loads(JSONFormatter().format(record))
    assert entry["message"] == "boom"
    assert entry["level"] == "ERROR"
    assert entry["round_id"] == 9

    line = ContextFormatter("%(levelname)s %(message)s").format(record)
    assert line == "ERROR boom [round_id=9]"
