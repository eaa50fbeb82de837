import sys

import pytest

from tlsuv import debug
from tlsuv.debug import LogLevel, get_level, log, set_debug


@pytest.fixture(autouse=True)
def _restore_debug():
    yield
    set_debug(LogLevel.ERR, None)


@pytest.fixture
def records():
    collected = []
    set_debug(LogLevel.WARN, lambda *rec: collected.append(rec))
    return collected


def test_default_level_is_err():
    assert get_level() == LogLevel.ERR


def test_set_debug_changes_level():
    set_debug(LogLevel.TRACE, None)
    assert get_level() is LogLevel.TRACE


def test_set_debug_accepts_int_levels():
    set_debug(3, None)
    assert get_level() is LogLevel.INFO


def test_invalid_level_rejected():
    with pytest.raises(ValueError):
        set_debug(42, None)


def test_message_is_formatted_and_delivered(records):
    line = sys._getframe().f_lineno + 1
    log(LogLevel.ERR, "read %d(%s)", -104, "reset")
    assert len(records) == 1
    level, filename, lineno, message = records[0]
    assert level is LogLevel.ERR
    assert filename.endswith("test_debug.py")
    assert lineno == line
    assert message == "read -104(reset)"


def test_messages_above_level_are_dropped(records):
    log(LogLevel.INFO, "ignored")
    log(LogLevel.TRACE, "ignored too")
    log(LogLevel.WARN, "kept")
    assert [rec[3] for rec in records] == ["kept"]


def test_no_output_discards_messages():
    set_debug(LogLevel.TRACE, None)
    log(LogLevel.ERR, "nowhere")
    collected = []
    set_debug(LogLevel.TRACE, lambda *rec: collected.append(rec))
    assert collected == []
    log(LogLevel.ERR, "somewhere")
    assert [rec[3] for rec in collected] == ["somewhere"]


def test_percent_without_args_is_kept(records):
    log(LogLevel.ERR, "100% done")
    assert records[0][3] == "100% done"


def test_long_messages_are_truncated(records):
    log(LogLevel.ERR, "x" * 2000)
    assert len(records[0][3]) == debug._MAX_MESSAGE
    assert set(records[0][3]) == {"x"}


def test_none_level_silences_errors():
    collected = []
    set_debug(LogLevel.NONE, lambda *rec: collected.append(rec))
    log(LogLevel.ERR, "hidden")
    assert collected == []