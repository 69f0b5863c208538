# tests/test_logging_utils.py

import logging
import pytest

from scpbde.logging_utils import init_logging


def _get_handler_types():
    """Helper: return a list of handler class types currently installed."""
    return tuple(type(h) for h in logging.root.handlers)


@pytest.fixture
def reset_logging():
    """Ensure clean logging handlers before/after each test."""
    orig = logging.root.handlers[:]
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    yield
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    for h in orig:
        logging.root.addHandler(h)


def test_init_logging_stream_only(tmp_path, reset_logging):
    init_logging(logfile=None, level=logging.DEBUG)

    types = _get_handler_types()
    assert types == (logging.StreamHandler,)


def test_init_logging_stream_and_file(tmp_path, reset_logging):
    log_path = tmp_path / "log" / "pseudobulk-de.log"
    init_logging(logfile=log_path, level=logging.INFO)

    types = _get_handler_types()
    # Order: StreamHandler then FileHandler
    assert types == (logging.StreamHandler, logging.FileHandler)

    logging.getLogger("scpbde.test").info("This is a test message.")

    assert log_path.exists()
    txt = log_path.read_text()
    assert "This is a test message." in txt
    assert "[INFO]" in txt


def test_init_logging_overwrites_previous_handlers(tmp_path, reset_logging):
    dummy = logging.StreamHandler()
    logging.root.addHandler(dummy)

    init_logging(None)

    assert _get_handler_types() == (logging.StreamHandler,)
    assert dummy not in logging.root.handlers


def test_init_logging_respects_level(tmp_path, reset_logging):
    log_path = tmp_path / "test.log"
    init_logging(logfile=log_path, level=logging.WARNING)

    logger = logging.getLogger("x")
    logger.info("info msg")
    logger.warning("warn msg")

    txt = log_path.read_text()
    assert "warn msg" in txt
    assert "info msg" not in txt


def test_init_logging_accepts_level_names(tmp_path, reset_logging):
    init_logging(None, level="debug")
    assert logging.root.level == logging.DEBUG

    with pytest.raises(ValueError):
        init_logging(None, level="chatty")


def test_init_logging_quiets_third_party(reset_logging):
    init_logging(None, level=logging.DEBUG)
    assert logging.getLogger("numba").level == logging.WARNING
    assert logging.getLogger("matplotlib").level == logging.WARNING
