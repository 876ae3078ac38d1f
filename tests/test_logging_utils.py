# tests/test_logging_utils.py

import logging
import warnings
import pytest

from clusterref.errors import NoMarkersWarning
from clusterref.logging_utils import init_logging


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
        h.close()
        logging.root.removeHandler(h)
    for h in orig:
        logging.root.addHandler(h)
    logging.captureWarnings(False)


def test_init_logging_stream_only(reset_logging):
    init_logging(logfile=None, level=logging.DEBUG)

    # Only a StreamHandler should exist
    assert _get_handler_types() == (logging.StreamHandler,)
    assert logging.root.level == logging.DEBUG


def test_init_logging_stream_and_file(tmp_path, reset_logging):
    log_path = tmp_path / "log" / "test.log"
    init_logging(logfile=log_path, level=logging.INFO)

    # Order: StreamHandler then FileHandler
    assert _get_handler_types() == (logging.StreamHandler, logging.FileHandler)

    logging.getLogger("test").info("This is a test message.")

    assert log_path.exists()
    txt = log_path.read_text()
    assert "This is a test message." in txt
    assert "[INFO]" in txt


def test_init_logging_overwrites_previous_handlers(reset_logging):
    dummy = logging.StreamHandler()
    logging.root.addHandler(dummy)

    init_logging(None)

    assert _get_handler_types() == (logging.StreamHandler,)  # dummy removed


def test_init_logging_respects_level(tmp_path, reset_logging):
    log_path = tmp_path / "test.log"
    init_logging(logfile=log_path, level=logging.WARNING)

    logger = logging.getLogger("x")
    logger.info("info msg")     # Should not be written
    logger.warning("warn msg")  # Should be written

    txt = log_path.read_text()
    assert "warn msg" in txt
    assert "info msg" not in txt


def test_init_logging_quietens_statsmodels(reset_logging):
    init_logging(None, level=logging.DEBUG)
    assert logging.getLogger("statsmodels").level == logging.WARNING


def test_warnings_reach_logfile(tmp_path, reset_logging):
    log_path = tmp_path / "warn.log"
    init_logging(logfile=log_path)

    with warnings.catch_warnings():
        warnings.simplefilter("always")
        warnings.warn("no markers for group Q", NoMarkersWarning)

    assert "no markers for group Q" in log_path.read_text()


def test_capture_warnings_can_be_disabled(tmp_path, reset_logging):
    log_path = tmp_path / "nowarn.log"
    init_logging(logfile=log_path, capture_warnings=False)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        warnings.warn("should not be logged", NoMarkersWarning)

    assert "should not be logged" not in log_path.read_text()
