import logging

import pytest

from palaver.logs import DATE_FORMAT, LOG_FORMAT, configure_logging


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler.formatter is not None and handler.formatter._fmt == LOG_FORMAT:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def test_stream_handler_with_format():
    configure_logging("DEBUG")

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    [handler] = root.handlers
    assert handler.formatter._fmt == LOG_FORMAT
    assert handler.formatter.datefmt == DATE_FORMAT


def test_file_handler(tmp_path):
    log_file = tmp_path / "palaver.log"
    configure_logging(logging.INFO, str(log_file))

    logging.getLogger("palaver.test").info("hello")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "palaver.test:INFO:hello" in log_file.read_text()
