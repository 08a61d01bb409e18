"""Unit tests for logging setup and interrupt helpers."""

import logging
import threading
from logging.handlers import RotatingFileHandler
from unittest.mock import patch

import pytest

from crossbin.interrupt_utils import cancel_on_interrupt, handle_keyboard_interrupt_properly
from crossbin.logging_utils import setup_logging


@pytest.fixture
def root_logger():
    logger = logging.getLogger()
    saved_level = logger.level
    saved_handlers = list(logger.handlers)
    yield logger
    for handler in list(logger.handlers):
        if handler not in saved_handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(saved_level)


def crossbin_handlers(logger):
    return [h for h in logger.handlers if getattr(h, "_crossbin", False)]


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_console_only(self, root_logger):
        setup_logging()

        handlers = crossbin_handlers(root_logger)
        assert len(handlers) == 1
        assert handlers[0].level == logging.WARNING

    def test_verbose(self, root_logger):
        setup_logging(verbose=True)

        assert crossbin_handlers(root_logger)[0].level == logging.DEBUG
        assert root_logger.level == logging.DEBUG

    def test_log_file(self, root_logger, tmp_path):
        log_file = tmp_path / "logs" / "crossbin.log"
        setup_logging(log_file=log_file)
        logging.getLogger("crossbin.test").info("fetched 3 crates")

        file_handlers = [h for h in crossbin_handlers(root_logger) if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].maxBytes == 10 * 1024 * 1024
        assert file_handlers[0].backupCount == 3
        file_handlers[0].flush()
        assert "fetched 3 crates" in log_file.read_text()

    def test_repeated_setup_replaces_handlers(self, root_logger, tmp_path):
        setup_logging(log_file=tmp_path / "a.log")
        setup_logging()

        assert len(crossbin_handlers(root_logger)) == 1


class TestInterruptUtils:
    """Tests for KeyboardInterrupt helpers."""

    def test_main_thread_reraises(self):
        with patch("crossbin.interrupt_utils._thread.interrupt_main") as interrupt_main:
            with pytest.raises(KeyboardInterrupt):
                handle_keyboard_interrupt_properly(KeyboardInterrupt())

        interrupt_main.assert_not_called()

    def test_worker_thread_interrupts_main(self):
        raised = []

        def worker():
            try:
                handle_keyboard_interrupt_properly(KeyboardInterrupt())
            except KeyboardInterrupt:
                raised.append(True)

        with patch("crossbin.interrupt_utils._thread.interrupt_main") as interrupt_main:
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()

        interrupt_main.assert_called_once()
        assert raised == [True]

    def test_cancel_on_interrupt_sets_event(self):
        event = threading.Event()

        with pytest.raises(KeyboardInterrupt):
            cancel_on_interrupt(event, KeyboardInterrupt())

        assert event.is_set()
