"""Tests for logging setup."""

import logging

import pytest

from rtl_slurp.logs import VERBOSE, setup_logging


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)


class TestSetupLogging:
    def test_verbose_level_name(self):
        assert logging.getLevelName(VERBOSE) == "VERBOSE"

    def test_level_applied(self, restore_root):
        setup_logging("VERBOSE")
        assert restore_root.level == VERBOSE
        assert len(restore_root.handlers) == 1

    def test_unknown_level_falls_back_to_info(self, restore_root):
        setup_logging("chatty")
        assert restore_root.level == logging.INFO

    def test_log_file(self, restore_root, tmp_path):
        path = tmp_path / "slurp.log"
        logger = setup_logging("DEBUG", str(path))
        logger.log(VERBOSE, "hello %s", "file")
        for h in restore_root.handlers:
            h.flush()
        text = path.read_text()
        assert "[VERBOSE] rtl_slurp: hello file" in text
