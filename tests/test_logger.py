"""Tests for gut's logging setup."""
import logging

import pytest

from gut.core.logger import get_logger, set_verbose, setup_file_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger("gut")
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


class TestLogger:
    def test_names_nest_under_gut(self):
        assert get_logger("gut.core.resolver").name == "gut.core.resolver"
        assert get_logger("__main__").name == "gut.__main__"

    def test_verbose_switches_level(self, root_logger):
        set_verbose(True)
        assert get_logger("gut.core.session").isEnabledFor(logging.DEBUG)
        set_verbose(False)
        assert not get_logger("gut.core.session").isEnabledFor(logging.DEBUG)

    def test_file_logging(self, tmp_path, root_logger):
        log_file = tmp_path / "logs" / "gut.log"

        assert setup_file_logging(str(log_file)) == log_file
        setup_file_logging(str(log_file))
        get_logger("gut.core.orchestrator").info("Apply started")

        file_handlers = [h for h in root_logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        file_handlers[0].flush()
        assert "gut.core.orchestrator | INFO | Apply started" in log_file.read_text()
