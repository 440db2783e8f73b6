"""
Tests for the logging setup.
"""
import logging

from nudge.core import logging as nudge_logging
from nudge.core.logging import configure_logging


class TestConfigureLogging:
    def test_installs_one_handler(self):
        configure_logging("DEBUG")
        configure_logging("DEBUG")
        root = logging.getLogger("nudge")
        named = [h for h in root.handlers if h.get_name() == "nudge-stdout"]
        assert len(named) == 1
        assert root.level == logging.DEBUG

    def test_module_loggers_reach_the_handler(self, caplog):
        configure_logging("INFO")
        with caplog.at_level(logging.WARNING, logger="nudge"):
            logging.getLogger("nudge.services.engine").warning("write failed")
        assert "write failed" in caplog.text

    def test_only_the_setup_is_public(self):
        public = [name for name in vars(nudge_logging) if not name.startswith("_")]
        assert sorted(public) == ["configure_logging", "logging", "sys"]
