"""
Tests for logger setup and level configuration.
"""

import logging

from session_handler.utils.logging import configure_root_logging, setup_logger


class TestLogging:

    def test_setup_logger_adds_handler_once(self):
        logger = setup_logger("session_handler.tests.once")
        again = setup_logger("session_handler.tests.once")
        assert logger is again
        assert len(logger.handlers) == 1

    def test_configured_level_reaches_module_loggers(self, tmp_path):
        module_logger = setup_logger("session_handler.tests.level")
        log_file = tmp_path / "logs" / "session.log"

        package = configure_root_logging("DEBUG", str(log_file))
        try:
            assert module_logger.level == logging.DEBUG
            assert all(h.level == logging.DEBUG for h in module_logger.handlers)

            module_logger.debug("registered read ABC")
            for handler in package.handlers:
                handler.flush()
            assert "registered read ABC" in log_file.read_text()
        finally:
            for handler in list(package.handlers):
                if isinstance(handler, logging.FileHandler):
                    package.removeHandler(handler)
                    handler.close()
            configure_root_logging("INFO")
