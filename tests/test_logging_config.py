"""
Tests for logging setup
"""
import logging
import tempfile
import unittest
from pathlib import Path

from logging_config import LoggerPrefixFilter, setup_logging


class TestLoggingConfig(unittest.TestCase):

    def setUp(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level
        self.tmp = tempfile.TemporaryDirectory()
        self.logs_dir = Path(self.tmp.name) / 'logs'

    def tearDown(self):
        for handler in list(self.root.handlers):
            self.root.removeHandler(handler)
            handler.close()
        for handler in self.saved_handlers:
            self.root.addHandler(handler)
        self.root.setLevel(self.saved_level)
        self.tmp.cleanup()

    def test_prefix_filter(self):
        log_filter = LoggerPrefixFilter(['engine'])

        def record(name):
            return logging.LogRecord(name, logging.INFO, __file__, 1, 'msg', None, None)

        self.assertTrue(log_filter.filter(record('engine')))
        self.assertTrue(log_filter.filter(record('engine.pattern_engine')))
        self.assertFalse(log_filter.filter(record('engineering')))
        self.assertFalse(log_filter.filter(record('core.database')))

    def test_learning_log_keeps_engine_events_only(self):
        setup_logging(dev_mode=False, logs_dir=self.logs_dir)
        logging.getLogger('engine.recommendation_tracker').info("Closed GME recommendation 1")
        logging.getLogger('core.database').info("Settings loaded")
        logging.getLogger('core.database').error("Execute error")
        for handler in self.root.handlers:
            handler.flush()

        learning = (self.logs_dir / 'learning.log').read_text()
        self.assertIn("Closed GME recommendation 1", learning)
        self.assertNotIn("Settings loaded", learning)

        errors = (self.logs_dir / 'errors.log').read_text()
        self.assertIn("Execute error", errors)
        self.assertNotIn("Closed GME", errors)

        application = (self.logs_dir / 'application.log').read_text()
        self.assertIn("Settings loaded", application)

    def test_dev_mode_enables_debug(self):
        setup_logging(dev_mode=True, logs_dir=self.logs_dir)
        self.assertEqual(self.root.level, logging.DEBUG)
        self.assertEqual(logging.getLogger('yfinance').level, logging.DEBUG)


if __name__ == '__main__':
    unittest.main()
