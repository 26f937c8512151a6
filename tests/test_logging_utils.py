"""
Unit tests for utils/logging_utils.py

Tests cover:
- retry_with_backoff / async_retry_with_backoff attempt counts and callbacks
- JsonFormatter output, extra={} fields included
- setup_logging handler wiring
"""

import asyncio
import json
import logging
import os
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from utils.logging_utils import JsonFormatter, async_retry_with_backoff, retry_with_backoff, setup_logging


def run_async(coro):
    """Helper to run async functions in tests"""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestRetryWithBackoff(unittest.TestCase):

    def test_succeeds_after_retries(self):
        calls = []
        retries = []

        @retry_with_backoff(max_retries=3, initial_delay=0, on_retry=lambda a, e, d: retries.append(a))
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise PermissionError("locked")
            return "ok"

        self.assertEqual(flaky(), "ok")
        self.assertEqual(len(calls), 3)
        self.assertEqual(retries, [1, 2])

    def test_gives_up(self):
        @retry_with_backoff(max_retries=1, initial_delay=0)
        def always():
            raise PermissionError("locked")

        with self.assertRaises(PermissionError):
            always()

    def test_other_exceptions_not_retried(self):
        calls = []

        @retry_with_backoff(max_retries=3, initial_delay=0, exceptions=(PermissionError,))
        def broken():
            calls.append(1)
            raise ValueError("bad")

        with self.assertRaises(ValueError):
            broken()
        self.assertEqual(len(calls), 1)


class TestAsyncRetry(unittest.TestCase):

    def test_fixed_attempts(self):
        calls = []

        @async_retry_with_backoff(max_retries=2, initial_delay=0)
        async def login():
            calls.append(1)
            raise ConnectionError("refused")

        with self.assertRaises(ConnectionError):
            run_async(login())
        self.assertEqual(len(calls), 3)

    def test_returns_value(self):
        @async_retry_with_backoff(max_retries=2, initial_delay=0)
        async def ok():
            return 7

        self.assertEqual(run_async(ok()), 7)


class TestJsonFormatter(unittest.TestCase):

    def test_extra_fields(self):
        record = logging.LogRecord("mailfill.test", logging.INFO, __file__, 10, "batch %s", ("done",), None)
        record.kind = "reply"
        data = json.loads(JsonFormatter().format(record))
        self.assertEqual(data["message"], "batch done")
        self.assertEqual(data["logger"], "mailfill.test")
        self.assertEqual(data["kind"], "reply")
        self.assertEqual(data["level"], "INFO")

    def test_timestamp_is_utc_record_time(self):
        record = logging.LogRecord("mailfill.test", logging.INFO, __file__, 10, "x", (), None)
        record.created = 0
        data = json.loads(JsonFormatter().format(record))
        self.assertEqual(data["@timestamp"], "1970-01-01T00:00:00+00:00")


class TestSetupLogging(unittest.TestCase):

    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            handler.close()
        root.handlers = []

    def test_file_and_console_handlers(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = setup_logging("debug", os.path.join(tmp, "run.log"), structured=True)
            self.assertEqual(root.level, logging.DEBUG)
            self.assertEqual(len(root.handlers), 2)
            self.assertTrue(all(isinstance(h.formatter, JsonFormatter) for h in root.handlers))
            for handler in list(root.handlers):
                handler.close()
            root.handlers = []


if __name__ == "__main__":
    unittest.main()
