"""Tests for task-local logging context."""

import asyncio
import logging

import pytest

from ridesync.sync_logging import ContextFilter, LogContext, log_context, log_ride_context


def make_record() -> logging.LogRecord:
    return logging.LogRecord("test", logging.INFO, "test.py", 1, "msg", (), None)


@pytest.mark.unit
class TestLogContext:
    """Tests for log_context and ContextFilter."""

    def test_context_fields_are_injected(self):
        record = make_record()
        with log_context(driver_id="d1"):
            ContextFilter().filter(record)
        assert record.driver_id == "d1"

    def test_previous_fields_restored_on_exit(self):
        with log_context(driver_id="d1"):
            with log_context(driver_id="d2", ride_id="r1"):
                assert LogContext.get() == {"driver_id": "d2", "ride_id": "r1"}
            assert LogContext.get() == {"driver_id": "d1"}
        assert LogContext.get() == {}

    def test_ride_context_uses_ride_as_correlation_id(self):
        with log_ride_context("r1"):
            assert LogContext.get() == {"ride_id": "r1", "correlation_id": "r1"}

    def test_ride_context_accepts_explicit_correlation_id(self):
        with log_ride_context("r1", correlation_id="req-9", passenger_id="p1"):
            fields = LogContext.get()
        assert fields["correlation_id"] == "req-9"
        assert fields["passenger_id"] == "p1"

    def test_explicit_record_attributes_win(self):
        record = make_record()
        record.ride_id = "explicit"
        with log_ride_context("r1"):
            ContextFilter().filter(record)
        assert record.ride_id == "explicit"

    async def test_tasks_do_not_share_context(self):
        seen = {}

        async def worker(ride_id: str):
            with log_ride_context(ride_id):
                await asyncio.sleep(0)
                seen[ride_id] = LogContext.get()["ride_id"]

        await asyncio.gather(worker("r1"), worker("r2"))

        assert seen == {"r1": "r1", "r2": "r2"}
