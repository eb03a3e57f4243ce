"""Tests for tftpi.context."""

import threading
import time

import pytest

from tftpi.context import Context
from tftpi.exceptions import OperationCancelledError


class TestContext:
    """Tests for deadlines and cancellation."""

    def test_background_never_expires(self):
        ctx = Context.background()
        assert ctx.err is None
        assert ctx.remaining() is None
        ctx.check()

    def test_expired_deadline(self):
        """Test a zero timeout is immediately done."""
        ctx = Context.background().with_timeout(0)
        with pytest.raises(OperationCancelledError, match="deadline"):
            ctx.check()
        assert ctx.done.is_set()

    def test_cancel_sets_error(self):
        ctx = Context.background()
        ctx.cancel("stop")
        assert isinstance(ctx.err, OperationCancelledError)
        assert str(ctx.err) == "stop"

    def test_cancel_propagates_to_children(self):
        parent = Context.background()
        child = parent.child().with_timeout(60)
        parent.cancel("parent gone")
        with pytest.raises(OperationCancelledError, match="parent gone"):
            child.check()

    def test_child_inherits_earlier_deadline(self):
        parent = Context.background().with_timeout(1)
        child = parent.with_timeout(100)
        assert child.deadline == parent.deadline

    def test_sleep_returns_after_duration(self):
        ctx = Context.background()
        start = time.monotonic()
        ctx.sleep(0.05)
        assert time.monotonic() - start >= 0.05

    def test_sleep_interrupted_by_cancel(self):
        """Test a cancel from another thread wakes a sleeper."""
        ctx = Context.background()
        timer = threading.Timer(0.1, ctx.cancel, args=("interrupted",))
        timer.start()
        start = time.monotonic()
        with pytest.raises(OperationCancelledError):
            ctx.sleep(10)
        assert time.monotonic() - start < 5
        timer.join()

    def test_sleep_stops_at_deadline(self):
        ctx = Context.background().with_timeout(0.1)
        with pytest.raises(OperationCancelledError):
            ctx.sleep(10)
