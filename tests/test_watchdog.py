"""
Tests for app.watchdog — Stage Watchdog

Verifies:
    W1. normal completion returns value.
    W2. timeout aborts and reports.
    W3. cancelling the caller cancels the guarded stage.
    W4. cancel event aborts early and cancels the stage.
    W5. error in coroutine captured, not raised.
"""

import asyncio

import pytest

from convoloop.app.watchdog import run_with_timeout


class TestRunWithTimeout:

    @pytest.mark.asyncio
    async def test_w1_normal_completion(self):
        async def fast():
            await asyncio.sleep(0.01)
            return 42

        res = await run_with_timeout(fast(), timeout_secs=5.0, stage_name="w1")
        assert res.ok
        assert res.value == 42
        assert res.stage == "w1"
        assert res.elapsed_ms >= 0

    @pytest.mark.asyncio
    async def test_w2_timeout(self):
        async def slow():
            await asyncio.sleep(60.0)

        res = await run_with_timeout(slow(), timeout_secs=0.05, stage_name="w2")
        assert res.timed_out
        assert not res.ok
        assert res.value is None
        assert res.elapsed_ms >= 40

    @pytest.mark.asyncio
    async def test_w3_caller_cancellation_propagates(self):
        stage_cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(60.0)
            except asyncio.CancelledError:
                stage_cancelled.set()
                raise

        outer = asyncio.ensure_future(run_with_timeout(slow(), timeout_secs=5.0, stage_name="w3"))
        await asyncio.sleep(0.01)
        outer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await outer
        await asyncio.wait_for(stage_cancelled.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_w4_cancel_event(self):
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(60.0)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        evt = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, evt.set)
        res = await run_with_timeout(slow(), timeout_secs=5.0, stage_name="w4", cancel_evt=evt)
        assert res.cancelled
        assert not res.timed_out
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_w5_exception_captured(self):
        async def broken():
            raise RuntimeError("backend unavailable")

        res = await run_with_timeout(broken(), timeout_secs=1.0, stage_name="w5")
        assert not res.ok
        assert isinstance(res.exception, RuntimeError)
        assert not res.timed_out
        assert not res.cancelled
