# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Tests for the acknowledged dispatch queue"""

import pytest

from loyaltyflow.core.dispatch import DispatchJob, DispatchQueue
from loyaltyflow.core.execution_store import ExecutionStatus

from flows import counter_flow


class TestDispatchQueue:
    """Workers, retries and acknowledgement"""

    @pytest.mark.asyncio
    async def test_job_is_acknowledged(self):
        handled = []

        async def handler(job):
            handled.append(job.execution_id)
            return "ok"

        queue = DispatchQueue(handler)
        ticket = queue.submit(DispatchJob("e1", "A"))
        await ticket.wait(timeout=5)

        assert ticket.acknowledged
        assert ticket.result == "ok"
        assert ticket.attempts == 1
        assert handled == ["e1"]
        assert list(queue.acknowledged) == [ticket]
        await queue.close()

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        """Test a job that fails once is retried and acknowledged"""
        calls = []

        async def flaky(job):
            calls.append(job.execution_id)
            if len(calls) == 1:
                raise RuntimeError("database locked")
            return "ok"

        queue = DispatchQueue(flaky, max_attempts=3, retry_delay_ms=1)
        ticket = queue.submit(DispatchJob("e1"))
        await queue.join()

        assert ticket.acknowledged
        assert ticket.attempts == 2
        assert ticket.error is None
        assert list(queue.failures) == []
        await queue.close()

    @pytest.mark.asyncio
    async def test_exhausted_attempts_call_on_failure(self):
        failed = []

        async def broken(job):
            raise RuntimeError("worker crashed")

        async def on_failure(ticket):
            failed.append(ticket.job.execution_id)

        queue = DispatchQueue(broken, max_attempts=2, retry_delay_ms=1, on_failure=on_failure)
        ticket = queue.submit(DispatchJob("e1"))
        await queue.join()

        assert ticket.failed
        assert not ticket.acknowledged
        assert ticket.attempts == 2
        assert ticket.error == "RuntimeError: worker crashed"
        assert list(queue.failures) == [ticket]
        assert failed == ["e1"]
        await queue.close()

    @pytest.mark.asyncio
    async def test_failing_on_failure_is_contained(self):
        async def broken(job):
            raise RuntimeError("worker crashed")

        def on_failure(ticket):
            raise ValueError("cannot mark")

        queue = DispatchQueue(broken, max_attempts=1, on_failure=on_failure)
        ticket = queue.submit(DispatchJob("e1"))
        await ticket.wait(timeout=5)

        assert ticket.failed
        second = queue.submit(DispatchJob("e2"))
        await second.wait(timeout=5)
        assert second.failed
        await queue.close()

    @pytest.mark.asyncio
    async def test_several_workers(self):
        async def handler(job):
            return job.execution_id

        queue = DispatchQueue(handler, workers=3)
        tickets = [queue.submit(DispatchJob(f"e{i}")) for i in range(6)]
        await queue.join()

        assert all(t.acknowledged for t in tickets)
        assert queue.pending == 0
        assert len(queue._workers) == 3
        await queue.close()
        assert queue._workers == []

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        async def handler(job):
            return job.execution_id

        queue = DispatchQueue(handler, history=3)
        tickets = [queue.submit(DispatchJob(f"e{i}")) for i in range(10)]
        await queue.join()

        assert all(t.acknowledged for t in tickets)
        assert [t.job.execution_id for t in queue.acknowledged] == ["e7", "e8", "e9"]
        await queue.close()

    @pytest.mark.asyncio
    async def test_done_callbacks(self):
        seen = []

        async def handler(job):
            return "ok"

        def broken_callback(ticket):
            raise ValueError("callback failed")

        queue = DispatchQueue(handler)
        ticket = queue.submit(DispatchJob("e1"))
        ticket.add_done_callback(broken_callback)
        ticket.add_done_callback(lambda t: seen.append(("first", t.result)))
        await ticket.wait(timeout=5)
        ticket.add_done_callback(lambda t: seen.append(("late", t.result)))

        assert seen == [("first", "ok"), ("late", "ok")]
        await queue.close()


class TestRestartDispatch:
    """Dispatch failures recorded on the restarted execution"""

    @pytest.mark.asyncio
    async def test_exhausted_restart_marks_execution_failed(self, engine, monkeypatch):
        engine.publish(counter_flow())
        original_id = await engine.start("counter", session_id="tg:1")

        async def crash(context, start_node_id):
            raise RuntimeError("processor unavailable")

        monkeypatch.setattr(engine.processor, "run", crash)
        result = await engine.restart(original_id)
        ticket = engine.restarts.tickets[result["new_execution_id"]]
        await engine.join()

        new = engine.context_manager.get_execution(result["new_execution_id"])
        assert new.status == ExecutionStatus.FAILED
        assert new.error_type == "DispatchError"
        assert "after 3 attempts" in new.error
        assert ticket.failed
        await engine.close()

    @pytest.mark.asyncio
    async def test_cancelled_before_dispatch_is_skipped(self, engine):
        engine.publish(counter_flow())
        original_id = await engine.start("counter", session_id="tg:1")

        result = await engine.restart(original_id)
        ticket = engine.restarts.tickets[result["new_execution_id"]]
        engine.cancel(result["new_execution_id"])
        await engine.join()

        assert ticket.acknowledged
        assert ticket.result is None
        new = engine.context_manager.get_execution(result["new_execution_id"])
        assert new.status == ExecutionStatus.CANCELLED
        await engine.close()

    @pytest.mark.asyncio
    async def test_settled_restarts_are_released(self, engine):
        engine.publish(counter_flow())
        original_id = await engine.start("counter", session_id="tg:1")

        for _ in range(5):
            await engine.restart(original_id)
        assert len(engine.restarts.tickets) == 5
        await engine.join()

        assert engine.restarts.tickets == {}
        await engine.close()
