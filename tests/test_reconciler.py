"""
Tests for ContainerStatsReconciler

Covers:
- Stream preferred when it delivers before the watchdog
- Fallback to CLI polling when the stream stays silent
- Idempotent stop and release of subscriptions / timers
- Failure handling (open failure, poll failure, late chunks)
"""

import asyncio
import json

from vncp_console.models import ReconcilerMode
from vncp_console.reconciler import ContainerStatsReconciler


FULL_LOAD_SAMPLE = {
    "cpu_stats": {
        "cpu_usage": {"total_usage": 200},
        "system_cpu_usage": 200,
        "online_cpus": 1,
    },
    "precpu_stats": {
        "cpu_usage": {"total_usage": 100},
        "system_cpu_usage": 100,
    },
    "memory_stats": {"usage": 10485760, "limit": 104857600, "stats": {}},
}


class FakeSubscription:
    def __init__(self):
        self.close_calls = 0

    def close(self):
        self.close_calls += 1


class FakeSource:
    """Stats source that records calls and lets tests push chunks by hand."""

    def __init__(self, poll_output="1.50%|5MiB / 10MiB", open_error=None, poll_error=None):
        self.poll_output = poll_output
        self.open_error = open_error
        self.poll_error = poll_error
        self.subscriptions = []
        self.callbacks = []
        self.poll_calls = 0

    def open_stream(self, container_id, on_chunk):
        if self.open_error:
            raise self.open_error
        sub = FakeSubscription()
        self.subscriptions.append(sub)
        self.callbacks.append(on_chunk)
        return sub

    async def poll(self, container_id):
        self.poll_calls += 1
        if self.poll_error:
            raise self.poll_error
        return self.poll_output

    def push(self, chunk):
        for callback in self.callbacks:
            callback(chunk)


def run(coro):
    return asyncio.run(coro)


class TestStreamPreferred:
    def test_stream_sample_before_watchdog_keeps_streaming(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=0.05, poll_interval=60)
            session.start()
            source.push(json.dumps(FULL_LOAD_SAMPLE) + "\n")
            await asyncio.sleep(0.15)
            result = (session.mode, session.polls_issued, session.cpu_text, session.mem_text)
            await session.aclose()
            return result

        mode, polls, cpu, mem = run(scenario())
        assert mode == ReconcilerMode.STREAMING
        assert polls == 0
        assert source.poll_calls == 0
        assert cpu == "100.00%"
        assert mem == "10.0 MiB / 100 MiB"

    def test_stream_chunk_without_samples_falls_back(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=0.01, poll_interval=60)
            session.start()
            source.push("not json\n")
            await asyncio.sleep(0.1)
            mode = session.mode
            await session.aclose()
            return mode

        assert run(scenario()) == ReconcilerMode.POLLING


class TestPollingFallback:
    def test_silent_stream_switches_to_polling(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=0.01, poll_interval=60)
            session.start()
            assert session.mode == ReconcilerMode.AWAITING
            await asyncio.sleep(0.1)
            state = (session.mode, session.polls_issued, session.has_pending_timers,
                     session.cpu_text, session.mem_text)
            await session.aclose()
            return session, state

        session, (mode, polls, pending, cpu, mem) = run(scenario())
        assert mode == ReconcilerMode.POLLING
        assert polls == 1
        assert pending is True
        assert cpu == "1.50%"
        assert mem == "5MiB / 10MiB"

        assert session.mode == ReconcilerMode.STOPPED
        assert session.has_pending_timers is False
        assert source.subscriptions[0].close_calls == 1

    def test_no_polls_after_close(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=0.01, poll_interval=0.02)
            session.start()
            await asyncio.sleep(0.1)
            await session.aclose()
            issued = session.polls_issued
            await asyncio.sleep(0.1)
            return issued, session.polls_issued

        before, after = run(scenario())
        assert before >= 1
        assert after == before

    def test_open_failure_still_polls(self):
        source = FakeSource(open_error=RuntimeError("daemon unavailable"))

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=0.01, poll_interval=60)
            session.start()
            await asyncio.sleep(0.1)
            result = (session.mode, session.cpu_text)
            await session.aclose()
            return result

        mode, cpu = run(scenario())
        assert mode == ReconcilerMode.POLLING
        assert cpu == "1.50%"

    def test_poll_failure_keeps_previous_values(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=0.01, poll_interval=0.03)
            session.start()
            await asyncio.sleep(0.02)
            first = session.cpu_text
            source.poll_error = RuntimeError("boom")
            await asyncio.sleep(0.1)
            result = (first, session.cpu_text, session.mode, session.polls_issued)
            await session.aclose()
            return result

        first, later, mode, polls = run(scenario())
        assert first == "1.50%"
        assert later == "1.50%"
        assert mode == ReconcilerMode.POLLING
        assert polls >= 2

    def test_empty_poll_output_keeps_previous_values(self):
        source = FakeSource(poll_output="")

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=0.01, poll_interval=60)
            session.cpu_text = "7.00%"
            session.start()
            await asyncio.sleep(0.05)
            cpu = session.cpu_text
            await session.aclose()
            return cpu

        assert run(scenario()) == "7.00%"

    def test_poll_limiter_is_used(self):
        source = FakeSource()

        async def scenario():
            limiter = asyncio.Semaphore(1)
            session = ContainerStatsReconciler(
                "abc", True, source, watchdog_delay=0.01, poll_interval=60, poll_limiter=limiter,
            )
            session.start()
            await asyncio.sleep(0.05)
            await session.aclose()
            return session.polls_issued, limiter.locked()

        polls, locked = run(scenario())
        assert polls == 1
        assert locked is False


class TestLifecycle:
    def test_not_running_stays_idle(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler("abc", False, source, watchdog_delay=0.01)
            session.start()
            await asyncio.sleep(0.05)
            return session.mode, session.has_pending_timers

        mode, pending = run(scenario())
        assert mode == ReconcilerMode.IDLE
        assert pending is False
        assert source.subscriptions == []
        assert source.poll_calls == 0

    def test_missing_id_stays_idle(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler(None, True, source)
            session.start()
            return session.mode

        assert run(scenario()) == ReconcilerMode.IDLE
        assert source.subscriptions == []

    def test_stop_before_start_and_twice(self):
        session = ContainerStatsReconciler("abc", True, FakeSource())
        session.stop()
        session.stop()
        assert session.closed
        assert session.mode == ReconcilerMode.STOPPED

    def test_stop_twice_after_start_closes_subscription_once(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=60)
            session.start()
            session.stop()
            session.stop()
            await session.aclose()

        run(scenario())
        assert source.subscriptions[0].close_calls == 1

    def test_subscription_close_error_does_not_block_cleanup(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=60)
            session.start()
            source.subscriptions[0].close = lambda: (_ for _ in ()).throw(RuntimeError("gone"))
            session.stop()
            return session.has_pending_timers

        assert run(scenario()) is False

    def test_late_chunk_after_stop_is_ignored(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=60)
            session.start()
            session.stop()
            source.push(json.dumps(FULL_LOAD_SAMPLE))
            return session.cpu_text, session.mode

        cpu, mode = run(scenario())
        assert cpu == ""
        assert mode == ReconcilerMode.STOPPED

    def test_start_after_stop_is_noop(self):
        source = FakeSource()

        async def scenario():
            session = ContainerStatsReconciler("abc", True, source, watchdog_delay=0.01)
            session.stop()
            session.start()
            await asyncio.sleep(0.05)
            return session.mode

        assert run(scenario()) == ReconcilerMode.STOPPED
        assert source.subscriptions == []
        assert source.poll_calls == 0

    def test_async_context_manager(self):
        source = FakeSource()

        async def scenario():
            async with ContainerStatsReconciler("abc", True, source, watchdog_delay=0.01, poll_interval=60) as s:
                await asyncio.sleep(0.05)
                assert s.mode == ReconcilerMode.POLLING
            return s

        session = run(scenario())
        assert session.closed
        assert session.has_pending_timers is False

    def test_snapshot(self):
        session = ContainerStatsReconciler("abc", True, FakeSource())
        session.cpu_text = "1.00%"
        session.mem_text = "1 MiB"
        assert session.snapshot() == {
            "container_id": "abc",
            "mode": "idle",
            "cpu": "1.00%",
            "memory": "1 MiB",
        }
