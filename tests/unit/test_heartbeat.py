"""
Unit tests for HeartbeatMonitor.

Tests the at-most-one-in-flight rule, dead connection detection, latency
tracking and server-requested heartbeats.
"""

import asyncio

import pytest

from backstube.core.gateway.heartbeat import HeartbeatMonitor
from tests.fakes import wait_for_condition


class Recorder:
    def __init__(self, auto_ack=False, fail=False):
        self.sent = 0
        self.dead = []
        self.auto_ack = auto_ack
        self.fail = fail
        self.monitor = None

    async def send(self):
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent += 1
        if self.auto_ack:
            self.monitor.acknowledge()

    async def on_dead(self, interval):
        self.dead.append(interval)


def make_monitor(recorder, jitter=0.0):
    monitor = HeartbeatMonitor(recorder.send, recorder.on_dead, jitter=lambda: jitter)
    recorder.monitor = monitor
    return monitor


@pytest.mark.asyncio
class TestHeartbeatLoop:
    async def test_missing_ack_declares_dead_after_single_beat(self):
        """Without an ack, a second heartbeat must never be sent."""
        recorder = Recorder()
        monitor = make_monitor(recorder)

        monitor.start(0.02)
        await wait_for_condition(lambda: recorder.dead)
        await asyncio.sleep(0.05)

        assert recorder.sent == 1
        assert recorder.dead == [0.02]
        assert not monitor.running

    async def test_acked_heartbeats_keep_beating(self):
        recorder = Recorder(auto_ack=True)
        monitor = make_monitor(recorder)

        monitor.start(0.01)
        await wait_for_condition(lambda: recorder.sent >= 3)
        await monitor.stop()

        assert recorder.dead == []
        assert monitor.record.acks_received == recorder.sent
        assert monitor.latency is not None

    async def test_first_beat_waits_jittered_interval(self):
        recorder = Recorder(auto_ack=True)
        monitor = make_monitor(recorder, jitter=0.99)

        monitor.start(0.2)
        await asyncio.sleep(0.05)

        assert recorder.sent == 0
        await monitor.stop()

    async def test_send_failure_declares_dead(self):
        recorder = Recorder(fail=True)
        monitor = make_monitor(recorder)

        monitor.start(0.01)
        await wait_for_condition(lambda: recorder.dead)

        assert recorder.sent == 0
        assert not monitor.running

    async def test_stop_is_idempotent(self):
        recorder = Recorder(auto_ack=True)
        monitor = make_monitor(recorder)

        await monitor.stop()
        monitor.start(10.0)
        await monitor.stop()
        await monitor.stop()

        assert not monitor.running

    async def test_invalid_interval_rejected(self):
        monitor = make_monitor(Recorder())

        with pytest.raises(ValueError):
            monitor.start(0)


@pytest.mark.asyncio
class TestServerRequests:
    async def test_beat_now_sends_when_idle(self):
        recorder = Recorder()
        monitor = make_monitor(recorder)

        sent = await monitor.beat_now()

        assert sent is True
        assert recorder.sent == 1
        assert monitor.record.ack_pending is True

    async def test_beat_now_skipped_while_ack_pending(self):
        """A server request must not put a second heartbeat in flight."""
        recorder = Recorder()
        monitor = make_monitor(recorder)
        await monitor.beat_now()

        sent = await monitor.beat_now()

        assert sent is False
        assert recorder.sent == 1

    async def test_acknowledge_records_latency(self):
        recorder = Recorder()
        clock = iter([10.0, 10.25])
        monitor = HeartbeatMonitor(
            recorder.send, recorder.on_dead, jitter=lambda: 0.0, clock=lambda: next(clock)
        )

        await monitor.beat_now()
        monitor.acknowledge()

        assert monitor.latency == pytest.approx(0.25)
        assert monitor.record.ack_pending is False
