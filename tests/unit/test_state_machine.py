"""
Unit tests for SessionStateMachine.

Drives the machine against the in-memory FakeGateway: connect failures and
backoff, identify vs resume decisions, server instructions, fatal close
codes, dead heartbeats and shutdown.
"""

import asyncio
import sys

import pytest

from backstube.core.config.manager import ConfigManager
from backstube.core.exceptions import ConfigurationError, ProtocolError
from backstube.core.gateway.backoff import BackoffPolicy
from backstube.core.gateway.protocol import Opcode
from backstube.core.gateway.session import Session, SessionState
from backstube.core.gateway.state_machine import SessionStateMachine
from backstube.core.ratelimit.limiter import RateLimiter
from tests.fakes import RESUME_URL, FakeGateway, wait_for_condition


class RecordingSink:
    """Stands in for the dispatcher: advances the watermark and keeps frames."""

    def __init__(self, session):
        self.session = session
        self.frames = []

    async def on_frame(self, frame):
        self.session.observe_sequence(frame.s)
        self.frames.append(frame)


def build_machine(gateway, backoff=None, hello_timeout=1.0, heartbeat_jitter=1.0):
    ConfigManager.set_override("gateway.identify_bucket.period_seconds", 0.01)
    session = Session()
    sink = RecordingSink(session)
    machine = SessionStateMachine(
        gateway,
        RateLimiter(),
        sink,
        session,
        token="test-token",
        gateway_url="wss://gateway.test",
        backoff=backoff or BackoffPolicy(base=0.01, max_delay=0.05, jitter_ratio=0.0),
        hello_timeout=hello_timeout,
        heartbeat_jitter=lambda: heartbeat_jitter,
    )
    return machine, session, sink


async def stop_machine(machine, task):
    await machine.stop()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
class TestConnecting:
    async def test_connect_fails_twice_then_ready(self):
        """Two refused connects, then READY: counter back to 0 after exactly two backoff waits."""
        gateway = FakeGateway(fail_connects=2)
        machine, session, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)

        assert machine.state is SessionState.READY
        assert machine.attempt.attempt_count == 0
        assert machine.metrics.backoff_waits == 2
        assert machine.metrics.connects_failed == 2
        assert gateway.connect_attempts == 3
        assert session.session_id == "session-1"
        assert session.application_id == 424242

        await stop_machine(machine, task)

        states = [new for _, new in machine.transitions]
        assert states == [
            SessionState.CONNECTING,
            SessionState.RECONNECTING,
            SessionState.CONNECTING,
            SessionState.RECONNECTING,
            SessionState.CONNECTING,
            SessionState.IDENTIFYING,
            SessionState.READY,
            SessionState.CLOSING,
            SessionState.DISCONNECTED,
        ]

    async def test_identify_sent_after_hello(self):
        gateway = FakeGateway()
        machine, _, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        await stop_machine(machine, task)

        first = gateway.connections[0]
        assert first.endpoint == "wss://gateway.test/?v=10&encoding=json"
        assert first.sent[0]["op"] == Opcode.IDENTIFY
        assert first.sent[0]["d"]["token"] == "test-token"
        assert first.close_code == 1000

    async def test_hello_timeout_triggers_reconnect(self):
        class SilentGateway(FakeGateway):
            async def connect(self, endpoint):
                connection = await super().connect(endpoint)
                if len(self.connections) == 1:
                    # Swallow HELLO on the first connection
                    connection.inbox.get_nowait()
                return connection

        gateway = SilentGateway()
        machine, _, _ = build_machine(gateway, hello_timeout=0.05)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        await stop_machine(machine, task)

        assert gateway.connect_attempts == 2
        assert machine.metrics.backoff_waits == 1

    async def test_stop_during_backoff(self):
        gateway = FakeGateway(fail_connects=100)
        machine, _, _ = build_machine(
            gateway, backoff=BackoffPolicy(base=30.0, max_delay=30.0, jitter_ratio=0.0)
        )

        task = asyncio.create_task(machine.run())
        await wait_for_condition(lambda: machine.metrics.backoff_waits == 1)
        machine.request_stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert machine.state is SessionState.DISCONNECTED
        assert gateway.connect_attempts == 1


@pytest.mark.asyncio
class TestSessionRecovery:
    async def test_invalid_session_leads_to_fresh_identify(self):
        """INVALID_SESSION(false) clears the session; the next connection identifies, never resumes."""
        gateway = FakeGateway()
        machine, session, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.dispatch("GUILD_CREATE", {"id": "1"})
        gateway.push({"op": 9, "d": False})

        await wait_for_condition(lambda: gateway.sessions_started == 2 and machine.state is SessionState.READY)
        await stop_machine(machine, task)

        second = gateway.connections[1]
        assert Opcode.IDENTIFY in second.sent_ops()
        assert Opcode.RESUME not in second.sent_ops()
        assert second.endpoint.startswith("wss://gateway.test")
        assert session.session_id == "session-2"
        assert machine.metrics.sessions_invalidated == 1

    async def test_resumable_invalid_session_resumes(self):
        gateway = FakeGateway()
        machine, session, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.push({"op": 9, "d": True})

        await wait_for_condition(lambda: machine.metrics.resumed_events == 1)
        await stop_machine(machine, task)

        assert Opcode.RESUME in gateway.connections[1].sent_ops()
        assert session.session_id == "session-1"

    async def test_resume_after_connection_drop(self):
        gateway = FakeGateway()
        machine, session, sink = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.dispatch("GUILD_CREATE", {"id": "1"})
        gateway.dispatch("VOICE_STATE_UPDATE", {"guild_id": "1"})
        gateway.drop(1006, "abnormal closure")

        await wait_for_condition(lambda: machine.metrics.resumed_events == 1)
        await stop_machine(machine, task)

        second = gateway.connections[1]
        resume = second.sent[0]
        assert second.endpoint.startswith(RESUME_URL)
        assert resume["op"] == Opcode.RESUME
        assert resume["d"] == {"token": "test-token", "session_id": "session-1", "seq": 3}
        assert machine.attempt.attempt_count == 0
        assert [frame.t for frame in sink.frames] == [
            "READY",
            "GUILD_CREATE",
            "VOICE_STATE_UPDATE",
            "RESUMED",
        ]

    async def test_server_reconnect_request_resumes(self):
        gateway = FakeGateway()
        machine, _, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.push({"op": 7, "d": None})

        await wait_for_condition(lambda: machine.metrics.resumed_events == 1)
        await stop_machine(machine, task)

        assert gateway.connections[0].close_code == 4000
        assert Opcode.RESUME in gateway.connections[1].sent_ops()

    async def test_session_timeout_close_code_identifies(self):
        gateway = FakeGateway()
        machine, session, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.drop(4009, "session timed out")

        await wait_for_condition(lambda: gateway.sessions_started == 2 and machine.state is SessionState.READY)
        await stop_machine(machine, task)

        assert Opcode.RESUME not in gateway.connections[1].sent_ops()
        assert session.session_id == "session-2"

    async def test_rejected_resume_falls_back_to_identify(self):
        gateway = FakeGateway()
        gateway.resume_script.append("invalid")
        machine, session, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.drop(1001, "going away")

        await wait_for_condition(lambda: gateway.sessions_started == 2 and machine.state is SessionState.READY)
        await stop_machine(machine, task)

        assert gateway.connections[1].sent_ops()[0] == Opcode.RESUME
        assert gateway.connections[2].sent_ops()[0] == Opcode.IDENTIFY
        assert session.session_id == "session-2"

    async def test_invalid_json_frame_reconnects_and_resumes(self):
        gateway = FakeGateway()
        machine, session, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.dispatch("GUILD_CREATE", {"id": "1"})
        gateway.latest.inbox.put_nowait('{"op": 0, "t": "GUILD_CREATE", ')

        await wait_for_condition(lambda: machine.metrics.resumed_events == 1)
        await stop_machine(machine, task)

        assert task.exception() is None
        assert gateway.connections[1].sent[0]["op"] == Opcode.RESUME
        assert gateway.connections[1].sent[0]["d"]["seq"] == 2
        assert session.session_id == "session-1"

    async def test_undeliverable_dispatch_reconnects_instead_of_ending(self):
        gateway = FakeGateway()
        machine, _, sink = build_machine(gateway)
        deliver = sink.on_frame

        async def reject_interactions(frame):
            if frame.t == "INTERACTION_CREATE":
                raise ProtocolError("Malformed dispatch payload")
            await deliver(frame)

        sink.on_frame = reject_interactions

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.dispatch("INTERACTION_CREATE", {"type": 2, "data": ["slowmode"]})

        await wait_for_condition(lambda: machine.metrics.resumed_events == 1)
        gateway.dispatch("GUILD_CREATE", {"id": "2"})
        await wait_for_condition(lambda: sink.frames[-1].t == "GUILD_CREATE")
        await stop_machine(machine, task)

        assert task.exception() is None
        assert [frame.t for frame in sink.frames] == ["READY", "RESUMED", "GUILD_CREATE"]

    async def test_identify_reports_running_platform_by_default(self):
        gateway = FakeGateway()
        machine, _, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        await stop_machine(machine, task)

        assert ConfigManager.get("gateway.properties") is None
        assert gateway.connections[0].sent[0]["d"]["properties"]["os"] == sys.platform


@pytest.mark.asyncio
class TestFatalErrors:
    async def test_ready_without_session_id_is_configuration_error(self):
        gateway = FakeGateway(
            ready_payload={"resume_gateway_url": RESUME_URL, "user": {"id": "1"}}
        )
        machine, _, _ = build_machine(gateway)

        with pytest.raises(ConfigurationError) as excinfo:
            await asyncio.wait_for(machine.run(), timeout=2.0)

        assert excinfo.value.config_key == "gateway.ready"
        assert machine.state is SessionState.DISCONNECTED

    async def test_authentication_failed_close_code_is_fatal(self):
        gateway = FakeGateway()
        machine, _, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.drop(4004, "Authentication failed.")

        with pytest.raises(ConfigurationError) as excinfo:
            await asyncio.wait_for(task, timeout=2.0)

        assert excinfo.value.config_key == "DISCORD_TOKEN"
        assert gateway.connect_attempts == 1

    async def test_disallowed_intents_is_fatal(self):
        gateway = FakeGateway()
        machine, _, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.drop(4014, "Disallowed intent(s).")

        with pytest.raises(ConfigurationError) as excinfo:
            await asyncio.wait_for(task, timeout=2.0)

        assert excinfo.value.config_key == "gateway.intents"


@pytest.mark.asyncio
class TestHeartbeats:
    async def test_missed_ack_reconnects_and_resumes(self):
        gateway = FakeGateway(heartbeat_interval_ms=30, auto_ack=False)
        machine, _, _ = build_machine(gateway, heartbeat_jitter=0.0)

        task = asyncio.create_task(machine.run())
        await wait_for_condition(lambda: machine.metrics.dead_connections >= 1)
        await stop_machine(machine, task)

        first = gateway.connections[0]
        assert first.close_code == 4000
        assert first.sent_ops().count(Opcode.HEARTBEAT) == 1
        assert machine.state is SessionState.DISCONNECTED

    async def test_server_heartbeat_request_answered(self):
        gateway = FakeGateway()
        machine, session, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        gateway.push({"op": 1, "d": None})

        await wait_for_condition(lambda: machine.metrics.heartbeat_acks == 1)
        await stop_machine(machine, task)

        heartbeat = [frame for frame in gateway.connections[0].sent if frame["op"] == Opcode.HEARTBEAT]
        assert heartbeat == [{"op": 1, "d": session.sequence_watermark}]
        assert machine.latency is not None
        assert machine.heartbeat.record.acks_received == 1

    async def test_metrics_snapshot(self):
        gateway = FakeGateway()
        machine, _, _ = build_machine(gateway)

        task = asyncio.create_task(machine.run())
        await asyncio.wait_for(machine.wait_until_ready(), timeout=2.0)
        snapshot = machine.get_metrics_snapshot()
        await stop_machine(machine, task)

        assert snapshot["state"] == "ready"
        assert snapshot["session_id"] == "session-1"
        assert snapshot["identifies"] == 1
        assert snapshot["ready_events"] == 1
