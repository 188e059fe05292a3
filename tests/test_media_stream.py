"""
Tests for routing Twilio Media Streams events to call sessions.
"""

import json

import pytest

from src.ivrbot.media_stream import MediaStreamHandler
from src.ivrbot.registry import SessionRegistry
from src.ivrbot.session import CallSession
from src.ivrbot.stt import BridgeState

from conftest import FakeBridge, FakeCallControl, make_media_message, wait_for


@pytest.fixture
def bridges():
    return {}


@pytest.fixture
def control():
    return FakeCallControl()


@pytest.fixture
def registry(scenario_flow, bridges, control):
    def factory(call_sid: str, stream_sid: str) -> CallSession:
        bridge = FakeBridge(call_sid)
        bridges[call_sid] = bridge
        return CallSession(call_sid, stream_sid, scenario_flow, bridge, control, drain_timeout=1.0)

    return SessionRegistry(factory)


@pytest.mark.asyncio
class TestMediaStreamHandler:
    async def test_start_creates_session(self, registry, twilio_start_message):
        handler = MediaStreamHandler(registry)

        await handler.handle_message(twilio_start_message)

        assert handler.call_sid == "CA789012"
        session = registry.get("CA789012")
        assert session is not None
        assert session.stream_sid == "MZ123456"
        await handler.close()

    async def test_media_forwarded_in_order(self, registry, bridges, twilio_start_message):
        handler = MediaStreamHandler(registry)
        await handler.handle_message(twilio_start_message)
        await wait_for(lambda: bridges["CA789012"].state == BridgeState.OPEN)

        frames = [bytes([i]) * 160 for i in range(1, 4)]
        for i, frame in enumerate(frames):
            await handler.handle_message(make_media_message(frame, chunk=i + 1))

        assert bridges["CA789012"].frames == frames
        await handler.close()

    async def test_media_before_start_is_dropped(self, registry, twilio_media_message):
        handler = MediaStreamHandler(registry)

        await handler.handle_message(twilio_media_message)

        assert handler.dropped_messages == 1
        assert len(registry) == 0

    async def test_undecodable_payload_is_dropped(self, registry, bridges, twilio_start_message):
        handler = MediaStreamHandler(registry)
        await handler.handle_message(twilio_start_message)
        await wait_for(lambda: bridges["CA789012"].state == BridgeState.OPEN)

        bad = json.dumps({"event": "media", "streamSid": "MZ123456", "media": {"payload": "!!not base64!!"}})
        await handler.handle_message(bad)

        assert bridges["CA789012"].frames == []
        assert handler.dropped_messages == 1
        await handler.close()

    async def test_stop_tears_down(self, registry, bridges, twilio_start_message, twilio_stop_message):
        handler = MediaStreamHandler(registry)
        await handler.handle_message(twilio_start_message)

        await handler.handle_message(twilio_stop_message)

        assert registry.get("CA789012") is None
        assert bridges["CA789012"].state == BridgeState.CLOSED
        assert handler.session is None
        assert handler.last_session is not None
        assert handler.last_session.closed
        assert handler.last_session.snapshot()["call_sid"] == "CA789012"

        # Socket closure after stop is a no-op.
        await handler.close()
        assert bridges["CA789012"].close_calls == 1

    async def test_duplicate_start_across_connections(self, registry, twilio_start_message):
        first = MediaStreamHandler(registry)
        second = MediaStreamHandler(registry)
        await first.handle_message(twilio_start_message)

        await second.handle_message(twilio_start_message)

        assert second.dropped_messages == 1
        assert second.session is None
        # The duplicate's teardown must not remove the original session.
        await second.close()
        assert registry.get("CA789012") is not None
        await first.close()

    async def test_start_without_call_sid(self, registry):
        handler = MediaStreamHandler(registry)
        await handler.handle_message(json.dumps({"event": "start", "streamSid": "MZ1", "start": {}}))

        assert handler.dropped_messages == 1
        assert len(registry) == 0

    async def test_malformed_messages_are_dropped(self, registry):
        handler = MediaStreamHandler(registry)

        await handler.handle_message("not json")
        await handler.handle_message(json.dumps({"event": "bogus"}))
        await handler.handle_message(json.dumps(["event", "start"]))

        assert handler.dropped_messages == 3

    async def test_dtmf_echo_is_logged_not_routed(self, registry, control, twilio_start_message):
        handler = MediaStreamHandler(registry)
        await handler.handle_message(twilio_start_message)

        await handler.handle_message(
            json.dumps({"event": "dtmf", "streamSid": "MZ123456", "dtmf": {"track": "inbound_track", "digit": "5"}})
        )

        assert handler.dropped_messages == 0
        assert control.sent == []
        assert handler.session.progress.current_step_id == "step1"
        await handler.close()

    async def test_end_to_end_digits(self, registry, bridges, control, twilio_start_message):
        handler = MediaStreamHandler(registry)
        await handler.handle_message(twilio_start_message)
        await wait_for(lambda: bridges["CA789012"].state == BridgeState.OPEN)

        await bridges["CA789012"].emit("please enter employee id now")
        await wait_for(lambda: len(control.sent) == 1)

        assert control.sent == [("CA789012", "1w2w3w4")]
        assert registry.get("CA789012").progress.current_step_id == "step2"
        await handler.close()
