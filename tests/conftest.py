"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import json
import os
from typing import List
from unittest.mock import patch

import pytest

from src.ivrbot.call_control import DigitSendResult
from src.ivrbot.flow import COMPLETE, MarkSuccess, SendDigits, Step, WaitOnly, build_flow
from src.ivrbot.stt import BridgeState


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "IVR_NUMBER": "+15555550100",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.ivrbot.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeBridge:
    """In-memory transcription bridge."""

    def __init__(self, call_sid: str = "", open_ok: bool = True):
        self.call_sid = call_sid
        self.open_ok = open_ok
        self.state = BridgeState.IDLE
        self.frames: List[bytes] = []
        self.close_calls = 0
        self._sink = None

    def on_transcript(self, callback) -> None:
        self._sink = callback

    async def open(self) -> bool:
        self.state = BridgeState.OPEN if self.open_ok else BridgeState.ERROR
        return self.open_ok

    async def forward_audio(self, frame: bytes) -> None:
        if self.state == BridgeState.OPEN:
            self.frames.append(frame)

    async def close(self) -> None:
        self.close_calls += 1
        self.state = BridgeState.CLOSED

    async def emit(self, text: str) -> None:
        """Deliver a transcript the way the Deepgram receive loop does."""
        if self.state == BridgeState.OPEN and self._sink is not None:
            await self._sink(text)


class FakeCallControl:
    """Records DTMF sends instead of calling Twilio."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.sent: List[tuple] = []

    async def send_digits(self, call_sid: str, digits: str) -> DigitSendResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append((call_sid, digits))
        if self.fail:
            return DigitSendResult(call_sid, digits, ok=False, error="call not in-progress")
        return DigitSendResult(call_sid, digits, ok=True)


@pytest.fixture
def fake_call_control():
    return FakeCallControl()


@pytest.fixture
def scenario_flow():
    """Employee id -> wait -> success."""
    return build_flow(
        [
            Step("step1", ("employee id",), SendDigits("1w2w3w4"), "step2"),
            Step("step2", ("overnight",), WaitOnly(), "step5"),
            Step("step5", ("time",), MarkSuccess(), COMPLETE),
        ]
    )


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


def make_media_message(payload: bytes, stream_sid: str = "MZ123456", chunk: int = 1) -> str:
    return json.dumps({
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "track": "inbound",
            "chunk": chunk,
            "timestamp": "12345",
            "payload": base64.b64encode(payload).decode(),
        }
    })


@pytest.fixture
def twilio_media_message():
    """Sample Twilio media message (20ms of mu-law silence)."""
    return make_media_message(b"\xff" * 160)


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
        "stop": {"callSid": "CA789012", "accountSid": "AC345678"},
    })


def deepgram_results(transcript: str, is_final: bool = True) -> str:
    return json.dumps({
        "type": "Results",
        "channel_index": [0, 1],
        "is_final": is_final,
        "speech_final": is_final,
        "channel": {
            "alternatives": [
                {"transcript": transcript, "confidence": 0.98, "words": []},
                {"transcript": "something else", "confidence": 0.4, "words": []},
            ]
        },
    })


async def wait_for(predicate, timeout: float = 1.0, interval: float = 0.005) -> None:
    """Poll until `predicate()` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
