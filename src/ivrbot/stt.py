"""
Deepgram live transcription bridge.

One bridge per call: the call's mu-law 8kHz audio goes up the socket as raw
binary frames, and `Results` messages come back down. Only the first
alternative's transcript is consumed; it is lower-cased and handed to the
registered sink.

The bridge never reconnects. After an error or close it stops forwarding audio
and stops invoking the sink.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol
from urllib.parse import urlencode

import msgspec
import structlog
import websockets

from src.ivrbot.config import Config, get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

# Twilio Media Streams audio, passed through untouched.
STT_ENCODING = "mulaw"
STT_SAMPLE_RATE = 8000
STT_CHANNELS = 1

_CLOSE_STREAM = msgspec.json.encode({"type": "CloseStream"})

TranscriptSink = Callable[[str], Awaitable[None]]


class BridgeState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    ERROR = "error"
    CLOSED = "closed"


class _Alternative(msgspec.Struct):
    transcript: str = ""


class _Channel(msgspec.Struct):
    alternatives: list[_Alternative] = []


class _DeepgramMessage(msgspec.Struct):
    type: str = ""
    channel: Optional[_Channel] = None
    is_final: bool = False
    description: Optional[str] = None


_message_decoder = msgspec.json.Decoder(_DeepgramMessage)


def _decode(raw: Any) -> Optional[_DeepgramMessage]:
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        return None
    try:
        return _message_decoder.decode(raw)
    except msgspec.DecodeError:
        # Includes schema mismatches such as SpeechStarted's list-valued `channel`.
        return None


def _first_transcript(message: _DeepgramMessage) -> Optional[str]:
    if message.channel is None or not message.channel.alternatives:
        return None
    text = message.channel.alternatives[0].transcript.strip().lower()
    return text or None


def extract_transcript(raw: Any) -> Optional[str]:
    """
    Pull the first alternative's transcript out of a Deepgram message.

    Returns the lower-cased text, or None for anything that is not a non-empty
    transcript (metadata, keepalives, malformed JSON).
    """
    message = _decode(raw)
    if message is None:
        return None
    return _first_transcript(message)


class TranscriptionBridge(Protocol):
    """What a call session needs from a transcription connection."""

    @property
    def state(self) -> BridgeState: ...

    def on_transcript(self, callback: TranscriptSink) -> None: ...

    async def open(self) -> bool: ...

    async def forward_audio(self, frame: bytes) -> None: ...

    async def close(self) -> None: ...


class DeepgramBridge:
    """
    Deepgram streaming STT connection for a single call, using a raw WebSocket.
    """

    def __init__(self, call_sid: str, config: Optional[Config] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.call_sid = call_sid
        self._ws = None
        self._state = BridgeState.IDLE
        self._on_transcript: Optional[TranscriptSink] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._audio_bytes = 0
        self._transcripts = 0

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == BridgeState.OPEN

    def on_transcript(self, callback: TranscriptSink) -> None:
        self._on_transcript = callback

    def listen_url(self) -> str:
        params = {
            "model": self.config.deepgram_model,
            "language": self.config.deepgram_language,
            "encoding": STT_ENCODING,
            "sample_rate": STT_SAMPLE_RATE,
            "channels": STT_CHANNELS,
            "punctuate": "true",
            "interim_results": "true" if self.config.deepgram_interim_results else "false",
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    async def open(self) -> bool:
        """Connect to Deepgram. Returns False (and logs) on failure."""
        if self._state != BridgeState.IDLE:
            return self._state == BridgeState.OPEN

        self._state = BridgeState.CONNECTING
        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}

        try:
            ws = await websockets.connect(
                self.listen_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            self._state = BridgeState.ERROR
            logger.error(
                "Deepgram connection failed",
                call_sid=self.call_sid,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        if self._state != BridgeState.CONNECTING:
            # Closed while the handshake was in flight.
            await ws.close()
            return False

        self._ws = ws
        self._state = BridgeState.OPEN
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", call_sid=self.call_sid, model=self.config.deepgram_model)
        return True

    async def close(self) -> None:
        """Close the connection. Safe to call any number of times."""
        if self._state == BridgeState.CLOSED:
            return

        was_open = self._state == BridgeState.OPEN
        self._state = BridgeState.CLOSED

        ws = self._ws
        self._ws = None

        if ws is not None and was_open:
            try:
                await ws.send(_CLOSE_STREAM)
            except Exception as e:
                logger.debug("Deepgram CloseStream not sent", call_sid=self.call_sid, error=str(e))

        if self._receive_task and self._receive_task is not asyncio.current_task():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", call_sid=self.call_sid, error=str(e))

        logger.info(
            "Deepgram STT disconnected",
            call_sid=self.call_sid,
            audio_bytes=self._audio_bytes,
            transcripts=self._transcripts,
        )

    async def forward_audio(self, frame: bytes) -> None:
        """Send one raw audio frame. No-op unless the connection is open."""
        if self._state != BridgeState.OPEN or self._ws is None or not frame:
            return

        try:
            await self._ws.send(frame)
            self._audio_bytes += len(frame)
        except Exception as e:
            self._fail("Failed to send audio to Deepgram", e)

    def _fail(self, event: str, error: BaseException) -> None:
        if self._state in (BridgeState.CLOSED, BridgeState.ERROR):
            return
        self._state = BridgeState.ERROR
        logger.error(event, call_sid=self.call_sid, error_type=type(error).__name__, error=str(error))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if self._state != BridgeState.OPEN:
                    break
                await self.handle_message(message)
        except websockets.exceptions.ConnectionClosed as e:
            if self._state == BridgeState.OPEN:
                self._fail("Deepgram connection closed", e)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self._fail("Deepgram receive loop error", e)
        else:
            if self._state == BridgeState.OPEN:
                self._state = BridgeState.ERROR
                logger.warning("Deepgram closed the stream", call_sid=self.call_sid)

    async def handle_message(self, raw: Any) -> None:
        """Handle one message from Deepgram."""
        if self._state != BridgeState.OPEN:
            return

        message = _decode(raw)
        if message is None:
            logger.debug("Dropping malformed Deepgram message", call_sid=self.call_sid)
            return

        if message.type.lower() == "error":
            self._state = BridgeState.ERROR
            logger.error(
                "Deepgram error",
                call_sid=self.call_sid,
                error=message.description or "Unknown",
            )
            return

        text = _first_transcript(message)
        if text is None:
            return

        self._transcripts += 1
        logger.debug("STT transcript", call_sid=self.call_sid, text=text[:80], is_final=message.is_final)

        if self._on_transcript is None:
            return
        try:
            await self._on_transcript(text)
        except Exception as e:
            logger.error("Transcript sink failed", call_sid=self.call_sid, error=str(e))
