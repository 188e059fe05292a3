"""
Per-connection handler for Twilio Media Streams.

Routes the events of one WebSocket connection to the session registry:
`start` creates the call's session, `media` forwards audio to it, and `stop`
(or the socket going away) tears it down. Protocol violations are logged and
dropped; nothing here raises into the WebSocket loop.
"""

from typing import Optional, Union

import structlog

from src.ivrbot.registry import DuplicateSessionError, SessionRegistry
from src.ivrbot.session import CallSession
from src.ivrbot.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class MediaStreamHandler:
    def __init__(self, registry: SessionRegistry):
        self._registry = registry
        self._call_sid: str = ""
        self._stream_sid: str = ""
        self._owns_session = False
        self._logged_first_media = False
        self.dropped_messages = 0
        # Outlives `close()` so the caller can still read the final snapshot.
        self.last_session: Optional[CallSession] = None

    @property
    def call_sid(self) -> str:
        return self._call_sid

    @property
    def session(self) -> Optional[CallSession]:
        if not self._owns_session:
            return None
        return self._registry.get(self._call_sid)

    async def handle_message(self, raw_message: Union[str, bytes]) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Args:
            raw_message: Raw JSON message string
        """
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self.dropped_messages += 1
            logger.warning("Failed to parse Twilio message", call_sid=self._call_sid or None, error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)

        elif event_type == TwilioEventType.MARK:
            logger.debug("Twilio mark ignored", call_sid=self._call_sid or None)

        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", call_sid=self._call_sid or None, digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            logger.info("Twilio stream stopped", call_sid=self._call_sid or event.call_sid or None)
            await self.close()

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if not event.call_sid:
            self.dropped_messages += 1
            logger.warning("Start event without callSid", stream_sid=event.stream_sid)
            return

        if self._owns_session:
            self.dropped_messages += 1
            logger.warning(
                "Second start event on one stream ignored",
                call_sid=self._call_sid,
                new_call_sid=event.call_sid,
            )
            return

        try:
            session = await self._registry.create(event.call_sid, event.stream_sid)
        except DuplicateSessionError:
            self.dropped_messages += 1
            logger.warning("Duplicate start event ignored", call_sid=event.call_sid, stream_sid=event.stream_sid)
            return

        self._call_sid = event.call_sid
        self._stream_sid = event.stream_sid
        self._owns_session = True
        self.last_session = session
        logger.info(
            "Call started",
            call_sid=event.call_sid,
            stream_sid=event.stream_sid,
            tracks=event.tracks,
        )

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        session = self.session
        if session is None:
            self.dropped_messages += 1
            logger.debug("Media for unknown call dropped", stream_sid=event.stream_sid)
            return

        if not event.payload:
            self.dropped_messages += 1
            logger.debug("Empty or undecodable media payload dropped", call_sid=self._call_sid)
            return

        if not self._logged_first_media:
            self._logged_first_media = True
            logger.info(
                "Inbound media received",
                call_sid=self._call_sid,
                stream_sid=self._stream_sid,
                bytes=len(event.payload),
                track=event.track,
            )

        await session.forward_audio(event.payload)

    async def close(self) -> None:
        """Tear down this connection's session. Idempotent."""
        if not self._owns_session:
            return
        self._owns_session = False
        await self._registry.remove(self._call_sid)
        logger.info("Call ended", call_sid=self._call_sid)
