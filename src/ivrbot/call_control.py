"""
Twilio call control: inject DTMF into a live call.

The live call is redirected to a short TwiML document that plays the digits
in-band and then pauses, so the leg stays up while the IVR reads its next
prompt. Failures come back as a `DigitSendResult`, never as an exception.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import VoiceResponse

from src.ivrbot.config import Config, get_config

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DigitSendResult:
    """Outcome of one DTMF injection."""
    call_sid: str
    digits: str
    ok: bool
    error: Optional[str] = None


class CallControl(Protocol):
    async def send_digits(self, call_sid: str, digits: str) -> DigitSendResult: ...


def build_digits_twiml(digits: str, pause_seconds: int = 60) -> str:
    """TwiML that plays `digits` as DTMF and keeps the call open afterwards."""
    response = VoiceResponse()
    response.play(digits=digits)
    if pause_seconds > 0:
        response.pause(length=pause_seconds)
    return str(response)


class TwilioCallControl:
    """
    Sends DTMF through the Twilio REST API.

    The REST client is synchronous; each request runs in a worker thread so a
    slow round-trip for one call never stalls the event loop.
    """

    def __init__(self, client: TwilioClient, pause_seconds: int = 60):
        self._client = client
        self._pause_seconds = pause_seconds

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "TwilioCallControl":
        if config is None:
            config = get_config()
        client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)
        return cls(client, pause_seconds=config.dtmf_pause_seconds)

    def _update_call(self, call_sid: str, twiml: str) -> None:
        self._client.calls(call_sid).update(twiml=twiml)

    async def send_digits(self, call_sid: str, digits: str) -> DigitSendResult:
        if not call_sid or not digits:
            return DigitSendResult(call_sid, digits, ok=False, error="missing call_sid or digits")

        twiml = build_digits_twiml(digits, self._pause_seconds)

        try:
            await asyncio.to_thread(self._update_call, call_sid, twiml)
        except TwilioException as e:
            return DigitSendResult(call_sid, digits, ok=False, error=str(e))
        except Exception as e:
            # Transport errors surface from requests, not from the Twilio SDK.
            return DigitSendResult(call_sid, digits, ok=False, error=f"{type(e).__name__}: {e}")

        logger.info("DTMF sent", call_sid=call_sid, digits=digits)
        return DigitSendResult(call_sid, digits, ok=True)
