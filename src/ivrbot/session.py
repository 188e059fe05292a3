"""
Call session: one per live media stream.

A session ties a call to its transcription bridge and its place in the flow.
Transcripts arrive on the bridge's receive loop and are queued; a single
worker task applies them in order, so the state machine has exactly one
writer per call and at most one DTMF send is in flight per call.

Audio frames take the other path: the media stream handler awaits
`forward_audio` for each frame, which keeps them in arrival order.
"""

import asyncio
import time
from typing import Any, Dict, Optional

import structlog

from src.ivrbot.call_control import CallControl, DigitSendResult
from src.ivrbot.flow import Flow
from src.ivrbot.state_machine import CallProgress, Outcome, Transition, process_transcript
from src.ivrbot.stt import TranscriptionBridge

logger = structlog.get_logger(__name__)


class CallSession:
    """
    Per-call state and the tasks that drive it.
    """

    def __init__(
        self,
        call_sid: str,
        stream_sid: str,
        flow: Flow,
        bridge: TranscriptionBridge,
        call_control: CallControl,
        drain_timeout: float = 5.0,
    ):
        self.call_sid = call_sid
        self.stream_sid = stream_sid
        self._flow = flow
        self._bridge = bridge
        self._call_control = call_control
        self._drain_timeout = drain_timeout

        self._progress = CallProgress.start(flow)
        self._lock = asyncio.Lock()
        self._closed = False

        self._transcript_queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._bridge_task: Optional[asyncio.Task] = None

        self.audio_frames = 0
        self.transcripts = 0
        self.dtmf_sent = 0
        self.dtmf_failed = 0
        self.last_send: Optional[DigitSendResult] = None

    @property
    def progress(self) -> CallProgress:
        return self._progress

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def bridge(self) -> TranscriptionBridge:
        return self._bridge

    async def start(self) -> None:
        """Start the worker and open the transcription bridge in the background."""
        self._bridge.on_transcript(self._enqueue_transcript)
        if self._worker_task is None:
            self._worker_task = asyncio.create_task(self._transcript_worker())
        if self._bridge_task is None:
            self._bridge_task = asyncio.create_task(self._open_bridge())
        logger.info(
            "Call session started",
            call_sid=self.call_sid,
            stream_sid=self.stream_sid,
            step=self._progress.current_step_id,
        )

    async def _open_bridge(self) -> None:
        try:
            ok = await self._bridge.open()
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("STT open task error", call_sid=self.call_sid, error=str(e))
            return
        if ok:
            logger.info("STT ready", call_sid=self.call_sid)
        else:
            # No retry: the call keeps streaming but will not progress.
            logger.error("STT failed to start; session will not progress", call_sid=self.call_sid)

    async def forward_audio(self, frame: bytes) -> None:
        if self._closed or not frame:
            return
        self.audio_frames += 1
        await self._bridge.forward_audio(frame)

    async def _enqueue_transcript(self, text: str) -> None:
        if self._closed:
            return
        self._transcript_queue.put_nowait(text)

    async def _transcript_worker(self) -> None:
        """Apply queued transcripts one at a time, in arrival order."""
        try:
            while True:
                text = await self._transcript_queue.get()
                try:
                    if text is None:
                        return
                    if self._closed:
                        continue
                    await self.handle_transcript(text)
                except Exception as e:
                    logger.error("Transcript handling failed", call_sid=self.call_sid, error=str(e))
                finally:
                    self._transcript_queue.task_done()
        except asyncio.CancelledError:
            pass

    async def handle_transcript(self, text: str) -> Transition:
        """
        Run one transcript through the state machine and perform its effect.

        The transition is committed before the DTMF send starts and is not
        rolled back if the send fails.
        """
        async with self._lock:
            if self._closed:
                return Transition(self._progress)
            self.transcripts += 1
            transition = process_transcript(self._flow, self._progress, self.call_sid, text)
            self._progress = transition.progress

        if not transition.matched:
            return transition

        step = transition.step
        logger.info(
            "Step matched",
            call_sid=self.call_sid,
            step=step.id if step else None,
            phrase=transition.phrase,
            next_step=transition.progress.current_step_id,
            action=type(step.action).__name__ if step else None,
        )

        if transition.progress.outcome == Outcome.SUCCEEDED:
            logger.info(
                "IVR flow succeeded",
                call_sid=self.call_sid,
                duration_seconds=round(
                    (transition.progress.completed_at or time.time()) - transition.progress.started_at, 2
                ),
            )

        if transition.effect is not None:
            result = await self._call_control.send_digits(
                transition.effect.call_sid, transition.effect.digits
            )
            self.last_send = result
            if result.ok:
                self.dtmf_sent += 1
            else:
                self.dtmf_failed += 1
                log = logger.info if self._closed else logger.error
                log(
                    "DTMF send failed",
                    call_sid=self.call_sid,
                    digits=result.digits,
                    error=result.error,
                    session_closed=self._closed,
                )

        return transition

    async def close(self) -> None:
        """
        Tear the session down. Idempotent.

        The bridge is closed first so no new transcripts arrive. Queued
        transcripts are dropped; an in-flight DTMF send is allowed to finish
        for up to `drain_timeout` seconds.
        """
        async with self._lock:
            if self._closed:
                return
            self._closed = True

        if self._bridge_task and not self._bridge_task.done():
            self._bridge_task.cancel()
            await asyncio.gather(self._bridge_task, return_exceptions=True)

        try:
            await self._bridge.close()
        except Exception as e:
            logger.warning("Error closing STT bridge", call_sid=self.call_sid, error=str(e))

        if self._worker_task and not self._worker_task.done():
            self._transcript_queue.put_nowait(None)
            done, _ = await asyncio.wait({self._worker_task}, timeout=self._drain_timeout)
            if not done:
                logger.warning("Session worker did not drain; cancelling", call_sid=self.call_sid)
                self._worker_task.cancel()
                await asyncio.gather(self._worker_task, return_exceptions=True)

        logger.info("Call session closed", **self.snapshot())

    def snapshot(self) -> Dict[str, Any]:
        progress = self._progress
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "current_step": progress.current_step_id,
            "outcome": progress.outcome.value,
            "started_at": progress.started_at,
            "last_match_at": progress.last_match_at,
            "completed_at": progress.completed_at,
            "transitions": progress.transitions,
            "transcription": self._bridge.state.value,
            "audio_frames": self.audio_frames,
            "transcripts": self.transcripts,
            "dtmf_sent": self.dtmf_sent,
            "dtmf_failed": self.dtmf_failed,
            "closed": self._closed,
        }
