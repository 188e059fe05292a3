"""
Per-call IVR state machine.

`process_transcript` is a pure function: given the flow, the call's current
progress and one lower-cased transcript fragment, it returns the new progress
and at most one side effect. Callers own serialization and the side effect.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import time
from typing import Optional

from src.ivrbot.flow import COMPLETE, Flow, MarkSuccess, SendDigits, Step


class Outcome(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class CallProgress:
    """Where a call is in the flow."""
    current_step_id: str
    outcome: Outcome = Outcome.IN_PROGRESS
    started_at: float = 0.0
    last_match_at: Optional[float] = None
    completed_at: Optional[float] = None
    matched_phrase: Optional[str] = None
    transitions: int = 0

    @classmethod
    def start(cls, flow: Flow, now: Optional[float] = None) -> "CallProgress":
        return cls(
            current_step_id=flow.initial_step,
            started_at=time.time() if now is None else now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED or self.current_step_id == COMPLETE


@dataclass(frozen=True)
class EmitDTMF:
    """Send `digits` into the live call `call_sid`."""
    call_sid: str
    digits: str


@dataclass(frozen=True)
class Transition:
    progress: CallProgress
    effect: Optional[EmitDTMF] = None
    step: Optional[Step] = None
    phrase: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.phrase is not None


def match_phrase(step: Step, text: str) -> Optional[str]:
    """Return the first trigger phrase contained in `text`, in declaration order."""
    for phrase in step.trigger_phrases:
        if phrase in text:
            return phrase
    return None


def process_transcript(
    flow: Flow,
    progress: CallProgress,
    call_sid: str,
    text: str,
    now: Optional[float] = None,
) -> Transition:
    """
    Apply one transcript fragment to a call.

    At most one step transition happens per call; only the current step's
    phrases are considered. Non-matching text and terminal progress return
    the progress unchanged.
    """
    if not text or progress.is_terminal:
        return Transition(progress)

    step = flow.lookup(progress.current_step_id)
    if step is None:
        return Transition(progress)

    phrase = match_phrase(step, text.lower())
    if phrase is None:
        return Transition(progress)

    if now is None:
        now = time.time()

    if isinstance(step.action, MarkSuccess):
        new = replace(
            progress,
            current_step_id=COMPLETE,
            outcome=Outcome.SUCCEEDED,
            last_match_at=now,
            completed_at=now,
            matched_phrase=phrase,
            transitions=progress.transitions + 1,
        )
        return Transition(new, step=step, phrase=phrase)

    new = replace(
        progress,
        current_step_id=step.next,
        last_match_at=now,
        completed_at=now if step.next == COMPLETE else progress.completed_at,
        matched_phrase=phrase,
        transitions=progress.transitions + 1,
    )

    if isinstance(step.action, SendDigits):
        return Transition(new, effect=EmitDTMF(call_sid, step.action.digits), step=step, phrase=phrase)

    # WaitOnly: advance without touching the call.
    return Transition(new, step=step, phrase=phrase)
