"""
IVR flow definition.

A flow is a linear chain of steps. Each step listens for trigger phrases in the
transcript of the far end and, on a match, performs one action:

- send DTMF digits into the call,
- wait (advance without sending anything),
- mark the traversal as successful.

Flows are loaded once at startup, either the built-in check-in flow or a JSON
document pointed to by `IVR_FLOW_PATH`, and validated before the server accepts
calls.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
import re
from typing import Dict, Iterator, List, Optional, Tuple, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

COMPLETE = "complete"

# Tones 0-9 * #, separated by single `w` pauses. Never leading, trailing or doubled.
_DIGITS_RE = re.compile(r"[0-9*#]+(?:w[0-9*#]+)*")


class FlowError(Exception):
    """Raised when a flow definition is malformed."""
    pass


@dataclass(frozen=True)
class SendDigits:
    digits: str


@dataclass(frozen=True)
class WaitOnly:
    pass


@dataclass(frozen=True)
class MarkSuccess:
    pass


StepAction = Union[SendDigits, WaitOnly, MarkSuccess]


@dataclass(frozen=True)
class Step:
    id: str
    trigger_phrases: Tuple[str, ...]
    action: StepAction
    next: str


@dataclass(frozen=True)
class Flow:
    steps: Dict[str, Step]
    initial_step: str

    def lookup(self, step_id: str) -> Optional[Step]:
        return self.steps.get(step_id)

    def walk(self) -> Iterator[Step]:
        """
        Yield steps along the chain starting at the initial step.

        Stops at `complete`, a dangling pointer, or the first revisited step, so
        it terminates on any flow, valid or not.
        """
        seen = set()
        step_id = self.initial_step
        while step_id != COMPLETE and step_id not in seen:
            step = self.steps.get(step_id)
            if step is None:
                return
            seen.add(step_id)
            yield step
            step_id = step.next


def is_valid_digits(digits: str) -> bool:
    """Check a DTMF string: tones `0-9*#` with single `w` pauses in between."""
    return bool(_DIGITS_RE.fullmatch(digits or ""))


def _normalize_phrases(step_id: str, phrases: List[str]) -> Tuple[str, ...]:
    normalized = []
    for phrase in phrases:
        value = " ".join(str(phrase).split()).lower()
        if not value:
            raise FlowError(f"Step '{step_id}' has an empty trigger phrase")
        normalized.append(value)
    if not normalized:
        raise FlowError(f"Step '{step_id}' has no trigger phrases")
    return tuple(normalized)


def build_flow(steps: List[Step], initial_step: Optional[str] = None) -> Flow:
    """
    Assemble and validate a flow.

    Raises:
        FlowError: On duplicate ids, dangling `next` pointers, invalid digit
            strings, or a chain that does not reach `complete`.
    """
    if not steps:
        raise FlowError("Flow has no steps")

    table: Dict[str, Step] = {}
    for step in steps:
        if not step.id or step.id == COMPLETE:
            raise FlowError(f"Invalid step id '{step.id}'")
        if step.id in table:
            raise FlowError(f"Duplicate step id '{step.id}'")
        table[step.id] = replace(
            step, trigger_phrases=_normalize_phrases(step.id, list(step.trigger_phrases))
        )

    for step in table.values():
        if step.next != COMPLETE and step.next not in table:
            raise FlowError(f"Step '{step.id}' points to unknown step '{step.next}'")
        if isinstance(step.action, SendDigits) and not is_valid_digits(step.action.digits):
            raise FlowError(f"Step '{step.id}' has invalid DTMF digits '{step.action.digits}'")

    initial = initial_step or steps[0].id
    if initial not in table:
        raise FlowError(f"Initial step '{initial}' does not exist")

    flow = Flow(steps=table, initial_step=initial)

    visited = [step.id for step in flow.walk()]
    last = table[visited[-1]]
    if last.next != COMPLETE:
        raise FlowError(
            f"Flow cycles back to step '{last.next}' after {' -> '.join(visited)}"
        )

    unreachable = sorted(set(table) - set(visited))
    if unreachable:
        logger.warning("Flow has unreachable steps", steps=unreachable)

    return flow


class _FlowFileStep(msgspec.Struct, forbid_unknown_fields=True):
    listen_for: List[str]
    next: str
    action: str = "send_digits"
    digits: str = ""


class _FlowFile(msgspec.Struct, forbid_unknown_fields=True):
    steps: Dict[str, _FlowFileStep]
    initial_step: Optional[str] = None


def _action_from_file(step_id: str, raw: _FlowFileStep) -> StepAction:
    kind = raw.action.strip().lower()
    if kind == "send_digits":
        return SendDigits(raw.digits)
    if kind == "wait":
        return WaitOnly()
    if kind == "success":
        return MarkSuccess()
    raise FlowError(f"Step '{step_id}' has unknown action '{raw.action}'")


def parse_flow(data: Union[str, bytes]) -> Flow:
    """Decode and validate a JSON flow document."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    try:
        doc = msgspec.json.decode(data, type=_FlowFile)
    except msgspec.DecodeError as e:  # ValidationError is a subclass
        raise FlowError(f"Invalid flow document: {e}") from e

    steps = [
        Step(
            id=step_id,
            trigger_phrases=tuple(raw.listen_for),
            action=_action_from_file(step_id, raw),
            next=raw.next,
        )
        for step_id, raw in doc.steps.items()
    ]
    return build_flow(steps, doc.initial_step)


def default_flow() -> Flow:
    """Employee check-in: employee id, member id, clock in, then wait for the confirmation."""
    return build_flow(
        [
            Step("step1", ("enter employee", "employee id", "vesta"), SendDigits("1w2w3w4"), "step2"),
            Step("step2", ("member id", "enter a member"), SendDigits("1w2w3w4w5w6"), "step3"),
            Step(
                "step3",
                ("clock in", "clock out", "enter 1 to clock", "enter 2 to clock"),
                SendDigits("1"),
                "step4",
            ),
            Step("step4", ("overnight", "overnight visit"), WaitOnly(), "step5"),
            Step("step5", ("token number", "enter token"), WaitOnly(), "step6"),
            Step("step6", ("time",), MarkSuccess(), COMPLETE),
        ]
    )


def load_flow(path: Optional[str] = None) -> Flow:
    """
    Load the IVR flow.

    Args:
        path: JSON flow file. Relative paths resolve against the project root.
            When empty, the built-in flow is used.
    """
    if not path:
        flow = default_flow()
        logger.info("Loaded built-in IVR flow", steps=len(flow.steps))
        return flow

    flow_path = Path(path)
    if not flow_path.is_absolute():
        # src/ivrbot/flow.py -> project root
        flow_path = Path(__file__).resolve().parent.parent.parent / flow_path

    try:
        data = flow_path.read_bytes()
    except OSError as e:
        raise FlowError(f"Cannot read flow file {flow_path}: {e}") from e

    flow = parse_flow(data)
    logger.info("Loaded IVR flow", path=str(flow_path), steps=len(flow.steps))
    return flow
