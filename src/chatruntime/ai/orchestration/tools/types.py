"""Function-call types: definitions, phases, invocations, and events.

A model-requested call is tracked as a :class:`FunctionCallInvocation` that
moves through the phases ``Detected -> Processing -> Ended | Failed``. The
short-circuit ``Detected -> Failed`` covers unknown functions and arguments
that cannot be decoded. ``Ended`` and ``Failed`` are terminal.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Mapping, Protocol, Union, runtime_checkable

__all__ = [
    "PhaseKind",
    "Detected",
    "Processing",
    "Ended",
    "Failed",
    "FunctionCallPhase",
    "FunctionCallErrorKind",
    "FunctionCallError",
    "InvalidPhaseTransition",
    "FunctionResult",
    "FunctionSpec",
    "FunctionDefinition",
    "FunctionCallInvocation",
    "FunctionCallEvent",
    "FunctionCallProgress",
    "ReportProgress",
    "PhaseRenderer",
    "FunctionHandler",
    "default_phase_message",
]


# -----------------------------------------------------------------------------
# Phases
# -----------------------------------------------------------------------------


class PhaseKind(str, enum.Enum):
    DETECTED = "detected"
    PROCESSING = "processing"
    ENDED = "ended"
    FAILED = "failed"


class FunctionCallErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    BAD_ARGUMENTS = "bad_arguments"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class FunctionCallError(Exception):
    """Why an invocation ended in :class:`Failed`."""

    def __init__(self, kind: FunctionCallErrorKind, message: str, *, cause: BaseException | None = None) -> None:
        self.kind = FunctionCallErrorKind(kind)
        self.message = message
        self.cause = cause
        super().__init__(message)

    def __repr__(self) -> str:
        return f"FunctionCallError(kind={self.kind.value!r}, message={self.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FunctionCallError):
            return NotImplemented
        return self.kind is other.kind and self.message == other.message

    def __hash__(self) -> int:
        return hash((self.kind, self.message))


class InvalidPhaseTransition(RuntimeError):
    """Raised when an invocation is moved along an edge the state machine forbids."""


@dataclass(slots=True, frozen=True)
class Detected:
    kind: ClassVar[PhaseKind] = PhaseKind.DETECTED


@dataclass(slots=True, frozen=True)
class Processing:
    arguments: str
    kind: ClassVar[PhaseKind] = PhaseKind.PROCESSING


@dataclass(slots=True, frozen=True)
class Ended:
    arguments: str
    result: str
    kind: ClassVar[PhaseKind] = PhaseKind.ENDED


@dataclass(slots=True, frozen=True)
class Failed:
    arguments: str
    error: FunctionCallError
    kind: ClassVar[PhaseKind] = PhaseKind.FAILED


FunctionCallPhase = Union[Detected, Processing, Ended, Failed]

_ALLOWED_TRANSITIONS: Mapping[PhaseKind | None, frozenset[PhaseKind]] = {
    None: frozenset({PhaseKind.DETECTED}),
    PhaseKind.DETECTED: frozenset({PhaseKind.PROCESSING, PhaseKind.FAILED}),
    PhaseKind.PROCESSING: frozenset({PhaseKind.ENDED, PhaseKind.FAILED}),
    PhaseKind.ENDED: frozenset(),
    PhaseKind.FAILED: frozenset(),
}


def default_phase_message(name: str, phase: FunctionCallPhase) -> str:
    if isinstance(phase, Detected):
        return f"Calling {name}"
    if isinstance(phase, Processing):
        return f"Running {name}"
    if isinstance(phase, Ended):
        return f"Finished {name}"
    return f"{name} failed: {phase.error.message}"


# -----------------------------------------------------------------------------
# Definitions
# -----------------------------------------------------------------------------


@runtime_checkable
class FunctionResult(Protocol):
    """Results that know how to present themselves to the model."""

    @property
    def bot_readable_content(self) -> str:
        ...


ReportProgress = Callable[[str], None]
FunctionHandler = Callable[[Any, ReportProgress], Union[Any, Awaitable[Any]]]
PhaseRenderer = Callable[[FunctionCallPhase], str]


@dataclass(slots=True, frozen=True)
class FunctionSpec:
    """Model-facing description of a function.

    Attributes:
        name: Unique identifier; letters, digits and underscores, up to 64 characters.
        description: Tells the model when to call the function.
        parameters: JSON Schema the decoded arguments must satisfy.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    @property
    def schema(self) -> dict[str, Any]:
        return dict(self.parameters) if self.parameters else {"type": "object", "properties": {}}

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.schema},
        }


@dataclass(slots=True, frozen=True)
class FunctionDefinition:
    """A callable function the model may request.

    ``handler`` receives the decoded arguments (after ``arguments_factory``
    when one is given) and a progress reporter; it may be sync or async.
    ``renderer`` turns a phase into a line the UI can show as-is.
    """

    spec: FunctionSpec
    handler: FunctionHandler
    arguments_factory: Callable[[Mapping[str, Any]], Any] | None = None
    renderer: PhaseRenderer | None = None

    @property
    def name(self) -> str:
        return self.spec.name

    def describe(self, phase: FunctionCallPhase) -> str:
        if self.renderer is None:
            return default_phase_message(self.name, phase)
        return self.renderer(phase)


# -----------------------------------------------------------------------------
# Invocations and events
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class FunctionCallInvocation:
    """One tracked call; only the engine moves it between phases."""

    name: str
    arguments: str
    call_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    phase: FunctionCallPhase | None = None
    history: list[FunctionCallPhase] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def transition(self, phase: FunctionCallPhase) -> None:
        current = self.phase.kind if self.phase is not None else None
        if phase.kind not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidPhaseTransition(
                f"{self.name} ({self.call_id}) cannot move from {current} to {phase.kind.value}"
            )
        self.phase = phase
        self.history.append(phase)
        self.updated_at = time.time()

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.phase, (Ended, Failed))

    @property
    def result(self) -> str | None:
        return self.phase.result if isinstance(self.phase, Ended) else None

    @property
    def error(self) -> FunctionCallError | None:
        return self.phase.error if isinstance(self.phase, Failed) else None

    def bot_readable_output(self) -> str:
        """Text fed back to the model as the tool message for this call."""

        if isinstance(self.phase, Ended):
            return self.phase.result
        if isinstance(self.phase, Failed):
            return f"Error: {self.phase.error.message}"
        return ""


@dataclass(slots=True, frozen=True)
class FunctionCallEvent:
    call_id: str
    name: str
    phase: FunctionCallPhase
    message: str


@dataclass(slots=True, frozen=True)
class FunctionCallProgress:
    call_id: str
    name: str
    message: str
