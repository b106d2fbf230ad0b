"""Function definitions, the registry, and the call engine."""

from .engine import EngineEvent, ExecutorConfig, FunctionCallEngine, render_result
from .registry import FunctionRegistry
from .types import (
    Detected,
    Ended,
    Failed,
    FunctionCallError,
    FunctionCallErrorKind,
    FunctionCallEvent,
    FunctionCallInvocation,
    FunctionCallPhase,
    FunctionCallProgress,
    FunctionDefinition,
    FunctionResult,
    FunctionSpec,
    InvalidPhaseTransition,
    PhaseKind,
    Processing,
)

__all__ = [
    "EngineEvent",
    "ExecutorConfig",
    "FunctionCallEngine",
    "render_result",
    "FunctionRegistry",
    "Detected",
    "Ended",
    "Failed",
    "FunctionCallError",
    "FunctionCallErrorKind",
    "FunctionCallEvent",
    "FunctionCallInvocation",
    "FunctionCallPhase",
    "FunctionCallProgress",
    "FunctionDefinition",
    "FunctionResult",
    "FunctionSpec",
    "InvalidPhaseTransition",
    "PhaseKind",
    "Processing",
]
