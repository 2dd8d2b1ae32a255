# src/orchestration/__init__.py

"""
Turn orchestration.

Key Components:
- OrchestrationEngine: one inbound message -> final text + executed actions
- ToolCallingLoop: bounded FSM over the model's tool calls
- SynchronousExecutor: scheduling / verify-client inside the loop, with timeout
- ResponseGuard: cleanup + scheduling hallucination guard
- DebounceTrigger: idempotent, coalesced scheduling of turns
"""

from src.errors import (
    OrchestrationError,
    ConfigurationError,
    EmptyResponseError,
    ResolutionError,
    SchedulingConflictError,
)
from .executors import SynchronousExecutor
from .tool_loop import (
    LoopConfig,
    LoopOutcome,
    LoopState,
    ToolCallingLoop,
    parse_tool_arguments,
)
from .response_guard import GuardResult, ResponseGuard, SAFE_SCHEDULING_MESSAGE, scheduling_created
from .engine import InboundMessage, OrchestrationEngine, TurnResult, within_hours
from .debounce import DebounceTrigger, InboundReceipt

__all__ = [
    "OrchestrationError", "ConfigurationError", "EmptyResponseError",
    "ResolutionError", "SchedulingConflictError",
    "SynchronousExecutor",
    "LoopConfig", "LoopOutcome", "LoopState", "ToolCallingLoop", "parse_tool_arguments",
    "GuardResult", "ResponseGuard", "SAFE_SCHEDULING_MESSAGE", "scheduling_created",
    "InboundMessage", "OrchestrationEngine", "TurnResult", "within_hours",
    "DebounceTrigger", "InboundReceipt",
]
