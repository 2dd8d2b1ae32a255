# src/actions/__init__.py

"""
Action language for operator scripts and model tool calls.

Key Components:
- ActionKind: canonical kinds (+ Portuguese operator aliases)
- ActionToken: immutable parsed instruction; payload_of() gives its typed shape
- ActionParser: `@kind:target:value` tokenizer, configured_actions() allow-list
- PlaceholderDetector: instructions for `{...}` templates
- NameResolver: normalize + exact -> substring -> fuzzy matching
- filter_actions: pure contextual filter / deduplicator / structural cap
"""

from .enums import (
    ActionKind,
    TransferMode,
    SchedulingOperation,
    STRUCTURAL_KINDS,
    CAPTURE_KINDS,
    SYNCHRONOUS_KINDS,
    ALWAYS_ALLOWED_KINDS,
)
from .models import (
    ActionToken,
    ConfiguredActionSet,
    ProposedAction,
    DispatchResult,
    ExecutedAction,
    PayloadError,
    payload_of,
    normalize_field_id,
)
from .parser import ActionParser, parser
from .placeholders import PlaceholderDetector, PlaceholderInstruction, detector
from .resolvers import NameResolver, MatchStrategy, Resolution, normalize_name, fold_name
from .action_filter import (
    FilterConfig,
    FilterResult,
    DroppedAction,
    filter_actions,
    infer_expected_field,
    last_agent_question,
)

__all__ = [
    "ActionKind", "TransferMode", "SchedulingOperation",
    "STRUCTURAL_KINDS", "CAPTURE_KINDS", "SYNCHRONOUS_KINDS", "ALWAYS_ALLOWED_KINDS",
    "ActionToken", "ConfiguredActionSet", "ProposedAction", "DispatchResult",
    "ExecutedAction", "PayloadError", "payload_of", "normalize_field_id",
    "ActionParser", "parser",
    "PlaceholderDetector", "PlaceholderInstruction", "detector",
    "NameResolver", "MatchStrategy", "Resolution", "normalize_name", "fold_name",
    "FilterConfig", "FilterResult", "DroppedAction",
    "filter_actions", "infer_expected_field", "last_agent_question",
]
