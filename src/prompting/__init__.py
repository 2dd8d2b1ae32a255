# src/prompting/__init__.py

"""
Prompt assembly for a conversation turn.

Key Components:
- ScriptContextAssembler: system prompt (script, CRM context, rules) + bounded history
- AssembledPrompt: messages, tool schema, tool_choice and the turn's allow-list
- GreetingDetector / detect_scheduling_confirmation / detect_followup_context
- build_tool_schema: the single execute-action function
"""

from .detectors import (
    GreetingDetector,
    detect_followup_context,
    detect_scheduling_confirmation,
)
from .assembler import (
    TOOL_NAME,
    AssembledPrompt,
    MediaContext,
    ScriptContextAssembler,
    build_tool_schema,
    day_period,
)

__all__ = [
    "GreetingDetector", "detect_followup_context", "detect_scheduling_confirmation",
    "TOOL_NAME", "AssembledPrompt", "MediaContext", "ScriptContextAssembler",
    "build_tool_schema", "day_period",
]
