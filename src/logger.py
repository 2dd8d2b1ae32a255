"""
Structured logging for the action orchestration engine.

Readable lines by default, one JSON object per line with LOG_FORMAT=json.
Lines emitted inside a turn carry that turn's conversation_id.

Usage:
    from src.logger import logger

    with logger.conversation("conv_123"):
        logger.info("Inbound message received", kind="text")
        logger.metric("loop_rounds", 2, final_state="done")
"""

import json
import logging
import os
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from src.settings import settings


_current_conversation: ContextVar[Optional[str]] = ContextVar("log_conversation_id", default=None)

READABLE_FORMAT = "[%(asctime)s] %(levelname)s - %(message)s"


def _json_enabled() -> bool:
    return os.environ.get("LOG_FORMAT", "readable").lower() == "json"


class StructuredLogger:
    """
    Thin wrapper over a stdlib logger.

    Keyword arguments on every call become structured fields: JSON keys
    in json mode, a trailing ``[k=v, ...]`` block otherwise.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        if not self.logger.handlers:
            self._attach_handler()

    def _attach_handler(self) -> None:
        level = getattr(logging, str(settings.get_nested("logging.level", "INFO")).upper(), logging.INFO)
        handler = logging.StreamHandler()
        if _json_enabled():
            handler.setFormatter(logging.Formatter("%(message)s"))
        else:
            handler.setFormatter(logging.Formatter(READABLE_FORMAT, datefmt="%H:%M:%S"))
        handler.setLevel(level)
        self.logger.setLevel(level)
        self.logger.addHandler(handler)
        self.logger.propagate = False

    # -------------------------------------------------------------------------
    # Conversation scope
    # -------------------------------------------------------------------------

    @property
    def conversation_id(self) -> Optional[str]:
        return _current_conversation.get()

    @contextmanager
    def conversation(self, conversation_id: str) -> Iterator[None]:
        """Tag every line in the block with conversation_id; restores the outer one on exit"""
        token = _current_conversation.set(conversation_id)
        try:
            yield
        finally:
            _current_conversation.reset(token)

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    def _render(self, level: str, message: str, fields: Dict[str, Any]) -> str:
        if _json_enabled():
            entry: Dict[str, Any] = {
                "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                "level": level,
                "logger": self.name,
                "msg": message,
            }
            if self.conversation_id:
                entry["conversation_id"] = self.conversation_id
            entry.update(fields)
            return json.dumps(entry, ensure_ascii=False, default=str)

        line = message
        if fields:
            line += " [" + ", ".join(f"{k}={v}" for k, v in fields.items()) + "]"
        if self.conversation_id:
            line = f"[{self.conversation_id}] {line}"
        return line

    def _emit(self, level: str, method: Callable[[str], None], message: str, fields: Dict[str, Any]) -> None:
        method(self._render(level, message, fields))

    def debug(self, message: str, /, **fields: Any) -> None:
        self._emit("DEBUG", self.logger.debug, message, fields)

    def info(self, message: str, /, **fields: Any) -> None:
        self._emit("INFO", self.logger.info, message, fields)

    def warning(self, message: str, /, **fields: Any) -> None:
        self._emit("WARNING", self.logger.warning, message, fields)

    def error(self, message: str, /, **fields: Any) -> None:
        self._emit("ERROR", self.logger.error, message, fields)

    def exception(self, message: str, /, **fields: Any) -> None:
        """Error line plus the active traceback"""
        if _json_enabled():
            fields["traceback"] = traceback.format_exc()
            self._emit("ERROR", self.logger.error, message, fields)
        else:
            self._emit("ERROR", self.logger.exception, message, fields)

    def metric(self, name: str, value: Any, **dimensions: Any) -> None:
        """
        Numeric measurement for analytics.

        Example:
            logger.metric("tokens_used", 312, model="gpt-4o-mini")
        """
        self._emit("METRIC", self.logger.info, name, {"value": value, **dimensions})

    def event(self, event_type: str, **fields: Any) -> None:
        """Business event (action dispatched, agent handoff, ...)"""
        self._emit("EVENT", self.logger.info, event_type, fields)


logger = StructuredLogger("crm_action_engine")


# =============================================================================
# Action pipeline logging helpers
# =============================================================================

def log_action_dropped(kind: str, value: Optional[str], reason: str) -> None:
    """
    Log an action removed by the filter.

    Args:
        kind: Canonical action kind
        value: Raw action value
        reason: Machine-readable reason ("not_configured", "cap", ...)
    """
    logger.info("Action dropped", kind=kind, value=value, reason=reason)


def log_action_dispatched(kind: str, value: Optional[str], success: bool, message: str = "") -> None:
    logger.event("action_dispatched", kind=kind, value=value, success=success, result=message)


def log_loop_round(round_number: int, state: str, tool_calls: List[str]) -> None:
    logger.debug("Tool loop round", round=round_number, state=state, tool_calls=tool_calls)
