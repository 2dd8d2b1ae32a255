"""
Error taxonomy of an orchestration turn.

- ConfigurationError: no agent / no model credential. Fatal for the turn.
- EmptyResponseError: the model produced no usable text after every fallback. Fatal.
- ResolutionError: a name in one action could not be mapped to a record.
  Caught per action by the dispatcher.
- SchedulingConflictError: the requested slot is taken. Caught per action;
  its message is safe to show the user.
"""

from typing import Optional


class OrchestrationError(Exception):
    """Base class; `code` is the machine-readable identifier used by the API."""

    code = "ORCHESTRATION"

    def __init__(self, message: str, conversation_id: Optional[str] = None):
        self.message = message
        self.conversation_id = conversation_id
        super().__init__(message)


class ConfigurationError(OrchestrationError):
    """Raised when the turn cannot run with the current account setup."""

    code = "CONFIG"


class EmptyResponseError(OrchestrationError):
    """Raised when the loop ends without substantive text."""

    code = "EMPTY_RESPONSE"

    def __init__(self, rounds: int, conversation_id: Optional[str] = None):
        self.rounds = rounds
        super().__init__(
            f"Model returned no usable text after {rounds} call(s)",
            conversation_id=conversation_id,
        )


class ResolutionError(OrchestrationError):
    """Raised when a stage/tag/field/agent name matches nothing."""

    code = "RESOLUTION"

    def __init__(self, entity: str, name: str, hint: str = ""):
        self.entity = entity
        self.name = name
        message = f"{entity} '{name}' não encontrado"
        if hint:
            message += f" ({hint})"
        super().__init__(message)


class SchedulingConflictError(OrchestrationError):
    """Raised when a slot overlaps an existing booking or calendar event."""

    code = "CONFLICT"
