# src/actions/enums.py

"""
Enums for the action language.

- ActionKind: every kind an operator can embed in a script (`@kind:...`)
  and the model can request through the execute-action tool
- TransferMode / SchedulingOperation: sub-targets with their own handling
- Kind families used by the filter (structural, capture, always allowed)
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class ActionKind(str, Enum):
    """
    Canonical action kinds.

    Each kind also accepts the Portuguese operator vocabulary that scripts
    are written in (`@etapa`, `@campo`, ...), see ALIASES.
    """
    STAGE_MOVE = "stage-move"
    TAG = "tag"
    TRANSFER = "transfer"
    NOTIFY = "notify"
    END_CONVERSATION = "end-conversation"
    SET_NAME = "set-name"
    CREATE_DEAL = "create-deal"
    SCHEDULING = "scheduling"
    SET_FIELD = "set-field"
    GET_FIELD = "get-field"
    FOLLOW_UP = "follow-up"
    VERIFY_CLIENT = "verify-client"
    GOTO_STAGE = "goto-stage"

    @property
    def aliases(self) -> Tuple[str, ...]:
        return ALIASES.get(self, ())

    @property
    def names(self) -> Tuple[str, ...]:
        """Canonical name first, then aliases."""
        return (self.value,) + self.aliases

    @classmethod
    def from_name(cls, name: Optional[str]) -> Optional["ActionKind"]:
        """Look up a kind by canonical name or alias (case-insensitive)."""
        if not name:
            return None
        return _BY_NAME.get(name.strip().lower())

    @classmethod
    def all_names(cls) -> Tuple[str, ...]:
        """Every accepted spelling, longest first (safe for regex alternation)."""
        return tuple(sorted(_BY_NAME, key=len, reverse=True))


ALIASES: Dict[ActionKind, Tuple[str, ...]] = {
    ActionKind.STAGE_MOVE: ("etapa",),
    ActionKind.TAG: (),
    ActionKind.TRANSFER: ("transferir",),
    ActionKind.NOTIFY: ("notificar",),
    ActionKind.END_CONVERSATION: ("finalizar",),
    ActionKind.SET_NAME: ("nome",),
    ActionKind.CREATE_DEAL: ("negociacao",),
    ActionKind.SCHEDULING: ("agenda",),
    ActionKind.SET_FIELD: ("campo",),
    ActionKind.GET_FIELD: ("obter",),
    ActionKind.FOLLOW_UP: ("followup",),
    ActionKind.VERIFY_CLIENT: ("verificar_cliente",),
    ActionKind.GOTO_STAGE: ("ir_etapa",),
}

_BY_NAME: Dict[str, ActionKind] = {}
for _kind in ActionKind:
    for _name in _kind.names:
        _BY_NAME[_name] = _kind


class TransferMode(Enum):
    HUMAN = "human"
    PRIMARY = "primary"
    AGENT = "agent"


class SchedulingOperation(Enum):
    CHECK = "check"
    CREATE = "create"


# =============================================================================
# Kind families
# =============================================================================

# Control-flow actions; at most one per turn survives the cap
STRUCTURAL_KINDS: FrozenSet[ActionKind] = frozenset({
    ActionKind.STAGE_MOVE,
    ActionKind.GOTO_STAGE,
    ActionKind.FOLLOW_UP,
    ActionKind.TRANSFER,
    ActionKind.END_CONVERSATION,
    ActionKind.TAG,
    ActionKind.CREATE_DEAL,
    ActionKind.NOTIFY,
})

# Data the user just supplied; exempt from the structural cap
CAPTURE_KINDS: FrozenSet[ActionKind] = frozenset({
    ActionKind.SET_FIELD,
    ActionKind.SET_NAME,
})

# Resolved inside the tool-calling loop, never re-dispatched afterwards
SYNCHRONOUS_KINDS: FrozenSet[ActionKind] = frozenset({
    ActionKind.SCHEDULING,
    ActionKind.VERIFY_CLIENT,
})

# Permitted even when the script does not mention them
ALWAYS_ALLOWED_KINDS: FrozenSet[ActionKind] = SYNCHRONOUS_KINDS | {ActionKind.SET_NAME}
