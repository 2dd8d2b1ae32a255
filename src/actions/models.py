# src/actions/models.py

"""
Data models for the action language.

- ActionToken: one parsed `@kind:target:value` instruction (immutable)
- Typed payloads: the per-kind shape of an ActionToken (see payload_of)
- ConfiguredActionSet: the allow-list derived from the active script text
- ProposedAction: a token the model asked for during the tool-calling loop
- DispatchResult / ExecutedAction: outcome of running a proposed action
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Union

from .enums import ActionKind, SchedulingOperation, TransferMode


PLACEHOLDER_CHARS = ("{", "}")


# =============================================================================
# ActionToken
# =============================================================================

@dataclass(frozen=True)
class ActionToken:
    """
    A single action instruction.

    Attributes:
        kind: Canonical action kind
        target: First segment after the kind (field name, stage, tag, sub-command)
        value: Optional second segment (everything after the second ':')
    """
    kind: ActionKind
    target: str = ""
    value: Optional[str] = None

    @property
    def combined_value(self) -> str:
        """`target:value` as the model and the dispatcher see it."""
        if self.value is None:
            return self.target
        return f"{self.target}:{self.value}"

    @property
    def has_placeholder(self) -> bool:
        text = self.combined_value
        return any(ch in text for ch in PLACEHOLDER_CHARS)

    @classmethod
    def from_combined(cls, kind: ActionKind, combined: Optional[str]) -> "ActionToken":
        """Split a tool-call value at the first ':' into target and value."""
        combined = (combined or "").strip()
        if ":" not in combined:
            return cls(kind=kind, target=combined)
        target, value = combined.split(":", 1)
        return cls(kind=kind, target=target.strip(), value=value)

    def with_value(self, value: str) -> "ActionToken":
        return ActionToken(kind=self.kind, target=self.target, value=value)

    def __str__(self) -> str:
        combined = self.combined_value
        return f"@{self.kind.value}:{combined}" if combined else f"@{self.kind.value}"


# =============================================================================
# Typed payloads
# =============================================================================

@dataclass(frozen=True)
class StageTarget:
    """stage-move: stage id or name, optionally scoped as `pipeline/stage`."""
    stage: str
    pipeline: Optional[str] = None


@dataclass(frozen=True)
class DealTarget:
    """create-deal: `pipeline/stage[:amount]`."""
    stage: str
    pipeline: Optional[str] = None
    amount: Optional[float] = None


@dataclass(frozen=True)
class GotoStage:
    """goto-stage: script stage number or name."""
    stage: str


@dataclass(frozen=True)
class TagName:
    name: str


@dataclass(frozen=True)
class Transfer:
    mode: TransferMode
    agent: Optional[str] = None


@dataclass(frozen=True)
class Notify:
    message: str = ""


@dataclass(frozen=True)
class EndConversation:
    pass


@dataclass(frozen=True)
class SetName:
    name: str


@dataclass(frozen=True)
class FieldAssignment:
    field: str
    value: str


@dataclass(frozen=True)
class FieldLookup:
    field: str


@dataclass(frozen=True)
class SchedulingRequest:
    """scheduling: `check` (or consultar) / `create:<details>` (or criar:)."""
    operation: SchedulingOperation
    details: str = ""


@dataclass(frozen=True)
class FollowUpRequest:
    """follow-up: raw date/time expression plus optional reason."""
    expression: str


@dataclass(frozen=True)
class VerifyClient:
    pass


ActionPayload = Union[
    StageTarget, DealTarget, GotoStage, TagName, Transfer, Notify,
    EndConversation, SetName, FieldAssignment, FieldLookup,
    SchedulingRequest, FollowUpRequest, VerifyClient,
]


class PayloadError(ValueError):
    """Token value does not fit the payload shape of its kind."""


_HUMAN_TARGETS = {"humano", "usuario", "human", "user"}
_PRIMARY_TARGETS = {"ia", "ai", "primary", "principal"}
_AGENT_TARGETS = {"agente", "agent"}
_CHECK_OPS = {"check", "consultar"}
_CREATE_OPS = {"create", "criar"}


def _split_pipeline(target: str):
    if "/" in target:
        pipeline, stage = target.split("/", 1)
        return pipeline.strip() or None, stage.strip()
    return None, target.strip()


def _parse_amount(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    cleaned = re.sub(r"[^\d,.\-]", "", raw)
    if "," in cleaned and "." in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def payload_of(token: ActionToken) -> ActionPayload:
    """
    Typed payload for a token.

    Raises:
        PayloadError: when the token's target/value do not fit its kind
    """
    kind = token.kind
    target = token.target.strip()

    if kind == ActionKind.STAGE_MOVE:
        if not target:
            raise PayloadError("stage-move requires a stage")
        pipeline, stage = _split_pipeline(token.combined_value.strip())
        return StageTarget(stage=stage, pipeline=pipeline)

    if kind == ActionKind.CREATE_DEAL:
        if not target:
            raise PayloadError("create-deal requires pipeline/stage")
        pipeline, stage = _split_pipeline(target)
        return DealTarget(stage=stage, pipeline=pipeline, amount=_parse_amount(token.value))

    if kind == ActionKind.GOTO_STAGE:
        if not target:
            raise PayloadError("goto-stage requires a stage")
        return GotoStage(stage=target)

    if kind == ActionKind.TAG:
        name = token.combined_value.strip()
        if not name:
            raise PayloadError("tag requires a name")
        return TagName(name=name)

    if kind == ActionKind.TRANSFER:
        mode_name = target.lower()
        if mode_name in _HUMAN_TARGETS:
            return Transfer(mode=TransferMode.HUMAN)
        if mode_name in _PRIMARY_TARGETS:
            return Transfer(mode=TransferMode.PRIMARY)
        if mode_name in _AGENT_TARGETS and token.value and token.value.strip():
            return Transfer(mode=TransferMode.AGENT, agent=token.value.strip())
        raise PayloadError(f"unknown transfer target '{token.combined_value}'")

    if kind == ActionKind.NOTIFY:
        return Notify(message=token.combined_value.strip())

    if kind == ActionKind.END_CONVERSATION:
        return EndConversation()

    if kind == ActionKind.SET_NAME:
        name = token.combined_value.strip()
        if not name:
            raise PayloadError("set-name requires a name")
        return SetName(name=name)

    if kind == ActionKind.SET_FIELD:
        if not target:
            raise PayloadError("set-field requires a field")
        return FieldAssignment(field=target, value=(token.value or "").strip())

    if kind == ActionKind.GET_FIELD:
        if not target:
            raise PayloadError("get-field requires a field")
        return FieldLookup(field=target)

    if kind == ActionKind.SCHEDULING:
        op = target.lower()
        if op in _CHECK_OPS or not op:
            return SchedulingRequest(operation=SchedulingOperation.CHECK)
        if op in _CREATE_OPS:
            return SchedulingRequest(operation=SchedulingOperation.CREATE, details=token.value or "")
        raise PayloadError(f"unknown scheduling operation '{target}'")

    if kind == ActionKind.FOLLOW_UP:
        expression = token.combined_value.strip()
        if not expression:
            raise PayloadError("follow-up requires a date or time")
        return FollowUpRequest(expression=expression)

    if kind == ActionKind.VERIFY_CLIENT:
        return VerifyClient()

    raise PayloadError(f"unsupported kind {kind}")


# =============================================================================
# ConfiguredActionSet
# =============================================================================

@dataclass(frozen=True)
class ConfiguredActionSet:
    """
    Kinds and set-field identifiers the active script text mentions.

    Recomputed per turn from agent prompt + active stage description.
    """
    kinds: FrozenSet[ActionKind] = frozenset()
    fields: FrozenSet[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.kinds

    def mentions(self, kind: ActionKind) -> bool:
        return kind in self.kinds

    def allows_field(self, field_name: str) -> bool:
        return normalize_field_id(field_name) in self.fields


def normalize_field_id(name: str) -> str:
    """`Data de Nascimento` -> `data-de-nascimento` (script chip form)."""
    return re.sub(r"\s+", "-", (name or "").strip().lower())


# =============================================================================
# Turn-level action records
# =============================================================================

@dataclass
class ProposedAction:
    """
    A token requested by the model through the execute-action tool.

    Attributes:
        token: The requested action (value may still be a placeholder)
        round_number: Loop round that produced it (1-based)
        call_id: Tool call id
        executed_in_loop: True when resolved synchronously inside the loop
        loop_result: Result of that synchronous execution
    """
    token: ActionToken
    round_number: int = 1
    call_id: str = ""
    executed_in_loop: bool = False
    loop_result: Optional["DispatchResult"] = None

    @property
    def kind(self) -> ActionKind:
        return self.token.kind


@dataclass
class DispatchResult:
    success: bool
    message: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_tool_content(self) -> Dict[str, Any]:
        data = {"success": self.success, "message": self.message}
        data.update(self.payload)
        return data


@dataclass
class ExecutedAction:
    """A proposed action that passed the filter, with its dispatch outcome."""
    action: ProposedAction
    result: DispatchResult

    @property
    def kind(self) -> ActionKind:
        return self.action.kind

    @property
    def token(self) -> ActionToken:
        return self.action.token
