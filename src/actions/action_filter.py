# src/actions/action_filter.py

"""
Contextual action filter and deduplicator.

Pure transformation from the actions the model proposed during a turn to
the actions that will actually be dispatched:

1. set-field values that are still placeholders (or empty) take the
   user's message text
2. kinds the active script never mentions are dropped (except the
   always-allowed ones)
3. set-field must name a configured field, and the inferred expected
   field when there is one
4. (caller) expected field inferred from the agent's last question
5. duplicate structural actions are removed, first one wins
6. structural cap: capture actions (up to a limit) plus one structural
   action chosen by priority

No I/O happens here; the caller logs and audits the dropped set.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .enums import (
    ALWAYS_ALLOWED_KINDS,
    CAPTURE_KINDS,
    STRUCTURAL_KINDS,
    SYNCHRONOUS_KINDS,
    ActionKind,
)
from .models import ConfiguredActionSet, ProposedAction, PLACEHOLDER_CHARS
from .resolvers import fold_name, strip_accents


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class FilterConfig:
    """
    Tunable limits and scores.

    The thresholds were tuned empirically on real conversations and are
    kept as configuration rather than derived rules.
    """
    capture_limit: int = 5
    structural_limit: int = 1
    executable_threshold: int = 3
    field_score_threshold: int = 30
    exact_phrase_score: int = 100
    word_score: int = 30
    whole_word_bonus: int = 20
    min_word_length: int = 3
    stopwords: FrozenSet[str] = frozenset()
    structural_priority: Tuple[ActionKind, ...] = (
        ActionKind.CREATE_DEAL,
        ActionKind.GOTO_STAGE,
        ActionKind.STAGE_MOVE,
        ActionKind.FOLLOW_UP,
        ActionKind.SCHEDULING,
        ActionKind.TRANSFER,
        ActionKind.END_CONVERSATION,
        ActionKind.TAG,
    )
    apply_cap: bool = True

    @classmethod
    def from_settings(cls, section: Optional[Dict] = None, apply_cap: bool = True) -> "FilterConfig":
        """Build from the `action_filter` settings section."""
        if section is None:
            from src.settings import settings
            section = settings.get_nested("action_filter", {}) or {}
        priority = tuple(
            kind for kind in (ActionKind.from_name(n) for n in section.get("structural_priority", []))
            if kind is not None
        )
        return cls(
            capture_limit=int(section.get("capture_limit", cls.capture_limit)),
            structural_limit=int(section.get("structural_limit", cls.structural_limit)),
            executable_threshold=int(section.get("executable_threshold", cls.executable_threshold)),
            field_score_threshold=int(section.get("field_score_threshold", cls.field_score_threshold)),
            exact_phrase_score=int(section.get("exact_phrase_score", cls.exact_phrase_score)),
            word_score=int(section.get("word_score", cls.word_score)),
            whole_word_bonus=int(section.get("whole_word_bonus", cls.whole_word_bonus)),
            min_word_length=int(section.get("min_word_length", cls.min_word_length)),
            stopwords=frozenset(w.lower() for w in section.get("stopwords", [])),
            structural_priority=priority or cls.structural_priority,
            apply_cap=apply_cap,
        )


@dataclass
class DroppedAction:
    action: ProposedAction
    reason: str


@dataclass
class FilterResult:
    kept: List[ProposedAction] = field(default_factory=list)
    dropped: List[DroppedAction] = field(default_factory=list)
    capped: bool = False

    def dropped_by(self, reason: str) -> List[ProposedAction]:
        return [d.action for d in self.dropped if d.reason == reason]


# =============================================================================
# Expected-field inference
# =============================================================================

_PUNCTUATION = re.compile(r"[^\w\s]")


def normalize_question(text: str) -> str:
    """Lower-case, accent-free, punctuation-free question text."""
    text = strip_accents((text or "").lower())
    text = _PUNCTUATION.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()


def score_field(field_id: str, question: str, config: FilterConfig) -> int:
    """
    Score how strongly a normalized question asks for a field.

    Args:
        field_id: Configured field id (`data-de-nascimento`)
        question: Output of normalize_question()
    """
    words = [w for w in re.split(r"[-_\s]+", strip_accents(field_id.lower())) if w]
    if not words:
        return 0

    score = 0
    phrase = " ".join(words)
    if re.search(rf"\b{re.escape(phrase)}\b", question):
        score += config.exact_phrase_score

    stopwords = {strip_accents(w) for w in config.stopwords}
    for word in words:
        if len(word) < config.min_word_length or word in stopwords:
            continue
        if word in question:
            score += config.word_score
            if re.search(rf"\b{re.escape(word)}\b", question):
                score += config.whole_word_bonus
    return score


def infer_expected_field(
    agent_question: Optional[str],
    fields: Iterable[str],
    config: Optional[FilterConfig] = None,
) -> Optional[str]:
    """
    The single configured field the agent's last question asked for.

    Returns:
        Field id with the highest score at or above the threshold, else None
    """
    config = config or FilterConfig()
    question = normalize_question(agent_question or "")
    if not question:
        return None

    best_field, best_score = None, 0
    for field_id in sorted(fields):
        score = score_field(field_id, question, config)
        if score > best_score:
            best_field, best_score = field_id, score
    if best_score >= config.field_score_threshold:
        return best_field
    return None


def last_agent_question(history: Sequence[Tuple[str, str]]) -> Optional[str]:
    """
    Last outbound text that precedes the user's last inbound turn.

    Args:
        history: (role, content) pairs oldest first, role "user"/"assistant"
    """
    last_user = None
    for index in range(len(history) - 1, -1, -1):
        if history[index][0] == "user":
            last_user = index
            break
    if last_user is None:
        return None
    for index in range(last_user - 1, -1, -1):
        if history[index][0] == "assistant":
            return history[index][1]
    return None


# =============================================================================
# Filter
# =============================================================================

def _is_placeholder_value(value: Optional[str]) -> bool:
    if value is None or not value.strip():
        return True
    return any(ch in value for ch in PLACEHOLDER_CHARS)


def _field_matches(field_a: str, field_b: str) -> bool:
    return fold_name(field_a) == fold_name(field_b)


def filter_actions(
    proposed: Sequence[ProposedAction],
    allowed: ConfiguredActionSet,
    inbound_text: str,
    expected_field: Optional[str] = None,
    config: Optional[FilterConfig] = None,
) -> FilterResult:
    """
    Deterministically reduce proposed actions to the executable set.

    Args:
        proposed: Every action proposed across all loop rounds, in order
        allowed: Kinds/fields the active script mentions
        inbound_text: The user's current message
        expected_field: Field inferred from the agent's last question
        config: Limits and priorities

    Returns:
        FilterResult with kept actions (encounter order) and dropped ones
    """
    config = config or FilterConfig()
    result = FilterResult()
    survivors: List[ProposedAction] = []

    for action in proposed:
        token = action.token

        # 1. placeholder values take the user's literal message
        if token.kind == ActionKind.SET_FIELD and _is_placeholder_value(token.value):
            action = ProposedAction(
                token=token.with_value(inbound_text.strip()),
                round_number=action.round_number,
                call_id=action.call_id,
                executed_in_loop=action.executed_in_loop,
                loop_result=action.loop_result,
            )
            token = action.token

        # 2. allow-list
        if token.kind not in ALWAYS_ALLOWED_KINDS and not allowed.mentions(token.kind):
            result.dropped.append(DroppedAction(action, "not_configured"))
            continue

        # 3. set-field scoping
        if token.kind == ActionKind.SET_FIELD:
            if not any(_field_matches(token.target, f) for f in allowed.fields):
                result.dropped.append(DroppedAction(action, "field_not_configured"))
                continue
            if expected_field and not _field_matches(token.target, expected_field):
                result.dropped.append(DroppedAction(action, "field_not_expected"))
                continue

        survivors.append(action)

    # 5. structural dedup
    seen = set()
    deduped: List[ProposedAction] = []
    for action in survivors:
        if action.kind in STRUCTURAL_KINDS:
            key = (action.kind, action.token.combined_value.strip().lower())
            if key in seen:
                result.dropped.append(DroppedAction(action, "duplicate"))
                continue
            seen.add(key)
        deduped.append(action)

    # 6. structural cap
    structural = [a for a in deduped if a.kind in STRUCTURAL_KINDS]
    executable = [a for a in deduped if not a.executed_in_loop]
    over_cap = len(structural) > config.structural_limit or len(executable) > config.executable_threshold

    if not (config.apply_cap and over_cap):
        result.kept = deduped
        return result

    result.capped = True
    rank = {kind: i for i, kind in enumerate(config.structural_priority)}
    chosen_structural = sorted(
        structural,
        key=lambda a: (rank.get(a.kind, len(rank)), deduped.index(a)),
    )[:config.structural_limit]
    chosen_ids = {id(a) for a in chosen_structural}

    captures = 0
    for action in deduped:
        if action.executed_in_loop or action.kind in SYNCHRONOUS_KINDS:
            result.kept.append(action)
        elif action.kind in CAPTURE_KINDS and captures < config.capture_limit:
            captures += 1
            result.kept.append(action)
        elif id(action) in chosen_ids:
            result.kept.append(action)
        else:
            result.dropped.append(DroppedAction(action, "cap"))
    return result
