# src/actions/parser.py

"""
Action DSL parser.

Extracts typed ActionTokens from operator-written script text.

Surface forms:
    @kind:target:"value with spaces"     (quoted)
    @kind:target:value-without-spaces    (unquoted)
    @kind:target
    @kind

Quoted matches are taken first; unquoted matches that start inside a quoted
span are ignored. Trailing sentence punctuation is stripped from unquoted
segments. Tokens carrying `{...}` placeholders are templates for the model,
not executable actions, and are left out of the result.
"""

import re
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Set, Tuple

from src.logger import logger

from .enums import ActionKind
from .models import ActionToken, ConfiguredActionSet, PLACEHOLDER_CHARS


_KIND_ALTERNATION = "|".join(re.escape(name) for name in ActionKind.all_names())

QUOTED_PATTERN = re.compile(
    rf'@({_KIND_ALTERNATION})(?![\w-]):([^\s@:]+):"([^"]+)"',
    re.IGNORECASE,
)
UNQUOTED_PATTERN = re.compile(
    rf'@({_KIND_ALTERNATION})(?![\w-])(?::([^\s@:]+)(?::([^\s@"]+))?)?',
    re.IGNORECASE,
)
KIND_MENTION_PATTERN = re.compile(rf'@({_KIND_ALTERNATION})(?![\w-])', re.IGNORECASE)
FIELD_MENTION_PATTERN = re.compile(r'@(?:set-field|campo):([A-Za-z0-9_-]+)', re.IGNORECASE)

TRAILING_PUNCTUATION = re.compile(r'[.,;!?]+$')

# A script mentioning either stage kind may use both
_STAGE_KINDS = frozenset({ActionKind.STAGE_MOVE, ActionKind.GOTO_STAGE})


@dataclass(frozen=True)
class ParsedSpan:
    """Token plus where it was found (for ordering and debugging)."""
    token: ActionToken
    start: int
    end: int
    text: str


def _strip_punctuation(segment: Optional[str]) -> Optional[str]:
    if segment is None:
        return None
    stripped = TRAILING_PUNCTUATION.sub("", segment)
    return stripped or None


def _has_placeholder(*segments: Optional[str]) -> bool:
    return any(seg and any(ch in seg for ch in PLACEHOLDER_CHARS) for seg in segments)


class ActionParser:
    """Tokenizer for the embedded action language."""

    def parse_spans(self, text: str) -> List[ParsedSpan]:
        """
        Parse text into located tokens, in order of appearance.

        Args:
            text: Script text (agent prompt, stage description)

        Returns:
            List of ParsedSpan sorted by start offset
        """
        if not text:
            return []

        spans: List[ParsedSpan] = []
        quoted_ranges: List[Tuple[int, int]] = []

        for match in QUOTED_PATTERN.finditer(text):
            quoted_ranges.append((match.start(), match.end()))
            kind = ActionKind.from_name(match.group(1))
            target = _strip_punctuation(match.group(2)) or ""
            value = match.group(3)
            if _has_placeholder(target, value):
                logger.debug("Skipping placeholder action (quoted)", token=match.group(0))
                continue
            spans.append(ParsedSpan(
                token=ActionToken(kind=kind, target=target, value=value),
                start=match.start(),
                end=match.end(),
                text=match.group(0),
            ))

        for match in UNQUOTED_PATTERN.finditer(text):
            if any(start <= match.start() < end for start, end in quoted_ranges):
                continue
            kind = ActionKind.from_name(match.group(1))
            target = _strip_punctuation(match.group(2))
            value = _strip_punctuation(match.group(3))
            if _has_placeholder(target, value):
                logger.debug("Skipping placeholder action", token=match.group(0))
                continue
            spans.append(ParsedSpan(
                token=ActionToken(kind=kind, target=target or "", value=value),
                start=match.start(),
                end=match.end(),
                text=match.group(0),
            ))

        spans.sort(key=lambda span: span.start)
        return spans

    def parse(self, text: str) -> List[ActionToken]:
        """Ordered list of executable ActionTokens found in text."""
        return [span.token for span in self.parse_spans(text)]

    def configured_actions(self, text: str) -> ConfiguredActionSet:
        """
        Allow-list of kinds and set-field ids the script text mentions.

        Placeholder tokens count: `@set-field:estado:{valor}` configures
        the `estado` field even though it is not executable itself.
        """
        if not text:
            return ConfiguredActionSet()

        kinds: Set[ActionKind] = set()
        for match in KIND_MENTION_PATTERN.finditer(text):
            kinds.add(ActionKind.from_name(match.group(1)))
        if kinds & _STAGE_KINDS:
            kinds |= _STAGE_KINDS

        fields: FrozenSet[str] = frozenset(
            match.group(1).lower() for match in FIELD_MENTION_PATTERN.finditer(text)
        )
        return ConfiguredActionSet(kinds=frozenset(kinds), fields=fields)


# Module-level default parser
parser = ActionParser()
