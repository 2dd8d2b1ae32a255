# src/actions/placeholders.py

"""
Placeholder detector.

Finds action templates such as `@set-field:estado:{valor-do-lead}` whose value
the model has to fill with what the user actually said, and turns each into
an instruction for the prompt. The output is advisory text only.
"""

import re
from dataclasses import dataclass
from typing import List

from .enums import ActionKind


_PLACEHOLDER_KINDS = (
    ActionKind.SET_FIELD,
    ActionKind.TAG,
    ActionKind.SET_NAME,
    ActionKind.STAGE_MOVE,
    ActionKind.CREATE_DEAL,
)
_NAMES = sorted(
    (name for kind in _PLACEHOLDER_KINDS for name in kind.names),
    key=len,
    reverse=True,
)
_ALTERNATION = "|".join(re.escape(name) for name in _NAMES)

INLINE_PATTERN = re.compile(
    rf'@({_ALTERNATION})(?![\w-]):([^:\s@"]+):"?(\{{[^}}]+\}})"?',
    re.IGNORECASE,
)
# Editor chips render as "[📝 campo: estado:{valor-do-lead}]"
BRACKETED_PATTERN = re.compile(
    rf'\[\s*[^\w\s\]]*\s*({_ALTERNATION}):?\s*([^:\s\]]+):?\s*(\{{[^}}]+\}})\s*\]',
    re.IGNORECASE,
)

EXAMPLE_VALUES = ("Bahia", "São Paulo")


@dataclass(frozen=True)
class PlaceholderInstruction:
    kind: ActionKind
    target: str
    marker: str
    text: str

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.target.lower()}:{self.marker}"


class PlaceholderDetector:
    """Turns placeholder templates in script text into model instructions."""

    def detect(self, text: str) -> List[PlaceholderInstruction]:
        """
        Args:
            text: Agent prompt + active stage description

        Returns:
            One instruction per distinct (kind, target, marker), in order found
        """
        if not text:
            return []

        found: List[PlaceholderInstruction] = []
        seen = set()

        for pattern, example in ((INLINE_PATTERN, EXAMPLE_VALUES[0]), (BRACKETED_PATTERN, EXAMPLE_VALUES[1])):
            for match in pattern.finditer(text):
                kind = ActionKind.from_name(match.group(1))
                target, marker = match.group(2), match.group(3)
                instruction = PlaceholderInstruction(
                    kind=kind,
                    target=target,
                    marker=marker,
                    text=self._instruction(kind, target, marker, example),
                )
                if instruction.key in seen:
                    continue
                seen.add(instruction.key)
                found.append(instruction)
        return found

    @staticmethod
    def _instruction(kind: ActionKind, target: str, marker: str, example: str) -> str:
        return (
            f'- Quando a instrução mencionar "@{kind.value}:{target}:{marker}", você DEVE substituir '
            f'"{marker}" pelo valor REAL que o lead informou. '
            f'Exemplo: se o lead disse "{example}", use a ferramenta execute-action com '
            f'kind="{kind.value}" e value="{target}:{example}". '
            f'NUNCA use o texto literal "{marker}" como valor!'
        )


detector = PlaceholderDetector()
