# src/actions/resolvers.py

"""
Name-to-identifier resolution.

Stage names, pipeline names, tag names, agent names and custom-field names
typed by operators (or by the model) are matched against datastore records
with one strategy: normalize, then exact -> substring -> fuzzy.

Usage:
    resolver = NameResolver()
    match = resolver.resolve("proposta-enviada", stages, key=lambda s: s["name"])
    if match:
        stage_id = match.item["id"]
"""

import difflib
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

T = TypeVar("T")

_TRAILING_PUNCT = re.compile(r"[.,;!?]+$")
_SEPARATORS = re.compile(r"[-_\s]+")
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text or "")
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_name(text: str) -> str:
    """Lower-case, hyphens/underscores to spaces, no trailing punctuation."""
    text = _TRAILING_PUNCT.sub("", (text or "").strip().lower())
    text = text.replace("-", " ").replace("_", " ")
    return re.sub(r"\s+", " ", text).strip()


def fold_name(text: str) -> str:
    """Aggressive form: no accents, no separators (`Data-Nascimento` -> `datanascimento`)."""
    return _SEPARATORS.sub("", strip_accents(normalize_name(text)))


def looks_like_id(text: str) -> bool:
    return bool(_UUID.match((text or "").strip()))


class MatchStrategy(Enum):
    ID = "id"
    EXACT = "exact"
    SUBSTRING = "substring"
    FUZZY = "fuzzy"


@dataclass(frozen=True)
class Resolution(Generic[T]):
    item: T
    strategy: MatchStrategy
    score: float = 1.0


class NameResolver:
    """
    Resolve a free-text name to one record.

    Args:
        allow_substring: Accept containment in either direction
        allow_fuzzy: Accept a difflib similarity match
        fuzzy_cutoff: Minimum SequenceMatcher ratio for the fuzzy tier
        folded: Compare accent/separator-folded names (custom fields)
    """

    def __init__(
        self,
        allow_substring: bool = True,
        allow_fuzzy: bool = True,
        fuzzy_cutoff: float = 0.85,
        folded: bool = False,
    ):
        self.allow_substring = allow_substring
        self.allow_fuzzy = allow_fuzzy
        self.fuzzy_cutoff = fuzzy_cutoff
        self.folded = folded

    def _norm(self, text: str) -> str:
        return fold_name(text) if self.folded else normalize_name(text)

    def resolve(
        self,
        query: str,
        candidates: Iterable[T],
        key: Callable[[T], str],
        id_key: Optional[Callable[[T], str]] = None,
    ) -> Optional[Resolution[T]]:
        """
        Args:
            query: Name as typed
            candidates: Records to search
            key: Record -> display name
            id_key: Record -> identifier; an exact id match wins outright

        Returns:
            Resolution or None
        """
        items: List[T] = list(candidates)
        if not items or not (query or "").strip():
            return None

        if id_key is not None:
            raw = query.strip()
            for item in items:
                if str(id_key(item)) == raw:
                    return Resolution(item, MatchStrategy.ID)

        wanted = self._norm(query)
        if not wanted:
            return None
        names = [(item, self._norm(key(item))) for item in items]

        for item, name in names:
            if name == wanted:
                return Resolution(item, MatchStrategy.EXACT)

        if self.allow_substring:
            for item, name in names:
                if name and (wanted in name or name in wanted):
                    return Resolution(item, MatchStrategy.SUBSTRING, 0.9)

        if self.allow_fuzzy:
            best: Optional[Resolution[T]] = None
            for item, name in names:
                ratio = difflib.SequenceMatcher(None, wanted, name).ratio()
                if ratio >= self.fuzzy_cutoff and (best is None or ratio > best.score):
                    best = Resolution(item, MatchStrategy.FUZZY, ratio)
            return best

        return None


# Pre-configured resolvers
stage_resolver = NameResolver()
tag_resolver = NameResolver(allow_substring=False, allow_fuzzy=False)
agent_resolver = NameResolver()
field_resolver = NameResolver(folded=True)
