# src/prompting/detectors.py

"""
Conversational detectors used while assembling a turn.

- GreetingDetector: is the inbound message just a greeting? The word list
  is injected (settings.orchestration.greetings by default) so accounts and
  tests can supply their own.
- detect_scheduling_confirmation: the user picked a time after the agent
  listed availability, so the model must call the tool.
- detect_followup_context: recent history is about calling the lead back,
  which is a follow-up reminder and not a meeting.
"""

import re
from typing import Iterable, List, Optional, Sequence


# =============================================================================
# Greetings
# =============================================================================

class GreetingDetector:
    """
    Prefix match against a configurable greeting list.

    Args:
        greetings: Lower-case greeting words/phrases
    """

    def __init__(self, greetings: Optional[Iterable[str]] = None):
        if greetings is None:
            from src.settings import settings
            greetings = settings.get_nested("orchestration.greetings", []) or []
        self.greetings: List[str] = [g.strip().lower() for g in greetings if g and g.strip()]

    def is_greeting(self, text: Optional[str]) -> bool:
        normalized = (text or "").strip().lower()
        if not normalized:
            return False
        return any(normalized.startswith(greeting) for greeting in self.greetings)


# =============================================================================
# Scheduling confirmation
# =============================================================================

CONFIRMATION_PATTERNS = [
    re.compile(
        r"^(pode ser|confirmo|fechado|ok|beleza|perfeito|bora|vamos|combinado|certo|tá bom|ta bom|tudo bem|sim|s)\b",
        re.IGNORECASE,
    ),
    re.compile(r"às?\s*\d{1,2}h?", re.IGNORECASE),
    re.compile(r"\d{1,2}[:h]\d{0,2}", re.IGNORECASE),
    re.compile(r"(segunda|terça|terca|quarta|quinta|sexta|sábado|sabado|domingo).*\d", re.IGNORECASE),
    re.compile(r"esse (horário|horario|dia)", re.IGNORECASE),
    re.compile(r"pode agendar", re.IGNORECASE),
    re.compile(r"por favor.*agend", re.IGNORECASE),
    re.compile(r"^s$", re.IGNORECASE),
]

AVAILABILITY_MARKERS = ("📅 consulta de disponibilidade", "horários livres", "horarios livres")


def _mentions_availability(text: str) -> bool:
    lowered = text.lower()
    if any(marker in lowered for marker in AVAILABILITY_MARKERS):
        return True
    return "disponibilidade" in lowered and ("horário" in lowered or "horario" in lowered)


def detect_scheduling_confirmation(message: Optional[str], history: Sequence[str]) -> bool:
    """
    True when the message confirms one of the slots offered earlier.

    Args:
        message: Current inbound text
        history: Recent transcript texts (system audit messages included),
            oldest first
    """
    text = (message or "").strip().lower()
    if not text:
        return False
    if not any(_mentions_availability(entry or "") for entry in history):
        return False
    return any(pattern.search(text) for pattern in CONFIRMATION_PATTERNS)


# =============================================================================
# Follow-up context
# =============================================================================

FOLLOWUP_PATTERNS = [
    re.compile(r"quando (posso|devo|prefere que eu) retom(ar|o|e)", re.IGNORECASE),
    re.compile(r"qual (o )?hor[áa]rio.*retom", re.IGNORECASE),
    re.compile(r"me avise o melhor hor[áa]rio", re.IGNORECASE),
    re.compile(r"quando prefere que eu (retorne|retome|fale|entre em contato)", re.IGNORECASE),
    re.compile(r"podemos nos falar", re.IGNORECASE),
    re.compile(r"me liga depois", re.IGNORECASE),
    re.compile(r"fala comigo (depois|amanh[ãa]|mais tarde)", re.IGNORECASE),
    re.compile(r"retorna (depois|amanh[ãa]|mais tarde)", re.IGNORECASE),
    re.compile(r"qual (melhor )?hor[áa]rio para (te |eu )?ligar", re.IGNORECASE),
    re.compile(r"quando.*melhor para (falar|conversar|retornar)", re.IGNORECASE),
    re.compile(r"posso te ligar", re.IGNORECASE),
    re.compile(r"entro em contato", re.IGNORECASE),
    re.compile(r"te retorno", re.IGNORECASE),
    re.compile(r"vou te contactar", re.IGNORECASE),
]

FOLLOWUP_WINDOW = 4


def detect_followup_context(history: Sequence[str], window: int = FOLLOWUP_WINDOW) -> bool:
    """True when one of the last `window` messages talks about calling back."""
    recent = list(history)[-window:] if window else list(history)
    return any(
        pattern.search(entry or "")
        for entry in recent
        for pattern in FOLLOWUP_PATTERNS
    )
