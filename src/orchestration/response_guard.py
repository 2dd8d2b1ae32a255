# src/orchestration/response_guard.py

"""
Post-processing of the model's final text.

1. Cleanup: strip leaked `@kind:...` commands, wrapping quotes, "I'm
   transferring you" remarks and system-style confirmations ("Campo X
   atualizado"). When nothing conversational is left, a neutral fallback
   is used.
2. Hallucination guard: text that claims a meeting was booked (or carries
   a meeting link) while no scheduling "create" succeeded this turn is
   replaced by a clarifying message. This is a substitution, not a retry.
"""

import re
from dataclasses import dataclass
from typing import Optional, Sequence

from src.actions import ActionKind, ExecutedAction, PayloadError, SchedulingOperation, payload_of
from src.logger import logger


SAFE_SCHEDULING_MESSAGE = (
    "Desculpe, houve um problema ao processar o agendamento. Poderia confirmar "
    "novamente o horário desejado para que eu possa criar a reunião?"
)

HALLUCINATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"reuni(ã|a)o.*agendad[ao]",
        r"agendad[ao].*sucesso",
        r"pronto.*agend(ei|ado|ada)",
        r"meet\.google\.com",
        r"link.*meet",
        r"meet.*link",
        r"confirmad[ao].*agenda",
        r"sua reuni(ã|a)o.*marcad[ao]",
        r"evento.*criad[ao]",
    )
]

_KIND_ALTERNATION = "|".join(re.escape(name) for name in ActionKind.all_names())
LEAKED_COMMAND = re.compile(
    rf"@({_KIND_ALTERNATION})(?![\w-])(?::[^\s@.,!?]+(?::[^\s@.,!?]+)?)?",
    re.IGNORECASE,
)
MENTION_BEFORE_NAME = re.compile(r"@([A-ZÀ-Ú][a-zà-ú]+)")

_EMOJI = r"(?:📝|📊|🏷️|✏️|💼|📅|🔍|⚙️|🔒|👤|🤖|↔️|🔔)"

TRANSFER_REMARKS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"(já )?estou (te )?transferindo[^.!?]*[.!?]",
        r"vou (te )?transferir[^.!?]*[.!?]",
        r"sua solicitação[^.!?]*transferida[^.!?]*[.!?]",
        r"transferindo (você|sua conversa|seu atendimento)[^.!?]*[.!?]",
    )
]

SYSTEM_CONFIRMATIONS = [
    re.compile(p, re.IGNORECASE | re.MULTILINE)
    for p in (
        rf"^{_EMOJI}\s*Campo\s*\"[^\"]+\"\s*(atualizado|registrado|salvo)\s*(para\s*)?\"[^\"]+\"\s*\.?\s*",
        rf"^{_EMOJI}\s*Campo\s+\S+\s*atualizado\s*(para\s*)?\S+\s*\.?\s*",
        r"^Ação\s*(será\s*)?(executada|registrada)\s*(automaticamente|internamente)?\.?\s*",
        r"^Informação\s*(salva|registrada|atualizada)\.?\s*",
        r"^(Registro|Dados?)\s*(salvos?|atualizados?|registrados?)\.?\s*",
        rf"^{_EMOJI}?\s*\w+\s+(registrado|salvo|atualizado|gravado|armazenado):\s*[^\n]+\s*",
        rf"^{_EMOJI}\s*[^.!?\n]+\s*(registrado|salvo|atualizado|gravado)[^.!?\n]*[.!?]?\s*",
        r"^(Entendido!?\s*)?Estou processando sua (solicitação|transferência)[^.\n]*\.?\s*$",
        r"^(Certo!?\s*)?(Entendido!?\s*)?Processando.*$",
    )
]

SYSTEM_ONLY = re.compile(rf"^{_EMOJI}")
SYSTEM_ONLY_MARKERS = ("atualizado para", "atualizado:", "registrado:", "salvo:", "Campo \"", "executada")

MIN_CLEAN_LENGTH = 10


@dataclass
class GuardResult:
    """
    Attributes:
        text: Text to deliver
        original: Model text before post-processing
        cleaned: Cleanup changed the text
        replaced: Text was substituted (fallback or scheduling guard)
        reason: "cleanup_fallback" | "scheduling_hallucination" | None
    """
    text: str
    original: str
    cleaned: bool = False
    replaced: bool = False
    reason: Optional[str] = None


def scheduling_created(executed: Sequence[ExecutedAction]) -> bool:
    """True when a scheduling "create" succeeded this turn (loop or dispatcher)."""
    for action in executed:
        if action.kind != ActionKind.SCHEDULING or not action.result.success:
            continue
        try:
            request = payload_of(action.token)
        except PayloadError:
            continue
        if request.operation == SchedulingOperation.CREATE:
            return True
    return False


class ResponseGuard:
    """
    Args:
        fallback_message: Used when cleanup leaves nothing conversational
        cleanup: Apply cleanup (flag response_cleanup)
        hallucination_guard: Apply the scheduling guard (flag hallucination_guard)
    """

    def __init__(
        self,
        fallback_message: Optional[str] = None,
        cleanup: bool = True,
        hallucination_guard: bool = True,
    ):
        if fallback_message is None:
            from src.settings import settings
            fallback_message = settings.get_nested(
                "orchestration.cleanup_fallback_message",
                "Perfeito! Posso ajudar com mais alguma coisa?",
            )
        self.fallback_message = fallback_message
        self.cleanup_enabled = cleanup
        self.guard_enabled = hallucination_guard

    def clean(self, text: str) -> str:
        """Remove leaked commands and system-style confirmations."""
        result = LEAKED_COMMAND.sub("", text or "")
        result = re.sub(r"[ \t]{2,}", " ", result).strip()

        result = re.sub(r'^[“"]', "", result)
        result = re.sub(r'[”"]$', "", result).strip()
        result = MENTION_BEFORE_NAME.sub(r"\1", result)

        for pattern in TRANSFER_REMARKS:
            result = pattern.sub("", result).strip()
        for pattern in SYSTEM_CONFIRMATIONS:
            result = pattern.sub("", result).strip()

        result = re.sub(r"[ \t]{2,}", " ", result)
        result = re.sub(r"\n{3,}", "\n\n", result)
        return result.strip()

    @staticmethod
    def is_system_only(text: str) -> bool:
        stripped = (text or "").strip()
        return bool(SYSTEM_ONLY.match(stripped)) and any(m in stripped for m in SYSTEM_ONLY_MARKERS)

    @staticmethod
    def claims_scheduling(text: str) -> bool:
        return any(pattern.search(text or "") for pattern in HALLUCINATION_PATTERNS)

    def apply(self, text: str, executed: Sequence[ExecutedAction] = ()) -> GuardResult:
        """
        Post-process the final text of a turn.

        Args:
            text: Model text
            executed: Actions executed this turn (loop + dispatcher)
        """
        result = GuardResult(text=text, original=text)

        if self.cleanup_enabled:
            cleaned = self.clean(text)
            result.cleaned = cleaned != text
            if self.is_system_only(text) or len(cleaned) < MIN_CLEAN_LENGTH:
                logger.warning("Reply looked like a system message, using fallback", original=text[:200])
                cleaned = self.fallback_message
                result.replaced = True
                result.reason = "cleanup_fallback"
            result.text = cleaned

        if self.guard_enabled and self.claims_scheduling(result.text) and not scheduling_created(executed):
            logger.warning("Scheduling claimed without a created event", original=result.text[:200])
            result.text = SAFE_SCHEDULING_MESSAGE
            result.replaced = True
            result.reason = "scheduling_hallucination"

        return result
