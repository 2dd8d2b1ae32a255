# src/orchestration/tool_loop.py

"""
Tool-calling loop - a bounded state machine over the model protocol.

States:
    CALL            send messages (+ tools) to the model
    EXECUTE_TOOLS   answer every tool call, then back to CALL
    FORCE_TEXT      tools-free call demanding the literal script text
    FINAL_FALLBACK  one last tools-free call with a stronger instruction
    DONE            substantive text found
    FAILED          no usable text after every fallback (EmptyResponseError)

The last allowed round is always a FORCE_TEXT round, so a model that keeps
calling tools cannot keep the loop alive. At most `max_rounds + 1` model
calls happen per turn.

Tool calls are answered as follows:
- scheduling / verify-client run synchronously and their result goes back
- every other kind is acknowledged; the dispatcher runs it after filtering
- unparsable arguments get {success: false, error}

Every proposed action of every round is kept, not just the last round's.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from src.actions import ActionKind, ActionToken, ProposedAction
from src.dispatch import DispatchContext
from src.errors import EmptyResponseError
from src.llm import ChatCompletion, ChatCompletionClient, TokenUsage
from src.logger import log_loop_round, logger
from src.prompting import TOOL_NAME, AssembledPrompt

from .executors import SynchronousExecutor


class LoopState(Enum):
    CALL = "call"
    EXECUTE_TOOLS = "execute_tools"
    FORCE_TEXT = "force_text"
    FINAL_FALLBACK = "final_fallback"
    DONE = "done"
    FAILED = "failed"


ACKNOWLEDGEMENT = {
    "success": True,
    "message": "Ação executada internamente.",
    "instruction": (
        "NÃO mencione esta ação ao cliente. Continue o roteiro: envie agora a próxima "
        "mensagem da etapa atual, usando o texto literal configurado."
    ),
}

FORCE_TEXT_INSTRUCTION = (
    "Agora responda ao cliente. NÃO chame ferramentas. Envie a mensagem da etapa atual "
    "do roteiro usando EXATAMENTE o texto literal configurado (substitua apenas os "
    "marcadores entre colchetes). Não use mensagens genéricas como \"Entendido!\" ou \"Processando\"."
)

FINAL_FALLBACK_INSTRUCTION = (
    "OBRIGATÓRIO: escreva AGORA a mensagem completa para o cliente, com pelo menos uma frase "
    "inteira, seguindo o roteiro da etapa atual. Respostas vazias ou genéricas são proibidas."
)


@dataclass
class LoopConfig:
    max_rounds: int = 4
    min_text_length: int = 15
    filler_pattern: str = r"^(Entendido!?|Certo!?|Ok!?|Processando|Aguarde)[\s.!]*$"

    @classmethod
    def from_settings(cls) -> "LoopConfig":
        from src.settings import settings

        section = settings.get_nested("orchestration", {}) or {}
        return cls(
            max_rounds=int(section.get("max_rounds", cls.max_rounds)),
            min_text_length=int(section.get("min_text_length", cls.min_text_length)),
            filler_pattern=section.get("filler_pattern", cls.filler_pattern),
        )


@dataclass
class LoopOutcome:
    """
    Result of one run of the loop.

    Attributes:
        text: Final candidate text (substantive)
        proposed: Every action proposed across all rounds, in order
        usage: Token usage summed over every model call
        calls: Number of model calls made
        states: State trace, for logs and tests
    """
    text: str
    proposed: List[ProposedAction] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    calls: int = 0
    states: List[LoopState] = field(default_factory=list)

    @property
    def forced_text(self) -> bool:
        return LoopState.FORCE_TEXT in self.states

    @property
    def used_final_fallback(self) -> bool:
        return LoopState.FINAL_FALLBACK in self.states


def parse_tool_arguments(raw: str) -> Tuple[Optional[ActionToken], Optional[str]]:
    """
    Arguments of an execute-action call -> ActionToken.

    Returns:
        (token, None) on success, (None, error message) otherwise
    """
    try:
        data = json.loads(raw or "{}")
    except ValueError as e:
        return None, f"Argumentos inválidos: {e}"
    if not isinstance(data, dict):
        return None, "Argumentos inválidos: objeto esperado"

    kind = ActionKind.from_name(str(data.get("kind") or ""))
    if kind is None:
        return None, f"Tipo de ação desconhecido: {data.get('kind')!r}"
    value = data.get("value")
    return ActionToken.from_combined(kind, "" if value is None else str(value)), None


class ToolCallingLoop:
    """
    Drives the model until it produces substantive text.

    Args:
        llm: Chat-completion client
        executor: Runs scheduling / verify-client inside the loop
        config: Round limit and text thresholds
    """

    def __init__(
        self,
        llm: ChatCompletionClient,
        executor: Optional[SynchronousExecutor] = None,
        config: Optional[LoopConfig] = None,
    ):
        self.llm = llm
        self.executor = executor
        self.config = config or LoopConfig.from_settings()
        self._filler = re.compile(self.config.filler_pattern, re.IGNORECASE)

    def is_substantive(self, text: Optional[str]) -> bool:
        """Longer than the minimum and not a generic filler phrase."""
        stripped = (text or "").strip()
        if len(stripped) <= self.config.min_text_length:
            return False
        return not self._filler.match(stripped)

    def run(
        self,
        prompt: AssembledPrompt,
        ctx: DispatchContext,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        api_key: Optional[str] = None,
    ) -> LoopOutcome:
        """
        Run the loop for one turn.

        Raises:
            EmptyResponseError: no substantive text after the final fallback
            LLMError: model transport failure (propagated)
        """
        messages: List[Dict[str, Any]] = [dict(m) for m in prompt.messages]
        outcome = LoopOutcome(text="")
        call_options = {"model": model, "max_tokens": max_tokens, "temperature": temperature, "api_key": api_key}

        round_number = 0
        state = LoopState.CALL
        completion: Optional[ChatCompletion] = None
        pending: List[Optional[ProposedAction]] = []

        while state not in (LoopState.DONE, LoopState.FAILED):
            outcome.states.append(state)

            if state == LoopState.CALL:
                round_number += 1
                tool_choice = prompt.tool_choice if round_number == 1 else "auto"
                completion = self._call(messages, outcome, prompt.tools, tool_choice, call_options)
                pending = self._record_proposals(completion, round_number, outcome)
                log_loop_round(round_number, state.value, [c.name for c in completion.tool_calls])

                if self.is_substantive(completion.content):
                    outcome.text = completion.content.strip()
                    state = LoopState.DONE
                elif completion.tool_calls:
                    state = LoopState.EXECUTE_TOOLS
                else:
                    state = LoopState.FORCE_TEXT

            elif state == LoopState.EXECUTE_TOOLS:
                messages.append(completion.assistant_message())
                messages.extend(self._tool_results(completion, pending, ctx))
                # The last allowed round never offers tools
                if round_number + 1 >= self.config.max_rounds:
                    state = LoopState.FORCE_TEXT
                else:
                    state = LoopState.CALL

            elif state == LoopState.FORCE_TEXT:
                round_number += 1
                messages.append({"role": "system", "content": FORCE_TEXT_INSTRUCTION})
                completion = self._call(messages, outcome, None, None, call_options)
                log_loop_round(round_number, state.value, [])
                if self.is_substantive(completion.content):
                    outcome.text = completion.content.strip()
                    state = LoopState.DONE
                else:
                    state = LoopState.FINAL_FALLBACK

            elif state == LoopState.FINAL_FALLBACK:
                messages.append({"role": "system", "content": FINAL_FALLBACK_INSTRUCTION})
                completion = self._call(messages, outcome, None, None, call_options)
                log_loop_round(round_number, state.value, [])
                if self.is_substantive(completion.content):
                    outcome.text = completion.content.strip()
                    state = LoopState.DONE
                else:
                    state = LoopState.FAILED

        outcome.states.append(state)
        if state == LoopState.FAILED:
            logger.error("Model produced no usable text", calls=outcome.calls)
            raise EmptyResponseError(outcome.calls, conversation_id=ctx.conversation_id)

        logger.info(
            "Tool loop finished",
            calls=outcome.calls,
            proposed=len(outcome.proposed),
            forced=outcome.forced_text,
        )
        return outcome

    # =========================================================================
    # Helpers
    # =========================================================================

    def _call(
        self,
        messages: List[Dict[str, Any]],
        outcome: LoopOutcome,
        tools: Optional[List[Dict[str, Any]]],
        tool_choice: Optional[str],
        options: Dict[str, Any],
    ) -> ChatCompletion:
        completion = self.llm.complete(messages, tools=tools, tool_choice=tool_choice, **options)
        outcome.calls += 1
        outcome.usage.add(completion.usage)
        return completion

    @staticmethod
    def _record_proposals(
        completion: ChatCompletion, round_number: int, outcome: LoopOutcome
    ) -> List[Optional[ProposedAction]]:
        """Append this round's proposals; returns them aligned with the tool calls."""
        aligned: List[Optional[ProposedAction]] = []
        for call in completion.tool_calls:
            token = parse_tool_arguments(call.arguments)[0] if call.name == TOOL_NAME else None
            if token is None:
                aligned.append(None)
                continue
            action = ProposedAction(token=token, round_number=round_number, call_id=call.id)
            outcome.proposed.append(action)
            aligned.append(action)
        return aligned

    def _tool_results(
        self,
        completion: ChatCompletion,
        pending: List[Optional[ProposedAction]],
        ctx: DispatchContext,
    ) -> List[Dict[str, Any]]:
        """One tool message per call, in call order."""
        results = []
        for call, action in zip(completion.tool_calls, pending):
            if call.name != TOOL_NAME:
                content: Dict[str, Any] = {"success": False, "error": f"Ferramenta desconhecida: {call.name}"}
            elif action is None:
                content = {"success": False, "error": parse_tool_arguments(call.arguments)[1]}
            elif self.executor is not None and self.executor.handles(action.kind):
                result = self.executor.execute(action.token, ctx)
                action.executed_in_loop = True
                action.loop_result = result
                content = result.to_tool_content()
            else:
                content = ACKNOWLEDGEMENT
            results.append({
                "role": "tool",
                "tool_call_id": call.id,
                "content": json.dumps(content, ensure_ascii=False),
            })
        return results
