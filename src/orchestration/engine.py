# src/orchestration/engine.py

"""
OrchestrationEngine - one conversation turn, end to end.

    inbound -> agent selection -> business hours -> prompt assembly
            -> tool-calling loop -> filter -> dispatch -> response guard
            -> token usage -> outbound message

Only configuration and empty-response errors (and model transport
failures) escape a turn; per-action failures stay inside the dispatcher.
"""

import os
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.actions import ExecutedAction, FilterConfig, filter_actions, infer_expected_field, last_agent_question
from src.dispatch import ActionDispatcher, DispatchContext
from src.dispatch.scheduling import SchedulingService
from src.errors import ConfigurationError
from src.feature_flags import flags
from src.llm import ChatCompletionClient, TokenUsage, estimate_cost
from src.logger import log_action_dropped, logger
from src.prompting import MediaContext, ScriptContextAssembler
from src.settings import settings
from src.store import CRMStore

from .executors import SynchronousExecutor
from .response_guard import ResponseGuard
from .tool_loop import LoopConfig, ToolCallingLoop


# Weekday (0=Monday) -> ("HH:MM", "HH:MM"), used when an agent has no hours rows
DEFAULT_BUSINESS_HOURS = {day: ("08:00", "18:00") for day in range(5)}

# Nested handoff turns never hand off again
_handoff_depth: ContextVar[int] = ContextVar("handoff_depth", default=0)


@dataclass
class InboundMessage:
    """
    One inbound turn as normalized by the webhook.

    Attributes:
        text: Message text ("" for pure media)
        message_kind: "text" | "audio" | "image" | "document" | ...
        media_text: Transcript / description / extracted text of media
        is_agent_handoff: Turn started by a transfer to another AI agent
        suppress_history: Do not load the transcript into the prompt
        message_id: Provider message id, when known
    """
    conversation_id: str
    account_id: str
    contact_id: str
    text: str = ""
    message_kind: str = "text"
    media_text: Optional[str] = None
    is_agent_handoff: bool = False
    suppress_history: bool = False
    message_id: Optional[str] = None

    @property
    def effective_text(self) -> str:
        return (self.text or "").strip() or (self.media_text or "").strip()


@dataclass
class TurnResult:
    """
    Outbound boundary of a turn.

    Attributes:
        final_text: Text to send (None when nothing should be sent)
        executed_action_count: Actions executed this turn (loop + dispatcher)
        already_persisted: final_text is already in the transcript
        handoff_reply: Reply of the agent the conversation was handed to
    """
    final_text: Optional[str]
    executed_action_count: int = 0
    already_persisted: bool = False
    handoff_reply: Optional[str] = None
    executed_actions: List[ExecutedAction] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    out_of_hours: bool = False
    guard_reason: Optional[str] = None

    @property
    def should_respond(self) -> bool:
        return bool(self.final_text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "final_text": self.final_text,
            "executed_action_count": self.executed_action_count,
            "already_persisted": self.already_persisted,
            "handoff_reply": self.handoff_reply,
        }


def within_hours(now: datetime, hours: List[Dict[str, Any]]) -> bool:
    """True when `now` (local time) falls inside one of the weekly rows."""
    if hours:
        table: Dict[int, List[tuple]] = {}
        for row in hours:
            table.setdefault(int(row["weekday"]), []).append((row["start_time"], row["end_time"]))
    else:
        table = {day: [span] for day, span in DEFAULT_BUSINESS_HOURS.items()}

    current = now.strftime("%H:%M")
    return any(start <= current <= end for start, end in table.get(now.weekday(), []))


class OrchestrationEngine:
    """
    Runs conversation turns.

    Args:
        store: CRM datastore
        llm: Chat-completion client
        dispatcher: Action dispatcher (built with handoff re-entry by default)
        assembler: Prompt assembler
        guard: Response guard; built per turn from the flags when omitted
        loop_config: Tool loop limits
        scheduling: Scheduling service for the default dispatcher
    """

    def __init__(
        self,
        store: CRMStore,
        llm: Optional[ChatCompletionClient] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        assembler: Optional[ScriptContextAssembler] = None,
        guard: Optional[ResponseGuard] = None,
        loop_config: Optional[LoopConfig] = None,
        scheduling: Optional[SchedulingService] = None,
    ):
        self.store = store
        self.llm = llm or ChatCompletionClient()
        self.dispatcher = dispatcher or ActionDispatcher(store, scheduling=scheduling, reentry=self._reentry)
        self.assembler = assembler or ScriptContextAssembler(store)
        self.guard = guard
        self.loop = ToolCallingLoop(self.llm, SynchronousExecutor(self.dispatcher), loop_config)

    # =========================================================================
    # Entry point
    # =========================================================================

    def run_turn(self, inbound: InboundMessage) -> TurnResult:
        """
        Process one inbound message.

        Raises:
            ConfigurationError: conversation/agent/credential missing
            EmptyResponseError: no usable text after every fallback
            LLMError: model unavailable
        """
        with logger.conversation(inbound.conversation_id):
            return self._run(inbound)

    def _run(self, inbound: InboundMessage) -> TurnResult:
        conversation = self.store.get_conversation(inbound.conversation_id)
        if conversation is None:
            raise ConfigurationError("Conversa não encontrada", conversation_id=inbound.conversation_id)

        agent = self.select_agent(conversation)
        api_key = self.credential(inbound.account_id)
        logger.info(
            "Turn started",
            agent=agent["name"],
            kind=inbound.message_kind,
            handoff=inbound.is_agent_handoff,
        )

        if not inbound.is_agent_handoff and not self.is_open(agent):
            return self._out_of_hours(inbound, agent)

        media = MediaContext.from_inbound(inbound.message_kind, inbound.media_text)
        load_history = not (inbound.is_agent_handoff or inbound.suppress_history)
        prompt = self.assembler.build(conversation, agent, inbound.effective_text, media, load_history)

        ctx = DispatchContext(
            account_id=inbound.account_id,
            conversation_id=inbound.conversation_id,
            contact_id=inbound.contact_id,
            agent_id=agent["id"],
        )
        model = agent.get("model") or settings.llm.model
        outcome = self.loop.run(
            prompt,
            ctx,
            model=model,
            max_tokens=agent.get("max_tokens"),
            temperature=agent.get("temperature"),
            api_key=api_key,
        )

        filter_config = FilterConfig.from_settings(apply_cap=flags.action_cap)
        expected_field = None
        if flags.expected_field_inference:
            expected_field = infer_expected_field(
                last_agent_question(prompt.history), prompt.configured.fields, filter_config,
            )

        filtered = filter_actions(
            outcome.proposed, prompt.configured, inbound.effective_text, expected_field, filter_config,
        )
        for dropped in filtered.dropped:
            log_action_dropped(dropped.action.kind.value, dropped.action.token.combined_value, dropped.reason)
        if filtered.capped:
            self.store.log_activity(inbound.account_id, inbound.conversation_id, "actions_capped", {
                "dropped": [
                    {"action_kind": d.kind.value, "action_value": d.token.combined_value}
                    for d in filtered.dropped_by("cap")
                ],
            })

        executed = self.dispatcher.dispatch_all(filtered.kept, ctx)
        handoff_reply = next(
            (a.result.payload.get("handoff_reply") for a in executed
             if a.result.success and a.result.payload.get("handoff_reply")),
            None,
        )

        guarded = self._guard().apply(outcome.text, executed)
        self._record_usage(inbound, model, outcome.usage)

        result = TurnResult(
            final_text=guarded.text,
            executed_action_count=len(executed),
            handoff_reply=handoff_reply,
            executed_actions=executed,
            usage=outcome.usage,
            guard_reason=guarded.reason,
        )
        # A handoff reply is stored by the dispatcher that asked for it
        if not inbound.is_agent_handoff:
            self.store.add_message(
                inbound.conversation_id, "out", guarded.text,
                metadata={"sent_by_ai": True, "agent_id": agent["id"]},
            )
            result.already_persisted = True

        logger.metric(
            "turn_completed",
            len(executed),
            calls=outcome.calls,
            dropped=len(filtered.dropped),
            guard=guarded.reason,
        )
        return result

    # =========================================================================
    # Turn setup
    # =========================================================================

    def select_agent(self, conversation: Dict[str, Any]) -> Dict[str, Any]:
        """Conversation's agent -> account primary -> any active agent."""
        agent = self.store.get_agent(conversation.get("agent_id"))
        if agent is not None and agent.get("active"):
            return agent

        agent = self.store.find_primary_agent(conversation["account_id"])
        if agent is None:
            agents = self.store.list_agents(conversation["account_id"])
            agent = agents[0] if agents else None
        if agent is None:
            raise ConfigurationError("Nenhum agente IA ativo configurado", conversation_id=conversation["id"])

        if not conversation.get("agent_id"):
            self.store.update_conversation(conversation["id"], agent_id=agent["id"])
        return agent

    def credential(self, account_id: str) -> str:
        """Account credential -> configured key -> OPENAI_API_KEY."""
        account = self.store.get_account(account_id) or {}
        api_key = account.get("model_api_key") or self.llm.api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("Chave da API do modelo não configurada para esta conta")
        return api_key

    def is_open(self, agent: Dict[str, Any]) -> bool:
        if not flags.business_hours or agent.get("hours_mode") != "business":
            return True
        return within_hours(self.assembler.now(), self.store.list_agent_hours(agent["id"]))

    def _out_of_hours(self, inbound: InboundMessage, agent: Dict[str, Any]) -> TurnResult:
        message = agent.get("out_of_hours_message")
        logger.info("Inbound outside business hours", has_message=bool(message))
        if not message:
            return TurnResult(final_text=None, out_of_hours=True)
        self.store.add_message(
            inbound.conversation_id, "out", message,
            metadata={"sent_by_ai": True, "out_of_hours": True},
        )
        return TurnResult(final_text=message, already_persisted=True, out_of_hours=True)

    def _guard(self) -> ResponseGuard:
        if self.guard is not None:
            return self.guard
        return ResponseGuard(cleanup=flags.response_cleanup, hallucination_guard=flags.hallucination_guard)

    def _record_usage(self, inbound: InboundMessage, model: str, usage: TokenUsage) -> None:
        if not flags.token_usage_tracking or usage.total_tokens <= 0:
            return
        cost = estimate_cost(model, usage)
        self.store.add_token_usage(
            inbound.account_id, inbound.conversation_id, model,
            usage.prompt_tokens, usage.completion_tokens, usage.total_tokens, cost,
        )
        logger.metric("tokens_used", usage.total_tokens, model=model, estimated_cost=cost)

    # =========================================================================
    # Agent handoff
    # =========================================================================

    def _reentry(self, ctx: DispatchContext, text: str) -> Optional[str]:
        """Turn for the agent a conversation was just handed to."""
        if _handoff_depth.get() > 0:
            logger.warning("Nested handoff ignored", agent=ctx.agent_id)
            return None
        token = _handoff_depth.set(_handoff_depth.get() + 1)
        try:
            result = self.run_turn(InboundMessage(
                conversation_id=ctx.conversation_id,
                account_id=ctx.account_id,
                contact_id=ctx.contact_id,
                text=text,
                is_agent_handoff=True,
            ))
        finally:
            _handoff_depth.reset(token)
        return result.final_text
