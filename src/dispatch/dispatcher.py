# src/dispatch/dispatcher.py

"""
ActionDispatcher - executes filtered actions against the CRM.

One handler per ActionKind, registered in a table. Each handler gets the
typed payload of the token (see payload_of) and returns a DispatchResult.
Failures stay local to the action:

- PayloadError / ResolutionError -> failed result + activity_log note
- SchedulingConflictError        -> failed result carrying the safe message
- sqlite3.Error                  -> logged, failed result

Every successful dispatch appends a `system` audit message to the transcript.
"""

import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from src.actions import (
    ActionKind,
    ActionToken,
    DispatchResult,
    ExecutedAction,
    PayloadError,
    ProposedAction,
    TransferMode,
    payload_of,
)
from src.actions.models import (
    DealTarget,
    EndConversation,
    FieldAssignment,
    FieldLookup,
    FollowUpRequest,
    GotoStage,
    Notify,
    SchedulingRequest,
    SetName,
    StageTarget,
    TagName,
    Transfer,
    VerifyClient,
)
from src.actions.enums import SchedulingOperation
from src.actions.resolvers import (
    NameResolver,
    agent_resolver,
    field_resolver,
    looks_like_id,
    stage_resolver,
    tag_resolver,
)
from src.errors import OrchestrationError, ResolutionError, SchedulingConflictError
from src.feature_flags import flags
from src.llm import LLMError
from src.logger import log_action_dispatched, logger
from src.settings import settings
from src.store import CRMStore

from .audit import audit_metadata, audit_text
from .followup import FollowUpParseError, local_timezone, parse_followup
from .scheduling import SchedulingService


pipeline_resolver = NameResolver(allow_fuzzy=False)

CLOSED_MEMORY_OFFSET_SECONDS = 5


@dataclass(frozen=True)
class DispatchContext:
    """Who the action applies to."""
    account_id: str
    conversation_id: str
    contact_id: str
    agent_id: Optional[str] = None


# (conversation context, inbound text) -> reply text of the new agent, or None
ReentryCallback = Callable[[DispatchContext, str], Optional[str]]

Handler = Callable[[object, ActionToken, DispatchContext], DispatchResult]


class ActionDispatcher:
    """
    Executes actions one at a time.

    Args:
        store: CRM datastore
        scheduling: Scheduling service (built over the same store by default)
        reentry: Runs a full turn for the agent a conversation was handed to
    """

    def __init__(
        self,
        store: CRMStore,
        scheduling: Optional[SchedulingService] = None,
        reentry: Optional[ReentryCallback] = None,
    ):
        self.store = store
        self.scheduling = scheduling or SchedulingService(store)
        self.reentry = reentry
        self._handlers: Dict[ActionKind, Handler] = {
            ActionKind.STAGE_MOVE: self._stage_move,
            ActionKind.GOTO_STAGE: self._goto_stage,
            ActionKind.CREATE_DEAL: self._create_deal,
            ActionKind.TAG: self._tag,
            ActionKind.TRANSFER: self._transfer,
            ActionKind.NOTIFY: self._notify,
            ActionKind.END_CONVERSATION: self._end_conversation,
            ActionKind.SET_NAME: self._set_name,
            ActionKind.SET_FIELD: self._set_field,
            ActionKind.GET_FIELD: self._get_field,
            ActionKind.SCHEDULING: self._scheduling,
            ActionKind.FOLLOW_UP: self._follow_up,
            ActionKind.VERIFY_CLIENT: self._verify_client,
        }

    def register(self, kind: ActionKind, handler: Handler) -> None:
        """Replace the handler of a kind."""
        self._handlers[kind] = handler

    # =========================================================================
    # Entry points
    # =========================================================================

    def dispatch(self, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        """Run one action and audit it."""
        handler = self._handlers.get(token.kind)
        if handler is None:
            result = DispatchResult(False, "Tipo de ação não reconhecido")
        else:
            try:
                result = handler(payload_of(token), token, ctx)
            except (PayloadError, ResolutionError) as exc:
                result = DispatchResult(False, str(exc))
                self.store.log_activity(ctx.account_id, ctx.conversation_id, "action_failed", {
                    "action_kind": token.kind.value,
                    "action_value": token.combined_value,
                    "reason": str(exc),
                })
            except SchedulingConflictError as exc:
                result = DispatchResult(False, exc.message, {"conflict": True})
            except sqlite3.Error as exc:
                logger.exception("Dispatch failed", kind=token.kind.value, value=token.combined_value)
                result = DispatchResult(False, f"Erro ao executar ação: {exc}")

        log_action_dispatched(token.kind.value, token.combined_value, result.success, result.message)
        if result.success:
            self.store.add_message(
                ctx.conversation_id, "system", audit_text(token, result),
                kind="system", metadata=audit_metadata(token),
            )
        return result

    def dispatch_all(self, actions: Sequence[ProposedAction], ctx: DispatchContext) -> List[ExecutedAction]:
        """
        Dispatch filtered actions in order.

        Actions already resolved inside the tool loop keep their loop result
        and are not executed twice.
        """
        executed = []
        for action in actions:
            if action.executed_in_loop and action.loop_result is not None:
                executed.append(ExecutedAction(action, action.loop_result))
                continue
            executed.append(ExecutedAction(action, self.dispatch(action.token, ctx)))
        return executed

    # =========================================================================
    # Resolution helpers
    # =========================================================================

    def _resolve_pipeline_stage(self, account_id: str, stage: str, pipeline: Optional[str]) -> dict:
        stages = self.store.list_pipeline_stages(account_id)
        if looks_like_id(stage):
            for row in stages:
                if row["id"] == stage.strip():
                    return row

        candidates = stages
        if pipeline:
            pipelines = self.store.list_pipelines(account_id)
            match = pipeline_resolver.resolve(pipeline, pipelines, key=lambda p: p["name"])
            if match:
                candidates = [s for s in stages if s["pipeline_id"] == match.item["id"]]
            else:
                logger.info("Pipeline not found, searching every pipeline", pipeline=pipeline)

        match = stage_resolver.resolve(stage, candidates, key=lambda s: s["name"], id_key=lambda s: s["id"])
        if match is None:
            raise ResolutionError("Etapa", stage, "não encontrada no CRM")
        return match.item

    def _contact_name(self, contact_id: str, default: str = "Lead") -> str:
        contact = self.store.get_contact(contact_id) or {}
        return contact.get("name") or default

    # =========================================================================
    # Handlers
    # =========================================================================

    def _stage_move(self, payload: StageTarget, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        stage = self._resolve_pipeline_stage(ctx.account_id, payload.stage, payload.pipeline)
        open_deals = self.store.list_open_deals(ctx.contact_id)
        info = {"stage_id": stage["id"], "stage_name": stage["name"]}

        if open_deals:
            self.store.update_deal(open_deals[0]["id"], stage_id=stage["id"])
            return DispatchResult(True, "Lead movido para nova etapa do CRM", info)

        title = f"Negociação - {self._contact_name(ctx.contact_id, 'Novo Lead')}"
        deal_id = self.store.create_deal(ctx.account_id, ctx.contact_id, stage["id"], title)
        return DispatchResult(True, "Nova negociação criada no CRM", {**info, "deal_id": deal_id})

    def _goto_stage(self, payload: GotoStage, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        stages = self.store.list_agent_stages(ctx.agent_id) if ctx.agent_id else []
        target = payload.stage.strip()
        chosen = None
        if target.isdigit():
            chosen = next((s for s in stages if int(s["number"]) == int(target)), None)
        if chosen is None:
            match = stage_resolver.resolve(target, stages, key=lambda s: s["name"], id_key=lambda s: s["id"])
            chosen = match.item if match else None
        if chosen is None:
            raise ResolutionError("Etapa do roteiro", target)

        self.store.update_conversation(ctx.conversation_id, active_stage_id=chosen["id"])
        return DispatchResult(
            True,
            f"Conversa avançou para a etapa {chosen['number']}: {chosen['name']}",
            {"stage_id": chosen["id"], "stage_name": chosen["name"], "stage_number": chosen["number"]},
        )

    def _create_deal(self, payload: DealTarget, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        account = self.store.get_account(ctx.account_id) or {}
        open_deals = self.store.list_open_deals(ctx.contact_id)
        if not bool(account.get("allow_multiple_deals", 1)) and open_deals:
            return DispatchResult(
                False, f'Este lead já possui uma negociação aberta: "{open_deals[0]["title"]}"'
            )

        stage = self._resolve_pipeline_stage(ctx.account_id, payload.stage, payload.pipeline)
        if any(d["stage_id"] == stage["id"] for d in open_deals):
            return DispatchResult(True, "Já existe uma negociação aberta para este contato neste estágio", {
                "stage_name": stage["name"],
            })

        name = self._contact_name(ctx.contact_id)
        title = f"Negociação - {name}"
        deal_id = self.store.create_deal(
            ctx.account_id, ctx.contact_id, stage["id"], title,
            amount=payload.amount or 0.0, probability=50,
        )
        return DispatchResult(True, f"Nova negociação criada: {name}", {
            "deal_id": deal_id, "title": title, "stage_name": stage["name"],
        })

    def _tag(self, payload: TagName, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        tags = self.store.list_tags(ctx.account_id)
        match = tag_resolver.resolve(payload.name, tags, key=lambda t: t["name"])
        if match is None:
            raise ResolutionError("Tag", payload.name, "crie a tag primeiro nas configurações do CRM")

        name = match.item["name"]
        contact = self.store.get_contact(ctx.contact_id) or {}
        current = list(contact.get("tags") or [])
        if any(t.lower() == name.lower() for t in current):
            return DispatchResult(True, "Tag já existe no contato", {"tag": name})

        self.store.update_contact(ctx.contact_id, tags=current + [name])
        return DispatchResult(True, f'Tag "{name}" adicionada ao contato', {"tag": name})

    def _transfer(self, payload: Transfer, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        if payload.mode == TransferMode.HUMAN:
            self.store.update_conversation(ctx.conversation_id, agent_active=0, agent_id=None)
            self.store.add_transfer(ctx.conversation_id, "human", ctx.agent_id, None)
            return DispatchResult(True, "Conversa transferida para atendente humano", {"mode": "human"})

        if payload.mode == TransferMode.PRIMARY:
            primary = self.store.find_primary_agent(ctx.account_id)
            primary_id = primary["id"] if primary else None
            self.store.update_conversation(ctx.conversation_id, agent_active=1, agent_id=primary_id)
            self.store.add_transfer(ctx.conversation_id, "primary", ctx.agent_id, primary_id)
            return DispatchResult(True, "Conversa retornada para agente IA principal", {"mode": "primary"})

        agents = self.store.list_agents(ctx.account_id)
        match = agent_resolver.resolve(payload.agent, agents, key=lambda a: a["name"], id_key=lambda a: a["id"])
        if match is None:
            raise ResolutionError("Agente", payload.agent)

        agent = match.item
        self.store.update_conversation(ctx.conversation_id, agent_active=1, agent_id=agent["id"])
        self.store.add_transfer(ctx.conversation_id, "agent", ctx.agent_id, agent["id"])
        info = {"mode": "agent", "agent_id": agent["id"], "agent_name": agent["name"]}

        reply = self._handoff_reply(DispatchContext(
            account_id=ctx.account_id,
            conversation_id=ctx.conversation_id,
            contact_id=ctx.contact_id,
            agent_id=agent["id"],
        ))
        if reply:
            info["handoff_reply"] = reply
        return DispatchResult(True, f"Conversa transferida para agente IA: {agent['name']}", info)

    def _handoff_reply(self, ctx: DispatchContext) -> Optional[str]:
        """Let the new agent answer right away; the reply is stored as outbound."""
        if self.reentry is None or not flags.agent_handoff_reentry:
            return None
        last = self.store.last_inbound_message(ctx.conversation_id)
        text = (last or {}).get("content") or settings.orchestration.handoff_fallback_message
        try:
            reply = self.reentry(ctx, text)
        except (OrchestrationError, LLMError) as exc:
            logger.error("Handoff reply failed", agent=ctx.agent_id, error=str(exc))
            return None
        if reply:
            self.store.add_message(ctx.conversation_id, "out", reply, metadata={"sent_by_ai": True})
        return reply

    def _notify(self, payload: Notify, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        message = payload.message or "Nova ação do agente IA"
        logger.info("Operator notification", message=message)
        self.store.log_activity(ctx.account_id, ctx.conversation_id, "notify", {"message": message})
        return DispatchResult(True, "Notificação enviada")

    def _end_conversation(self, payload: EndConversation, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        self.store.update_conversation(
            ctx.conversation_id,
            status="closed",
            agent_active=0,
            active_stage_id=None,
            memory_cleared_at=time.time() + CLOSED_MEMORY_OFFSET_SECONDS,
        )
        return DispatchResult(True, "Conversa encerrada e memória limpa")

    def _set_name(self, payload: SetName, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        self.store.update_contact(ctx.contact_id, name=payload.name)
        return DispatchResult(True, f'Nome do contato alterado para "{payload.name}"')

    def _find_field(self, account_id: str, name: str) -> dict:
        fields = self.store.list_custom_fields(account_id)
        match = field_resolver.resolve(name, fields, key=lambda f: f["name"], id_key=lambda f: f["id"])
        if match is None:
            raise ResolutionError("Campo", name.replace("-", " "), "crie o campo primeiro em Campos Personalizados")
        return match.item

    def _set_field(self, payload: FieldAssignment, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        if token.value is None:
            return DispatchResult(False, "Formato inválido. Use: nome-do-campo:valor")
        field = self._find_field(ctx.account_id, payload.field)
        self.store.upsert_field_value(ctx.contact_id, field["id"], payload.value)
        if "email" in field["name"].lower() and "@" in payload.value:
            self.store.update_contact(ctx.contact_id, email=payload.value)
        return DispatchResult(
            True,
            f'Campo "{field["name"]}" atualizado para "{payload.value}"',
            {"field_name": field["name"], "value": payload.value},
        )

    def _get_field(self, payload: FieldLookup, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        field = self._find_field(ctx.account_id, payload.field)
        value = self.store.get_field_value(ctx.contact_id, field["id"]) or "não informado"
        return DispatchResult(
            True,
            f'Valor do campo "{field["name"]}": {value}',
            {"field_name": field["name"], "value": value},
        )

    def _scheduling(self, payload: SchedulingRequest, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        if payload.operation == SchedulingOperation.CHECK:
            availability = self.scheduling.check_availability(ctx.account_id, ctx.agent_id)
            data = availability.to_dict()
            return DispatchResult(availability.ok, availability.message, {
                "slots": data["slots"], "source": data["source"],
            })

        booking = self.scheduling.create_event(
            ctx.account_id, ctx.agent_id, payload.details,
            conversation_id=ctx.conversation_id, contact_id=ctx.contact_id,
        )
        data = booking.to_dict()
        data.pop("ok")
        data.pop("message")
        return DispatchResult(booking.ok, booking.message, data)

    def _follow_up(self, payload: FollowUpRequest, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        section = settings.followup
        offset = settings.get_nested("prompt.timezone_offset_hours", -3)
        try:
            schedule = parse_followup(
                payload.expression,
                now=datetime.now(local_timezone(offset)),
                offset_hours=offset,
                default_time=section.default_time,
                default_reason=section.default_reason,
            )
        except FollowUpParseError as exc:
            return DispatchResult(False, str(exc))

        recent = self.store.recent_messages(ctx.conversation_id, int(section.context_messages))
        context = "\n".join(
            f"{'Lead' if m['direction'] == 'in' else 'Agente'}: {m['content']}" for m in recent
        )[:int(section.context_max_chars)]

        followup_id = self.store.add_followup(
            ctx.account_id, ctx.conversation_id, ctx.contact_id,
            scheduled_for=schedule.when.isoformat(), reason=schedule.reason, context=context,
        )
        return DispatchResult(
            True,
            f"Follow-up agendado para {schedule.label}. Motivo: {schedule.reason}",
            {
                "followup_id": followup_id,
                "scheduled_for": schedule.when.isoformat(),
                "scheduled_label": schedule.label,
                "reason": schedule.reason,
            },
        )

    def _verify_client(self, payload: VerifyClient, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        deals = self.store.list_open_deals(ctx.contact_id)
        client_deal = next((d for d in deals if d.get("stage_type") == "client"), None)
        stage_name = (client_deal or (deals[0] if deals else {})).get("stage_name")
        if client_deal:
            message = f'SIM - o contato é cliente (etapa "{client_deal["stage_name"]}")'
        else:
            message = "NÃO - o contato ainda não é cliente"
        return DispatchResult(True, message, {"is_client": client_deal is not None, "stage_name": stage_name})
