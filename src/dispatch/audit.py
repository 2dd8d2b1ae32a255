# src/dispatch/audit.py

"""
Human-readable audit texts for dispatched actions.

Each successful dispatch leaves a `system` message in the transcript so
operators can see what the agent did. These never reach the contact.
"""

from typing import Any, Dict, Optional

from src.actions import ActionKind, ActionToken, DispatchResult


def _spaced(text: Optional[str]) -> str:
    return (text or "").replace("-", " ").strip()


def audit_text(token: ActionToken, result: DispatchResult) -> str:
    """Operator-facing description of one executed action."""
    kind = token.kind
    value = token.combined_value
    payload = result.payload or {}

    if kind in (ActionKind.STAGE_MOVE, ActionKind.GOTO_STAGE):
        return f'📊 Lead movido para etapa "{payload.get("stage_name") or value}"'
    if kind == ActionKind.TAG:
        return f'🏷️ Tag "{payload.get("tag") or value}" adicionada ao contato'
    if kind == ActionKind.TRANSFER:
        mode = payload.get("mode")
        if mode == "human":
            return "👤 Conversa transferida para atendente humano"
        if mode == "primary":
            return "🤖 Conversa retornada para agente IA principal"
        if mode == "agent":
            return f'🤖 Conversa transferida para agente "{payload.get("agent_name") or _spaced(token.value)}"'
        return "↔️ Transferência realizada"
    if kind == ActionKind.NOTIFY:
        return f"🔔 Notificação: {value or 'Nova ação'}"
    if kind == ActionKind.END_CONVERSATION:
        return "🔒 Conversa encerrada pelo agente IA"
    if kind == ActionKind.SET_NAME:
        return f'✏️ Nome do contato alterado para "{value}"'
    if kind == ActionKind.CREATE_DEAL:
        return f"💼 Nova negociação criada: {payload.get('title') or value or 'Lead'}"
    if kind == ActionKind.SCHEDULING:
        if "booking_id" in payload:
            return (
                f'✅ Evento criado: "{payload.get("title")}" | Data: {payload.get("start")} '
                f'| Meet: {payload.get("meeting_link") or "Não gerado"}'
            )
        source = " (agenda interna)" if payload.get("source") == "internal" else ""
        return f"📅 Consulta de disponibilidade{source}: {len(payload.get('slots', []))} horários livres encontrados"
    if kind == ActionKind.SET_FIELD:
        return f'📝 Campo "{payload.get("field_name") or _spaced(token.target)}" atualizado para "{token.value or ""}"'
    if kind == ActionKind.GET_FIELD:
        return f'🔍 Campo "{payload.get("field_name") or _spaced(token.target)}" consultado'
    if kind == ActionKind.FOLLOW_UP:
        if payload.get("scheduled_label"):
            return f"📅 Follow-up agendado para {payload['scheduled_label']} - {payload.get('reason', '')}".rstrip(" -")
        return "📅 Follow-up agendado"
    if kind == ActionKind.VERIFY_CLIENT:
        return f"🔎 Verificação de cliente: {'SIM' if payload.get('is_client') else 'NÃO'}"
    return f"⚙️ Ação executada: {kind.value}"


def audit_metadata(token: ActionToken, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Machine-readable payload of an audit message."""
    metadata: Dict[str, Any] = {
        "internal": True,
        "action_kind": token.kind.value,
        "action_value": token.combined_value or None,
    }
    if extra:
        metadata.update(extra)
    return metadata
