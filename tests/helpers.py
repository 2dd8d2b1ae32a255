"""
Builders shared by the test modules: scripted completions and a seeded CRM.
"""

import json
from datetime import datetime
from types import SimpleNamespace
from typing import List, Optional, Sequence, Tuple
from unittest.mock import MagicMock

from src.dispatch.followup import local_timezone
from src.llm import ChatCompletion, TokenUsage, ToolCall
from src.store import CRMStore


# =============================================================================
# Completions
# =============================================================================

def text_completion(text: str, tokens: int = 10) -> ChatCompletion:
    """Assistant turn carrying only text."""
    return ChatCompletion(
        content=text,
        usage=TokenUsage(prompt_tokens=tokens, completion_tokens=tokens, total_tokens=2 * tokens),
        finish_reason="stop",
    )


def tool_completion(*actions: Tuple[str, Optional[str]], content: str = "", tokens: int = 10) -> ChatCompletion:
    """Assistant turn with one execute-action call per (kind, value)."""
    calls = []
    for index, (kind, value) in enumerate(actions):
        arguments = {"kind": kind}
        if value is not None:
            arguments["value"] = value
        calls.append(ToolCall(id=f"call_{index}", name="execute-action", arguments=json.dumps(arguments)))
    return ChatCompletion(
        content=content,
        tool_calls=calls,
        usage=TokenUsage(prompt_tokens=tokens, completion_tokens=tokens, total_tokens=2 * tokens),
        finish_reason="tool_calls",
    )


def scripted_llm(responses: Sequence[ChatCompletion]) -> MagicMock:
    """Mock client returning `responses` in order from complete()."""
    llm = MagicMock()
    llm.complete.side_effect = list(responses)
    llm.api_key = "sk-test"
    llm.model = "gpt-4o-mini"
    llm.get_stats_dict.return_value = {"total_requests": len(responses)}
    return llm


# =============================================================================
# Seeded CRM
# =============================================================================

FIXED_NOW = datetime(2025, 1, 8, 10, 0, tzinfo=local_timezone(-3))  # Wednesday morning

AGENT_PROMPT = """Você é a Ana, assistente da Clínica Sorriso.
Sempre cumprimente o lead pelo nome: "Olá [Nome]! Tudo bem?"
Quando o lead pedir para falar com alguém use @transferir:humano."""

STAGE_1 = """Pergunte o email do lead: "Qual é o seu email?"
Quando o lead responder salve com @campo:email:{valor-do-lead} e marque @tag:lead-quente.
Se o lead quiser avançar use @etapa:Vendas/Qualificado."""

STAGE_2 = """Ofereça uma avaliação gratuita e consulte a agenda com @agenda:check."""


def seed_crm(store: CRMStore) -> SimpleNamespace:
    """
    Seeded account:
        agent "Ana" (primary) with two script stages
        pipeline "Vendas": Novo -> Qualificado -> Cliente (client stage)
        tag "lead-quente", custom fields "email" and "empresa"
        contact "Maria" with one open conversation
    """
    account_id = store.create_account("Clínica Sorriso", model_api_key="sk-account")
    agent_id = store.create_agent(account_id, "Ana", prompt=AGENT_PROMPT, is_primary=True)
    stage_1 = store.add_agent_stage(agent_id, 1, "Qualificação", STAGE_1)
    stage_2 = store.add_agent_stage(agent_id, 2, "Agendamento", STAGE_2)

    pipeline_id = store.create_pipeline(account_id, "Vendas")
    novo = store.add_pipeline_stage(pipeline_id, "Novo", position=0)
    qualificado = store.add_pipeline_stage(pipeline_id, "Qualificado", position=1)
    cliente = store.add_pipeline_stage(pipeline_id, "Cliente", position=2, stage_type="client")

    store.create_tag(account_id, "lead-quente")
    email_field = store.create_custom_field(account_id, "email")
    company_field = store.create_custom_field(account_id, "empresa")

    contact_id = store.create_contact(account_id, name="Maria", phone="+5511999990000")
    conversation_id = store.create_conversation(account_id, contact_id, agent_id=agent_id)

    return SimpleNamespace(
        store=store,
        account_id=account_id,
        agent_id=agent_id,
        stage_ids=[stage_1, stage_2],
        pipeline_id=pipeline_id,
        novo=novo,
        qualificado=qualificado,
        cliente=cliente,
        email_field=email_field,
        company_field=company_field,
        contact_id=contact_id,
        conversation_id=conversation_id,
    )


def transcript(store: CRMStore, conversation_id: str, direction: Optional[str] = None) -> List[str]:
    """Transcript texts, optionally filtered by direction."""
    return [
        m["content"] for m in store.list_messages(conversation_id)
        if direction is None or m["direction"] == direction
    ]
