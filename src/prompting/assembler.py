# src/prompting/assembler.py

"""
ScriptContextAssembler - builds the message list for one turn.

The system message is assembled from the operator's script (agent prompt
plus the single active stage) and the CRM context, section by section:

    agent prompt -> temporal context -> contact data -> CRM context
    -> media context -> active stage + next-stage preview -> FAQs
    -> action vocabulary / field rules / scheduling and follow-up rules
    -> literal-text fidelity -> placeholder instructions -> scope limits

It is followed by the bounded history (oldest first) and the current user
turn. Only the active stage and a truncated preview of the next one are
shown, never earlier or later stages.

Side effect: when the conversation has no active stage (or it belongs to
another agent) the first stage is persisted as active.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from src.actions import (
    ActionKind,
    ConfiguredActionSet,
    PlaceholderInstruction,
    detector,
    normalize_field_id,
    parser,
)
from src.dispatch.followup import local_timezone
from src.feature_flags import flags
from src.logger import logger
from src.settings import settings
from src.store import CRMStore

from .detectors import (
    GreetingDetector,
    detect_followup_context,
    detect_scheduling_confirmation,
)


TOOL_NAME = "execute-action"

WEEKDAYS_PT = ["segunda-feira", "terça-feira", "quarta-feira", "quinta-feira", "sexta-feira", "sábado", "domingo"]
MONTHS_PT = [
    "janeiro", "fevereiro", "março", "abril", "maio", "junho",
    "julho", "agosto", "setembro", "outubro", "novembro", "dezembro",
]

MEDIA_KINDS = {
    "audio": "audio", "áudio": "audio",
    "image": "image", "imagem": "image",
    "document": "document", "documento": "document",
}


def day_period(hour: int) -> str:
    """madrugada / manhã / tarde / noite"""
    if hour < 6:
        return "madrugada"
    if hour < 12:
        return "manhã"
    if hour < 18:
        return "tarde"
    return "noite"


def build_tool_schema() -> List[Dict[str, Any]]:
    """The single execute-action function exposed to the model."""
    return [{
        "type": "function",
        "function": {
            "name": TOOL_NAME,
            "description": (
                "OBRIGATÓRIO: executa uma ação do CRM. NUNCA diga que salvou dados, atualizou campos "
                "ou criou eventos sem chamar esta função primeiro. \"follow-up\" é um LEMBRETE de retorno "
                "(lead pediu para falar depois); \"scheduling\" MARCA REUNIÃO (consulte disponibilidade antes)."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "kind": {
                        "type": "string",
                        "enum": [kind.value for kind in ActionKind],
                        "description": (
                            "Tipo da ação. \"verify-client\" consulta no CRM se o lead já é cliente. "
                            "\"goto-stage\" avança o fluxo de atendimento para outra etapa."
                        ),
                    },
                    "value": {
                        "type": "string",
                        "description": (
                            "Valor da ação. set-field: \"nome-do-campo:valor exato\" (hífens só no nome). "
                            "scheduling: \"check\" primeiro, depois \"create:titulo|data_iso8601\". "
                            "follow-up: \"data_iso8601:motivo\". set-name: nome do lead. "
                            "goto-stage: número da etapa. verify-client: vazio."
                        ),
                    },
                },
                "required": ["kind"],
            },
        },
    }]


@dataclass
class MediaContext:
    """Text derived from a non-text inbound message."""
    kind: str
    text: str

    @classmethod
    def from_inbound(cls, message_kind: Optional[str], derived_text: Optional[str]) -> Optional["MediaContext"]:
        kind = MEDIA_KINDS.get((message_kind or "").lower())
        if not kind or not (derived_text or "").strip():
            return None
        return cls(kind=kind, text=derived_text.strip())


@dataclass
class AssembledPrompt:
    """
    Everything the tool loop and the filter need for one turn.

    Attributes:
        messages: system + history + current user turn
        tools: Tool schema, None when the script configures no action
        tool_choice: "auto" or "required"
        configured: Allow-list derived from the active script text
        placeholders: Instructions injected for `{...}` templates
        history: (role, content) pairs oldest first, ending with the user turn
        active_stage: Active agent stage row, if the agent has stages
        script_text: Agent prompt + active stage description
    """
    messages: List[Dict[str, Any]]
    tools: Optional[List[Dict[str, Any]]]
    tool_choice: str
    configured: ConfiguredActionSet
    placeholders: List[PlaceholderInstruction] = field(default_factory=list)
    history: List[Tuple[str, str]] = field(default_factory=list)
    active_stage: Optional[Dict[str, Any]] = None
    script_text: str = ""
    scheduling_confirmation: bool = False
    followup_context: bool = False

    @property
    def system_prompt(self) -> str:
        return self.messages[0]["content"] if self.messages else ""


class ScriptContextAssembler:
    """
    Builds the model input for a conversation turn.

    Args:
        store: CRM datastore
        greetings: Greeting detector (settings list by default)
        now_fn: Clock returning an aware datetime (tests pin it)
    """

    def __init__(
        self,
        store: CRMStore,
        greetings: Optional[GreetingDetector] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.greetings = greetings or GreetingDetector()
        self.offset_hours = settings.get_nested("prompt.timezone_offset_hours", -3)
        self._now_fn = now_fn

    def now(self) -> datetime:
        if self._now_fn is not None:
            return self._now_fn()
        return datetime.now(local_timezone(self.offset_hours))

    # =========================================================================
    # Entry point
    # =========================================================================

    def build(
        self,
        conversation: Dict[str, Any],
        agent: Dict[str, Any],
        inbound_text: str,
        media: Optional[MediaContext] = None,
        load_history: bool = True,
    ) -> AssembledPrompt:
        """
        Assemble the prompt for one turn.

        Args:
            conversation: Conversation row
            agent: Agent row answering this turn
            inbound_text: Current user message (or media-derived text)
            media: Transcript / description of a media message
            load_history: False on agent handoff or when history is suppressed

        Returns:
            AssembledPrompt
        """
        contact = self.store.get_contact(conversation["contact_id"]) or {}
        stages = self.store.list_agent_stages(agent["id"])
        active_stage = self.ensure_active_stage(conversation, stages)

        script_text = (agent.get("prompt") or "")
        if active_stage:
            script_text += "\n\n" + (active_stage.get("description") or "")

        configured = parser.configured_actions(script_text)
        placeholders = detector.detect(script_text) if flags.placeholder_instructions else []

        fields = self.store.list_custom_fields(conversation["account_id"])
        values = self.store.field_values(contact["id"]) if contact else {}
        deals = self.store.list_open_deals(contact["id"]) if contact else []
        substitute = self._substitution(contact, fields, values)

        sections = [
            substitute(agent.get("prompt") or ""),
            self._temporal_section(),
            self._contact_section(contact, fields, values),
            self._crm_section(deals),
            self._media_section(media),
            self._stage_section(active_stage, stages, deals, substitute),
            self._faq_section(agent["id"], substitute),
        ]
        if not configured.is_empty:
            sections.append(self._actions_section())
            sections.append(self._fields_section(configured, fields))
            sections.append(SCHEDULING_RULES)
            sections.append(FOLLOWUP_RULES)
            sections.append(SILENT_ACTION_RULES)
        sections.append(LITERAL_TEXT_RULES)
        sections.append(self._placeholder_section(placeholders))
        sections.append(SCOPE_RULES)

        history: List[Tuple[str, str]] = []
        transcript: List[str] = []
        if load_history:
            history, transcript = self._load_history(conversation, agent)

        followup_context = detect_followup_context(transcript)
        if followup_context and flags.followup_context_hint:
            sections.append(FOLLOWUP_CONTEXT_HINT)

        system_prompt = "\n\n".join(s.strip() for s in sections if s and s.strip())
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": role, "content": content} for role, content in history)
        if not history or history[-1] != ("user", inbound_text):
            messages.append({"role": "user", "content": inbound_text})
            history.append(("user", inbound_text))

        scheduling_confirmation = detect_scheduling_confirmation(inbound_text, transcript)
        tool_choice = "auto"
        if scheduling_confirmation:
            tool_choice = "required"
        elif placeholders and not self.greetings.is_greeting(inbound_text):
            tool_choice = "required"

        tools = build_tool_schema() if not configured.is_empty else None

        logger.debug(
            "Prompt assembled",
            chars=len(system_prompt),
            history=len(history),
            kinds=sorted(k.value for k in configured.kinds),
            tool_choice=tool_choice,
        )
        return AssembledPrompt(
            messages=messages,
            tools=tools,
            tool_choice=tool_choice,
            configured=configured,
            placeholders=placeholders,
            history=history,
            active_stage=active_stage,
            script_text=script_text,
            scheduling_confirmation=scheduling_confirmation,
            followup_context=followup_context,
        )

    # =========================================================================
    # Active stage
    # =========================================================================

    def ensure_active_stage(
        self, conversation: Dict[str, Any], stages: Sequence[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        """Active stage of the conversation; persists the first one when unset."""
        if not stages:
            return None
        current = next((s for s in stages if s["id"] == conversation.get("active_stage_id")), None)
        if current is not None:
            return current

        first = next((s for s in stages if int(s["number"]) == 1), stages[0])
        self.store.update_conversation(conversation["id"], active_stage_id=first["id"])
        conversation["active_stage_id"] = first["id"]
        logger.info("Initial stage set", stage=first["name"], number=first["number"])
        return first

    # =========================================================================
    # History
    # =========================================================================

    def _load_history(
        self, conversation: Dict[str, Any], agent: Dict[str, Any]
    ) -> Tuple[List[Tuple[str, str]], List[str]]:
        limit = int(agent.get("history_limit") or settings.prompt.history_limit)
        after = conversation.get("memory_cleared_at")

        rows = self.store.recent_messages(conversation["id"], limit, after=after)
        history = [
            ("user" if row["direction"] == "in" else "assistant", row["content"])
            for row in rows
            if row["content"]
        ]
        # Detectors also see the audit trail (availability listings live there)
        transcript_rows = self.store.recent_messages(conversation["id"], limit, after=after, include_system=True)
        transcript = [row["content"] for row in transcript_rows if row["content"]]
        return history, transcript

    # =========================================================================
    # Sections
    # =========================================================================

    def _substitution(
        self, contact: Dict[str, Any], fields: Sequence[Dict[str, Any]], values: Dict[str, str]
    ) -> Callable[[str], str]:
        name = contact.get("name") or "Cliente"
        replacements = [
            ("Nome do cliente", name),
            ("Nome do lead", name),
            ("Nome", name),
            ("Telefone", contact.get("phone") or ""),
            ("Email", contact.get("email") or ""),
            ("Tags", ", ".join(contact.get("tags") or [])),
        ]
        replacements.extend((f["name"], values.get(f["id"]) or "") for f in fields)
        compiled = [
            (re.compile(rf"\[{re.escape(label)}\]", re.IGNORECASE), value)
            for label, value in replacements
        ]

        def substitute(text: str) -> str:
            for pattern, value in compiled:
                text = pattern.sub(lambda _match, v=value: v, text)
            return text

        return substitute

    def _temporal_section(self) -> str:
        now = self.now()
        return (
            "## CONTEXTO TEMPORAL\n"
            f"- Data atual: {now.day} de {MONTHS_PT[now.month - 1]} de {now.year}\n"
            f"- Dia da semana: {WEEKDAYS_PT[now.weekday()]}\n"
            f"- Horário atual: {now:%H:%M} (horário de Brasília)\n"
            f"- Período do dia: {day_period(now.hour)}\n\n"
            "Use estas informações para cumprimentos apropriados (Bom dia/Boa tarde/Boa noite) "
            "e referências temporais."
        )

    def _contact_section(
        self, contact: Dict[str, Any], fields: Sequence[Dict[str, Any]], values: Dict[str, str]
    ) -> str:
        if not contact:
            return ""
        lines = ["## DADOS DO CONTATO/LEAD", f"- **Nome do contato:** {contact.get('name') or 'Não identificado'}"]
        if contact.get("phone"):
            lines.append(f"- Telefone: {contact['phone']}")
        if contact.get("email"):
            lines.append(f"- Email: {contact['email']}")
        if contact.get("tags"):
            lines.append(f"- Tags: {', '.join(contact['tags'])}")
        if fields:
            lines.append("\n**Campos Personalizados:**")
            for f in fields:
                lines.append(f"- {f['name']}: {values.get(f['id']) or 'não informado'}")
        lines.append(
            f"\n**IMPORTANTE:** Use o nome \"{contact.get('name') or 'Cliente'}\" para se referir "
            "ao contato de forma personalizada quando apropriado."
        )
        return "\n".join(lines)

    @staticmethod
    def _is_client(deals: Sequence[Dict[str, Any]]) -> bool:
        return any(d.get("stage_type") == "client" for d in deals)

    def _crm_section(self, deals: Sequence[Dict[str, Any]]) -> str:
        lines = ["## CONTEXTO DO CRM"]
        if self._is_client(deals):
            lines += [
                "**⭐ ESTE LEAD É CLIENTE - SIGA INSTRUÇÕES PARA CLIENTE**",
                "- Status: Cliente (já convertido)",
                "- Trate este contato como um cliente existente, não como um novo lead.",
            ]
        elif deals:
            lines += [
                "**📋 ESTE LEAD NÃO É CLIENTE - SIGA INSTRUÇÕES PARA NÃO CLIENTE**",
                "- Status: Lead em negociação (ainda não é cliente)",
                "- Se houver instrução condicional para \"não cliente\", você DEVE seguir essa instrução.",
            ]
        else:
            lines += [
                "**🆕 ESTE LEAD NÃO É CLIENTE - SIGA INSTRUÇÕES PARA NÃO CLIENTE**",
                "- Status: Contato novo ou sem negociação ativa",
                "- Se houver instrução condicional para \"não cliente\", você DEVE seguir essa instrução.",
            ]
        if deals:
            deal = deals[0]
            lines.append(f"- Etapa atual no CRM: {deal.get('stage_name') or 'Não definida'}")
            lines.append(f"- Funil: {deal.get('pipeline_name') or 'Não definido'}")
            amount = deal.get("amount") or 0
            if amount > 0:
                formatted = f"{amount:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
                lines.append(f"- Valor da negociação: R$ {formatted}")
        lines.append("\nUse estas informações para contextualizar melhor o atendimento.")
        return "\n".join(lines)

    @staticmethod
    def _media_section(media: Optional[MediaContext]) -> str:
        if media is None:
            return ""
        if media.kind == "audio":
            return (
                "## CONTEXTO DE MÍDIA\n"
                f"O lead enviou um áudio. Transcrição do áudio:\n\"{media.text}\"\n\n"
                "Responda naturalmente como se tivesse ouvido e compreendido o áudio. "
                "Não mencione que recebeu uma transcrição."
            )
        if media.kind == "image":
            return (
                "## CONTEXTO DE MÍDIA\n"
                f"O lead enviou uma imagem. Análise da imagem:\n\"{media.text}\"\n\n"
                "Responda naturalmente baseado no conteúdo da imagem. Se tiver dados importantes "
                "(valores, datas, nomes), mencione-os naturalmente. Não mencione que recebeu uma "
                "descrição da imagem."
            )
        return (
            "## CONTEXTO DE DOCUMENTO\n"
            f"O lead enviou um documento. Conteúdo extraído do documento:\n\"{media.text}\"\n\n"
            "Responda naturalmente baseado no conteúdo do documento (valores, prazos, partes "
            "envolvidas). Não mencione que recebeu o texto extraído."
        )

    def _stage_section(
        self,
        stage: Optional[Dict[str, Any]],
        stages: Sequence[Dict[str, Any]],
        deals: Sequence[Dict[str, Any]],
        substitute: Callable[[str], str],
    ) -> str:
        if stage is None:
            return ""
        client_note = (
            "**⚠️ IMPORTANTE: O LEAD É CLIENTE - Execute instruções para CLIENTE**"
            if self._is_client(deals)
            else "**⚠️ IMPORTANTE: O LEAD NÃO É CLIENTE - Execute instruções para NÃO CLIENTE**"
        )
        lines = [
            "## ETAPA ATUAL DE ATENDIMENTO",
            f"**Você está na Etapa {stage['number']}: {stage['name']}**\n",
            client_note + "\n",
            "Siga RIGOROSAMENTE as instruções desta etapa. NÃO volte para etapas anteriores:\n",
        ]
        if stage.get("description"):
            lines.append(substitute(stage["description"]) + "\n")

        next_stage = next((s for s in stages if int(s["number"]) == int(stage["number"]) + 1), None)
        if next_stage is None:
            lines.append("*Esta é a última etapa do fluxo de atendimento.*")
            return "\n".join(lines)

        limit = int(settings.prompt.next_stage_preview_chars)
        lines += [
            "### PRÓXIMA ETAPA (quando concluir a atual)",
            f"Quando completar os objetivos da etapa atual, use a ação @{ActionKind.GOTO_STAGE.value}:"
            f"{next_stage['number']} para avançar para:",
            f"**Etapa {next_stage['number']}: {next_stage['name']}**",
        ]
        description = substitute(next_stage.get("description") or "")
        if description:
            suffix = "..." if len(description) > limit else ""
            lines.append(f"Resumo: {description[:limit]}{suffix}")
        return "\n".join(lines)

    def _faq_section(self, agent_id: str, substitute: Callable[[str], str]) -> str:
        faqs = self.store.list_faqs(agent_id)
        if not faqs:
            return ""
        lines = ["## PERGUNTAS FREQUENTES", "Use estas respostas quando apropriado:\n"]
        for faq in faqs:
            lines.append(f"**P: {substitute(faq['question'])}**\nR: {substitute(faq['answer'])}\n")
        return "\n".join(lines)

    @staticmethod
    def _actions_section() -> str:
        return "\n".join([
            "## AÇÕES DISPONÍVEIS",
            f"Use a ferramenta {TOOL_NAME} (kind + value) para executar:",
            "- stage-move <funil/etapa> - Mover o lead para uma etapa do CRM",
            "- goto-stage <numero> - Avançar no fluxo de atendimento (ex: 2)",
            "- tag <nome> - Adicionar uma tag existente ao contato",
            "- create-deal <funil/etapa>[:valor] - Criar uma negociação no CRM",
            "- transfer humano | ia | agente:<id_ou_nome> - Transferir a conversa",
            "- notify <mensagem> - Notificar a equipe",
            "- end-conversation - Encerrar a conversa",
            "- set-name <nome> - Alterar o nome do contato (quando ele se identificar)",
            "- set-field <nome-do-campo>:<valor> - Atualizar um campo personalizado",
            "- get-field <nome-do-campo> - Obter o valor de um campo personalizado",
            "- verify-client - Consultar no CRM se o lead é cliente (retorna SIM ou NÃO)",
            "- scheduling check - Consultar horários livres",
            "- scheduling create:<titulo>|<data_inicio_iso8601> - Criar evento (com Google Meet)",
            "- follow-up <data_iso8601>:<motivo> - Agendar lembrete de retorno",
            "No roteiro as ações aparecem como @kind:alvo:valor (também em português: @etapa, @campo, "
            "@transferir, @agenda, @ir_etapa ...).",
        ])

    @staticmethod
    def _fields_section(configured: ConfiguredActionSet, fields: Sequence[Dict[str, Any]]) -> str:
        if configured.fields:
            listed = [f for f in fields if normalize_field_id(f["name"]) in configured.fields]
            lines = [
                "### CAMPOS PERSONALIZADOS PERMITIDOS",
                "Você pode SOMENTE capturar dados nos seguintes campos (configurados na etapa):",
            ]
            if listed:
                lines += [
                    f"- {f['name']} ({f['field_type']}) → Use: set-field {normalize_field_id(f['name'])}:{{valor-do-lead}}"
                    for f in listed
                ]
            else:
                lines += [f"- {name} → Use: set-field {name}:{{valor-do-lead}}" for name in sorted(configured.fields)]
            lines += [
                "",
                "**COMO SALVAR CAMPOS:**",
                "- SÓ salve campos quando o SCRIPT/ETAPA pedir explicitamente",
                "- O VALOR deve manter EXATAMENTE o que o lead enviou, com espaços (sem hífens)",
                "- Ex: lead diz \"Thiago Mendes\" → value=\"nome-completo:Thiago Mendes\"",
                "- NÃO salve campos que não estão listados acima e NÃO invente campos novos",
            ]
            return "\n".join(lines)
        if fields:
            return "\n".join([
                "### ⚠️ REGRA ANTI-CAPTURA AUTOMÁTICA",
                "NÃO salve campos personalizados automaticamente!",
                "- Só use set-field quando o script/etapa pedir EXPLICITAMENTE",
                "- Não infira que deve salvar dados só porque o lead informou algo",
            ])
        return ""

    @staticmethod
    def _placeholder_section(placeholders: Sequence[PlaceholderInstruction]) -> str:
        if not placeholders:
            return ""
        lines = [
            "## 🔄 SUBSTITUIÇÃO DINÂMICA DE PLACEHOLDERS",
            "O roteiro contém ações com placeholders (ex: {valor-do-lead}). Você DEVE substituí-los pelo valor real:",
        ]
        lines += [p.text for p in placeholders]
        lines.append(
            "\n**REGRA CRÍTICA:** NUNCA use o texto literal \"{valor-do-lead}\" ou similar como valor. "
            "Sempre capture a resposta REAL do lead e use-a na ação!"
        )
        return "\n".join(lines)


# =============================================================================
# Fixed rule blocks
# =============================================================================

SCHEDULING_RULES = """### INSTRUÇÕES DE AGENDAMENTO (CRÍTICO)
O agendamento é feito em 2 TURNOS SEPARADOS:
**TURNO 1 - CONSULTAR:** quando o cliente pedir para agendar, use scheduling check. NUNCA invente horários; apresente 3-5 opções da consulta e espere a resposta.
**TURNO 2 - CRIAR:** só quando o cliente confirmar um horário específico, use scheduling create:<titulo>|<data_iso8601> (ex: create:Reunião com Cliente|2025-01-20T14:00:00-03:00). O resultado traz o link do Meet: inclua-o na resposta.
- NUNCA responda "Reunião agendada" ou envie link de Meet sem ANTES chamar a ferramenta.
- NUNCA invente links do Google Meet. Eles vêm do resultado da ferramenta.
- Se o cliente mencionou um horário APÓS você mostrar opções, é uma CONFIRMAÇÃO: chame a ferramenta."""

FOLLOWUP_RULES = """### INSTRUÇÕES DE FOLLOW-UP (LEMBRETE DE RETORNO)
Follow-up é um LEMBRETE para você retomar a conversa; agendamento marca uma reunião.
- Use follow-up quando o lead disser "me liga depois", "fala comigo amanhã" ou responder com um horário para retomar o contato.
- Formato: follow-up <data_iso8601>:<motivo> (ex: 2025-01-09T23:40:00-03:00:lead pediu retorno às 23:40)
- NUNCA consulte disponibilidade para follow-ups."""

SILENT_ACTION_RULES = """## ⚠️ REGRA CRÍTICA: AÇÕES SÃO SILENCIOSAS
- NUNCA mencione ao cliente ações internas (transferências, etapas, tags, campos).
- NUNCA inclua comandos @ na resposta ao cliente.
- NUNCA diga "Informação salva", "Registrado" ou "Campo atualizado"; faça a próxima pergunta do roteiro.
- Ao transferir para outro agente, apenas se despeça naturalmente.

## ⚠️ REGRA CRÍTICA: UMA AÇÃO POR RESPOSTA
- Execute NO MÁXIMO UMA ou DUAS ações por resposta, relacionadas à mensagem ATUAL do lead.
- NÃO revise o histórico para executar ações de turnos anteriores.
- Quando a etapa lista ações e a condição foi atendida, execute-as IMEDIATAMENTE.
- set-name sem valor no roteiro significa: capture o nome que o lead acabou de informar."""

LITERAL_TEXT_RULES = """## ⚠️ REGRA CRÍTICA: TEXTO LITERAL OBRIGATÓRIO
Quando o roteiro contiver texto entre aspas duplas, ele é a MENSAGEM EXATA a enviar:
1. Use o texto EXATAMENTE como escrito, substituindo apenas marcadores entre colchetes pelos valores reais
2. NUNCA parafraseie, resuma ou troque por mensagens genéricas ("Entendido!", "Processando...", "Certo!")
3. NÃO inclua as aspas na resposta
Se o lead responder "pode seguir", "sim", "ok" ou similar, siga para a próxima mensagem do roteiro usando o texto literal."""

SCOPE_RULES = """## RESTRIÇÕES ABSOLUTAS
- NUNCA invente informações sobre você, sua empresa ou seus serviços.
- Responda perguntas sobre você ou a empresa APENAS com o que está configurado acima (regras, etapas, perguntas frequentes).
- Sem informação suficiente, diga educadamente que pode ajudar com outras questões.
- Mantenha-se estritamente dentro do escopo das informações fornecidas."""

FOLLOWUP_CONTEXT_HINT = """## ⚠️ CONTEXTO DE FOLLOW-UP DETECTADO
O histórico indica que você está combinando um RETORNO DE CONTATO, NÃO uma reunião.
Quando o lead informar o horário preferido, use follow-up <data_iso8601>:<motivo> (NÃO use scheduling check) e confirme que vai retomar o contato no horário indicado."""
