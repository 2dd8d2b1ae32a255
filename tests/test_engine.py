"""
End-to-end tests for one conversation turn (model scripted, sqlite CRM).
"""

from datetime import datetime

import pytest

from src.dispatch import DispatchContext, SchedulingService
from src.dispatch.followup import local_timezone
from src.errors import ConfigurationError, EmptyResponseError
from src.orchestration import InboundMessage, OrchestrationEngine
from src.orchestration.engine import _handoff_depth, within_hours
from src.orchestration.response_guard import SAFE_SCHEDULING_MESSAGE
from src.prompting import ScriptContextAssembler
from tests.helpers import FIXED_NOW, scripted_llm, text_completion, tool_completion, transcript

REPLY = "Obrigada, Maria! Vou te enviar os detalhes da avaliação."


@pytest.fixture
def make_engine(crm):
    """make_engine(responses) -> (engine, llm)"""
    def _make(responses):
        llm = scripted_llm(responses)
        engine = OrchestrationEngine(
            crm.store,
            llm=llm,
            assembler=ScriptContextAssembler(crm.store, now_fn=lambda: FIXED_NOW),
            scheduling=SchedulingService(crm.store, provider_factory=lambda account: None, now_fn=lambda: FIXED_NOW),
        )
        return engine, llm
    return _make


def inbound(crm, text: str, **kwargs) -> InboundMessage:
    crm.store.add_message(crm.conversation_id, "in", text)
    return InboundMessage(
        conversation_id=crm.conversation_id,
        account_id=crm.account_id,
        contact_id=crm.contact_id,
        text=text,
        **kwargs,
    )


class TestTurn:
    """Happy path"""

    def test_plain_reply(self, crm, make_engine):
        engine, llm = make_engine([text_completion(REPLY)])
        result = engine.run_turn(inbound(crm, "quero saber mais"))

        assert result.final_text == REPLY
        assert result.already_persisted
        assert result.executed_action_count == 0
        assert transcript(crm.store, crm.conversation_id, "out") == [REPLY]
        assert llm.complete.call_args[1]["api_key"] == "sk-account"

    def test_token_usage_recorded(self, crm, make_engine):
        engine, _ = make_engine([text_completion(REPLY, tokens=50)])
        engine.run_turn(inbound(crm, "quero saber mais"))
        rows = crm.store._all("SELECT * FROM token_usage WHERE conversation_id=?", (crm.conversation_id,))
        assert len(rows) == 1
        assert rows[0]["total_tokens"] == 100
        assert rows[0]["model"] == "gpt-4o-mini"

    def test_field_capture(self, crm, make_engine):
        crm.store.add_message(crm.conversation_id, "out", "Qual é o seu email?")
        engine, _ = make_engine([
            tool_completion(("set-field", "email:maria@exemplo.com")),
            text_completion("Perfeito, Maria! Qual é a sua empresa?"),
        ])
        result = engine.run_turn(inbound(crm, "maria@exemplo.com"))

        assert result.executed_action_count == 1
        assert crm.store.get_field_value(crm.contact_id, crm.email_field) == "maria@exemplo.com"
        system = transcript(crm.store, crm.conversation_id, "system")
        assert len(system) == 1
        assert result.to_dict()["final_text"] == "Perfeito, Maria! Qual é a sua empresa?"

    def test_placeholder_value_takes_user_message(self, crm, make_engine):
        engine, _ = make_engine([
            tool_completion(("set-field", "email:{valor-do-lead}")),
            text_completion("Perfeito, Maria! Qual é a sua empresa?"),
        ])
        engine.run_turn(inbound(crm, "maria@exemplo.com"))
        assert crm.store.get_field_value(crm.contact_id, crm.email_field) == "maria@exemplo.com"

    def test_unconfigured_kind_is_not_dispatched(self, crm, make_engine):
        engine, _ = make_engine([tool_completion(("create-deal", "Vendas/Novo")), text_completion(REPLY)])
        result = engine.run_turn(inbound(crm, "quero fechar"))
        assert result.executed_action_count == 0
        assert crm.store.list_open_deals(crm.contact_id) == []

    def test_cap_is_logged(self, crm, make_engine):
        engine, _ = make_engine([
            tool_completion(("stage-move", "Vendas/Qualificado"), ("tag", "lead-quente")),
            text_completion(REPLY),
        ])
        result = engine.run_turn(inbound(crm, "quero avançar"))

        assert [a.kind.value for a in result.executed_actions] == ["stage-move"]
        capped = [a for a in crm.store.list_activity(crm.conversation_id) if a["kind"] == "actions_capped"]
        assert capped[0]["details"]["dropped"] == [{"action_kind": "tag", "action_value": "lead-quente"}]

    def test_scheduling_claim_without_event(self, crm, make_engine):
        engine, _ = make_engine([text_completion("Pronto! Sua reunião foi agendada para amanhã às 10h.")])
        result = engine.run_turn(inbound(crm, "pode ser amanhã às 10h"))
        assert result.final_text == SAFE_SCHEDULING_MESSAGE
        assert result.guard_reason == "scheduling_hallucination"

    def test_empty_response_propagates(self, crm, make_engine):
        engine, _ = make_engine([text_completion("")] * 3)
        with pytest.raises(EmptyResponseError):
            engine.run_turn(inbound(crm, "quero saber mais"))
        assert transcript(crm.store, crm.conversation_id, "out") == []


class TestAgentSelection:
    """Agent and credential resolution"""

    def test_inactive_agent_falls_back_to_primary(self, crm, make_engine):
        inactive = crm.store.create_agent(crm.account_id, "Inativo", active=False)
        crm.store.update_conversation(crm.conversation_id, agent_id=inactive)
        engine, _ = make_engine([])
        agent = engine.select_agent(crm.store.get_conversation(crm.conversation_id))
        assert agent["id"] == crm.agent_id

    def test_unassigned_conversation_gets_agent(self, crm, make_engine):
        crm.store.update_conversation(crm.conversation_id, agent_id=None)
        engine, _ = make_engine([])
        engine.select_agent(crm.store.get_conversation(crm.conversation_id))
        assert crm.store.get_conversation(crm.conversation_id)["agent_id"] == crm.agent_id

    def test_account_without_agents(self, store):
        account_id = store.create_account("Vazia")
        contact_id = store.create_contact(account_id, name="João")
        conversation_id = store.create_conversation(account_id, contact_id)
        engine = OrchestrationEngine(store, llm=scripted_llm([]))
        with pytest.raises(ConfigurationError):
            engine.run_turn(InboundMessage(conversation_id, account_id, contact_id, text="oi"))

    def test_unknown_conversation(self, crm, make_engine):
        engine, _ = make_engine([])
        with pytest.raises(ConfigurationError):
            engine.run_turn(InboundMessage("nope", crm.account_id, crm.contact_id, text="oi"))

    def test_credential_fallback(self, store, monkeypatch):
        account_id = store.create_account("Sem chave")
        llm = scripted_llm([])
        llm.api_key = None
        engine = OrchestrationEngine(store, llm=llm)

        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert engine.credential(account_id) == "sk-env"

        monkeypatch.delenv("OPENAI_API_KEY")
        with pytest.raises(ConfigurationError):
            engine.credential(account_id)


class TestBusinessHours:
    """Out-of-hours short circuit"""

    @pytest.fixture
    def night_agent(self, crm):
        agent_id = crm.store.create_agent(
            crm.account_id, "Plantão", prompt="Atenda com cordialidade.",
            hours_mode="business", out_of_hours_message="Estamos fora do horário. Retornamos às 14h!",
        )
        crm.store.add_agent_hours(agent_id, 2, "14:00", "18:00")
        crm.store.update_conversation(crm.conversation_id, agent_id=agent_id)
        return agent_id

    def test_closed_with_message(self, crm, make_engine, night_agent):
        engine, llm = make_engine([])
        result = engine.run_turn(inbound(crm, "oi"))
        assert result.out_of_hours
        assert result.final_text == "Estamos fora do horário. Retornamos às 14h!"
        assert result.already_persisted
        llm.complete.assert_not_called()

    def test_closed_without_message(self, crm, make_engine):
        agent_id = crm.store.create_agent(crm.account_id, "Silencioso", hours_mode="business")
        crm.store.add_agent_hours(agent_id, 2, "14:00", "18:00")
        crm.store.update_conversation(crm.conversation_id, agent_id=agent_id)
        engine, _ = make_engine([])
        result = engine.run_turn(inbound(crm, "oi"))
        assert result.final_text is None
        assert not result.should_respond

    def test_flag_disabled(self, crm, make_engine, night_agent, flag_override):
        flag_override(business_hours=False)
        engine, _ = make_engine([text_completion(REPLY)])
        assert engine.run_turn(inbound(crm, "oi")).final_text == REPLY

    def test_default_hours(self):
        tz = local_timezone(-3)
        assert within_hours(FIXED_NOW, [])
        assert not within_hours(datetime(2025, 1, 11, 10, 0, tzinfo=tz), [])
        assert not within_hours(datetime(2025, 1, 8, 19, 0, tzinfo=tz), [])


class TestAgentHandoff:
    """Transfer to another AI agent answers in the same turn"""

    def test_new_agent_replies(self, crm, make_engine):
        bruno = crm.store.create_agent(crm.account_id, "Bruno", prompt="Você é o Bruno, especialista em implantes.")
        ana_text = "Claro, Maria! O Bruno vai continuar seu atendimento."
        bruno_text = "Oi Maria, aqui é o Bruno! Como posso ajudar com o implante?"
        engine, llm = make_engine([
            tool_completion(("transfer", "agente:Bruno")),
            text_completion(ana_text),
            text_completion(bruno_text),
        ])

        result = engine.run_turn(inbound(crm, "quero falar com o especialista"))

        assert result.handoff_reply == bruno_text
        assert crm.store.get_conversation(crm.conversation_id)["agent_id"] == bruno
        outbound = transcript(crm.store, crm.conversation_id, "out")
        assert outbound.count(bruno_text) == 1
        assert ana_text in outbound
        # The new agent starts without the transcript
        bruno_messages = llm.complete.call_args_list[2][0][0]
        assert [m["role"] for m in bruno_messages] == ["system", "user"]
        assert bruno_messages[-1]["content"] == "quero falar com o especialista"

    def test_nested_handoff_is_ignored(self, crm, make_engine):
        engine, llm = make_engine([])
        token = _handoff_depth.set(1)
        try:
            ctx = DispatchContext(crm.account_id, crm.conversation_id, crm.contact_id, crm.agent_id)
            assert engine._reentry(ctx, "oi") is None
        finally:
            _handoff_depth.reset(token)
        llm.complete.assert_not_called()
