"""
Tests for the contextual action filter and expected-field inference.
"""

import pytest

from src.actions import (
    ActionKind,
    ActionToken,
    FilterConfig,
    ProposedAction,
    filter_actions,
    infer_expected_field,
    last_agent_question,
    parser,
)
from tests.helpers import AGENT_PROMPT, STAGE_1


def proposed(kind, target, value=None, in_loop=False, round_number=1):
    return ProposedAction(
        token=ActionToken(kind=kind, target=target, value=value),
        round_number=round_number,
        executed_in_loop=in_loop,
    )


@pytest.fixture
def allowed():
    return parser.configured_actions(AGENT_PROMPT + "\n" + STAGE_1)


# =============================================================================
# Allow-list
# =============================================================================

class TestAllowList:
    """Kinds the script never mentions are dropped"""

    def test_unmentioned_kind_is_dropped(self, allowed):
        result = filter_actions([proposed(ActionKind.NOTIFY, "equipe")], allowed, "oi")
        assert result.kept == []
        assert len(result.dropped_by("not_configured")) == 1

    def test_always_allowed_kinds_survive(self, allowed):
        actions = [
            proposed(ActionKind.SET_NAME, "Maria"),
            proposed(ActionKind.SCHEDULING, "check", in_loop=True),
            proposed(ActionKind.VERIFY_CLIENT, "", in_loop=True),
        ]
        result = filter_actions(actions, allowed, "oi")
        assert [a.kind for a in result.kept] == [
            ActionKind.SET_NAME, ActionKind.SCHEDULING, ActionKind.VERIFY_CLIENT,
        ]

    def test_mentioned_kind_survives(self, allowed):
        result = filter_actions([proposed(ActionKind.TAG, "lead-quente")], allowed, "oi")
        assert len(result.kept) == 1
        assert result.dropped == []

    def test_stage_mention_allows_goto_stage(self, allowed):
        result = filter_actions([proposed(ActionKind.GOTO_STAGE, "2")], allowed, "quero agendar")
        assert [a.kind for a in result.kept] == [ActionKind.GOTO_STAGE]


# =============================================================================
# set-field scoping
# =============================================================================

class TestSetField:
    """Placeholder substitution and field scoping"""

    def test_placeholder_takes_trimmed_inbound_text(self, allowed):
        action = proposed(ActionKind.SET_FIELD, "email", "{valor-do-lead}")
        result = filter_actions([action], allowed, "  maria@exemplo.com \n")
        assert result.kept[0].token.value == "maria@exemplo.com"

    def test_empty_value_takes_inbound_text(self, allowed):
        result = filter_actions([proposed(ActionKind.SET_FIELD, "email", "")], allowed, "maria@exemplo.com")
        assert result.kept[0].token.value == "maria@exemplo.com"

    def test_real_value_is_kept(self, allowed):
        action = proposed(ActionKind.SET_FIELD, "email", "maria@exemplo.com")
        result = filter_actions([action], allowed, "meu email é maria@exemplo.com")
        assert result.kept[0].token.value == "maria@exemplo.com"

    def test_unconfigured_field_is_dropped(self, allowed):
        result = filter_actions([proposed(ActionKind.SET_FIELD, "empresa", "Acme")], allowed, "Acme")
        assert len(result.dropped_by("field_not_configured")) == 1

    def test_field_match_ignores_case_and_separators(self):
        allowed = parser.configured_actions("@campo:data-de-nascimento:{valor}")
        action = proposed(ActionKind.SET_FIELD, "Data_de_Nascimento", "10/02/1990")
        assert len(filter_actions([action], allowed, "10/02/1990").kept) == 1

    def test_unexpected_field_is_dropped(self):
        allowed = parser.configured_actions("@campo:email:{valor} @campo:empresa:{valor}")
        actions = [
            proposed(ActionKind.SET_FIELD, "email", "maria@exemplo.com"),
            proposed(ActionKind.SET_FIELD, "empresa", "maria@exemplo.com"),
        ]
        result = filter_actions(actions, allowed, "maria@exemplo.com", expected_field="email")
        assert [a.token.target for a in result.kept] == ["email"]
        assert [a.token.target for a in result.dropped_by("field_not_expected")] == ["empresa"]

    def test_no_expected_field_keeps_all_configured(self):
        allowed = parser.configured_actions("@campo:email:{valor} @campo:empresa:{valor}")
        actions = [
            proposed(ActionKind.SET_FIELD, "email", "a@b.com"),
            proposed(ActionKind.SET_FIELD, "empresa", "Acme"),
        ]
        assert len(filter_actions(actions, allowed, "a@b.com, Acme").kept) == 2


# =============================================================================
# Dedup and cap
# =============================================================================

class TestDedupAndCap:
    """Structural dedup and the one-structural-per-turn cap"""

    def test_duplicate_structural_action_is_dropped(self, allowed):
        actions = [
            proposed(ActionKind.TAG, "lead-quente", round_number=1),
            proposed(ActionKind.TAG, "Lead-Quente", round_number=2),
        ]
        result = filter_actions(actions, allowed, "oi")
        assert len(result.kept) == 1
        assert result.kept[0].round_number == 1
        assert len(result.dropped_by("duplicate")) == 1

    def test_capture_duplicates_are_not_deduplicated(self, allowed):
        actions = [
            proposed(ActionKind.SET_NAME, "Maria"),
            proposed(ActionKind.SET_NAME, "Maria"),
        ]
        assert len(filter_actions(actions, allowed, "Maria").kept) == 2

    def test_cap_keeps_captures_and_highest_priority_structural(self, allowed):
        actions = [
            proposed(ActionKind.TAG, "lead-quente"),
            proposed(ActionKind.SET_FIELD, "email", "maria@exemplo.com"),
            proposed(ActionKind.STAGE_MOVE, "Vendas/Qualificado"),
        ]
        result = filter_actions(actions, allowed, "maria@exemplo.com")
        assert result.capped
        assert [a.kind for a in result.kept] == [ActionKind.SET_FIELD, ActionKind.STAGE_MOVE]
        assert [a.kind for a in result.dropped_by("cap")] == [ActionKind.TAG]

    @pytest.mark.parametrize("actions,kept,dropped", [
        pytest.param(
            [
                (ActionKind.TAG, "lead-quente"),
                (ActionKind.SET_FIELD, "email", "maria@exemplo.com"),
                (ActionKind.TAG, "vip"),
                (ActionKind.STAGE_MOVE, "Vendas/Qualificado"),
                (ActionKind.TRANSFER, "humano"),
                (ActionKind.SET_NAME, "Maria"),
                (ActionKind.STAGE_MOVE, "Vendas/Cliente"),
            ],
            [ActionKind.SET_FIELD, ActionKind.STAGE_MOVE, ActionKind.SET_NAME],
            [ActionKind.TAG, ActionKind.TAG, ActionKind.TRANSFER, ActionKind.STAGE_MOVE],
            id="five-structural-two-capture",
        ),
        pytest.param(
            [
                (ActionKind.SET_NAME, "Maria"),
                (ActionKind.SET_FIELD, "email", "maria@exemplo.com"),
                (ActionKind.TAG, "lead-quente"),
                (ActionKind.SET_NAME, "Maria Silva"),
                (ActionKind.SET_FIELD, "email", "maria.silva@exemplo.com"),
                (ActionKind.TRANSFER, "humano"),
                (ActionKind.SET_NAME, "M. Silva"),
                (ActionKind.SET_FIELD, "email", "ms@exemplo.com"),
            ],
            [
                ActionKind.SET_NAME, ActionKind.SET_FIELD, ActionKind.SET_NAME,
                ActionKind.SET_FIELD, ActionKind.TRANSFER, ActionKind.SET_NAME,
            ],
            [ActionKind.TAG, ActionKind.SET_FIELD],
            id="six-capture-two-structural",
        ),
    ])
    def test_cap_bounds(self, allowed, actions, kept, dropped):
        result = filter_actions([proposed(*a) for a in actions], allowed, "oi")
        assert result.capped
        assert [a.kind for a in result.kept] == kept
        assert [a.kind for a in result.dropped_by("cap")] == dropped
        assert sum(1 for a in result.kept if a.kind in (ActionKind.SET_FIELD, ActionKind.SET_NAME)) <= 5
        assert sum(1 for a in result.kept if a.kind not in (ActionKind.SET_FIELD, ActionKind.SET_NAME)) == 1

    def test_cap_disabled_keeps_everything(self, allowed):
        actions = [
            proposed(ActionKind.TAG, "lead-quente"),
            proposed(ActionKind.STAGE_MOVE, "Vendas/Qualificado"),
            proposed(ActionKind.TRANSFER, "humano"),
        ]
        result = filter_actions(actions, allowed, "oi", config=FilterConfig(apply_cap=False))
        assert not result.capped
        assert len(result.kept) == 3

    def test_loop_executed_actions_survive_the_cap(self, allowed):
        actions = [
            proposed(ActionKind.SCHEDULING, "check", in_loop=True),
            proposed(ActionKind.TAG, "lead-quente"),
            proposed(ActionKind.TRANSFER, "humano"),
        ]
        result = filter_actions(actions, allowed, "oi")
        assert result.capped
        assert [a.kind for a in result.kept] == [ActionKind.SCHEDULING, ActionKind.TRANSFER]

    def test_single_structural_is_not_capped(self, allowed):
        actions = [
            proposed(ActionKind.SET_FIELD, "email", "a@b.com"),
            proposed(ActionKind.TAG, "lead-quente"),
        ]
        result = filter_actions(actions, allowed, "a@b.com")
        assert not result.capped
        assert len(result.kept) == 2

    def test_encounter_order_is_preserved(self, allowed):
        actions = [
            proposed(ActionKind.SET_NAME, "Maria"),
            proposed(ActionKind.TAG, "lead-quente"),
            proposed(ActionKind.SET_FIELD, "email", "a@b.com"),
        ]
        result = filter_actions(actions, allowed, "a@b.com")
        assert [a.kind for a in result.kept] == [
            ActionKind.SET_NAME, ActionKind.TAG, ActionKind.SET_FIELD,
        ]

    def test_same_input_same_output(self, allowed):
        actions = [
            proposed(ActionKind.TAG, "lead-quente"),
            proposed(ActionKind.STAGE_MOVE, "Qualificado"),
            proposed(ActionKind.NOTIFY, "equipe"),
        ]
        first = filter_actions(actions, allowed, "oi")
        second = filter_actions(actions, allowed, "oi")
        assert [a.token for a in first.kept] == [a.token for a in second.kept]
        assert [d.reason for d in first.dropped] == [d.reason for d in second.dropped]


class TestFilterConfig:
    """Settings section -> FilterConfig"""

    def test_from_section(self):
        config = FilterConfig.from_settings(
            {"capture_limit": 2, "structural_priority": ["tag", "etapa", "nonsense"]},
        )
        assert config.capture_limit == 2
        assert config.structural_priority == (ActionKind.TAG, ActionKind.STAGE_MOVE)

    def test_from_settings_file(self):
        config = FilterConfig.from_settings(apply_cap=False)
        assert config.structural_limit == 1
        assert config.field_score_threshold == 30
        assert not config.apply_cap


# =============================================================================
# Expected-field inference
# =============================================================================

class TestExpectedField:
    """Which field the agent's last question asked for"""

    def test_exact_field_word(self):
        assert infer_expected_field("Qual é o seu email?", {"email", "empresa"}) == "email"

    def test_multi_word_field(self):
        fields = {"data-de-nascimento", "email"}
        assert infer_expected_field("Qual a sua data de nascimento?", fields) == "data-de-nascimento"

    def test_accents_are_ignored(self):
        assert infer_expected_field("Em qual região você mora?", {"regiao", "email"}) == "regiao"

    def test_unrelated_question(self):
        assert infer_expected_field("Tudo bem com você?", {"email", "empresa"}) is None

    def test_no_question(self):
        assert infer_expected_field(None, {"email"}) is None
        assert infer_expected_field("", {"email"}) is None

    def test_last_agent_question(self):
        history = [
            ("assistant", "Olá! Qual é o seu nome?"),
            ("user", "Maria"),
            ("assistant", "Prazer, Maria! Qual é o seu email?"),
            ("user", "maria@exemplo.com"),
        ]
        assert last_agent_question(history) == "Prazer, Maria! Qual é o seu email?"

    def test_last_agent_question_ignores_trailing_assistant(self):
        history = [
            ("assistant", "Qual é o seu email?"),
            ("user", "maria@exemplo.com"),
            ("assistant", "Obrigada!"),
        ]
        assert last_agent_question(history) == "Qual é o seu email?"

    def test_last_agent_question_without_agent_turn(self):
        assert last_agent_question([("user", "oi")]) is None
        assert last_agent_question([]) is None
