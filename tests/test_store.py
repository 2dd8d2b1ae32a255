"""
Tests for the SQLite CRM store.
"""

from src.store import CRMStore


class TestTranscript:
    """Messages and history windows"""

    def test_recent_messages_oldest_first(self, crm):
        store = crm.store
        for i in range(5):
            store.add_message(crm.conversation_id, "in" if i % 2 == 0 else "out", f"m{i}", created_at=100 + i)
        recent = store.recent_messages(crm.conversation_id, limit=3)
        assert [m["content"] for m in recent] == ["m2", "m3", "m4"]

    def test_system_messages_hidden_by_default(self, crm):
        store = crm.store
        store.add_message(crm.conversation_id, "in", "oi")
        store.add_message(crm.conversation_id, "system", "Tag adicionada")
        assert [m["content"] for m in store.recent_messages(crm.conversation_id, 10)] == ["oi"]
        assert len(store.recent_messages(crm.conversation_id, 10, include_system=True)) == 2

    def test_after_cutoff(self, crm):
        store = crm.store
        store.add_message(crm.conversation_id, "in", "antes", created_at=100)
        store.add_message(crm.conversation_id, "in", "depois", created_at=200)
        recent = store.recent_messages(crm.conversation_id, 10, after=150)
        assert [m["content"] for m in recent] == ["depois"]

    def test_metadata_round_trip(self, crm):
        store = crm.store
        store.add_message(crm.conversation_id, "in", "", kind="audio",
                          metadata={"media_text": "transcrição do áudio"})
        last = store.last_inbound_message(crm.conversation_id)
        assert last["kind"] == "audio"
        assert last["metadata"]["media_text"] == "transcrição do áudio"


class TestCRMEntities:
    """Agents, pipelines, deals, fields"""

    def test_primary_agent(self, crm):
        assert crm.store.find_primary_agent(crm.account_id)["id"] == crm.agent_id

    def test_inactive_agents_filtered(self, crm):
        crm.store.create_agent(crm.account_id, "Beto", active=False)
        names = [a["name"] for a in crm.store.list_agents(crm.account_id)]
        assert names == ["Ana"]
        assert len(crm.store.list_agents(crm.account_id, active_only=False)) == 2

    def test_stages_in_order(self, crm):
        stages = crm.store.list_agent_stages(crm.agent_id)
        assert [s["number"] for s in stages] == [1, 2]

    def test_pipeline_stages_carry_pipeline_name(self, crm):
        stages = crm.store.list_pipeline_stages(crm.account_id)
        assert [s["name"] for s in stages] == ["Novo", "Qualificado", "Cliente"]
        assert {s["pipeline_name"] for s in stages} == {"Vendas"}

    def test_open_deals(self, crm):
        store = crm.store
        deal_id = store.create_deal(crm.account_id, crm.contact_id, crm.novo, "Maria", amount=1500.0)
        deals = store.list_open_deals(crm.contact_id)
        assert deals[0]["id"] == deal_id
        assert deals[0]["stage_name"] == "Novo"
        store.update_deal(deal_id, status="won")
        assert store.list_open_deals(crm.contact_id) == []

    def test_field_value_upsert(self, crm):
        store = crm.store
        store.upsert_field_value(crm.contact_id, crm.email_field, "a@b.com")
        store.upsert_field_value(crm.contact_id, crm.email_field, "maria@exemplo.com")
        assert store.get_field_value(crm.contact_id, crm.email_field) == "maria@exemplo.com"
        assert store.field_values(crm.contact_id) == {crm.email_field: "maria@exemplo.com"}

    def test_contact_tags_are_json(self, crm):
        crm.store.update_contact(crm.contact_id, tags=["lead-quente"])
        assert crm.store.get_contact(crm.contact_id)["tags"] == ["lead-quente"]

    def test_scheduling_config_upsert(self, crm):
        store = crm.store
        store.set_scheduling_config(crm.agent_id, slot_minutes=30)
        store.set_scheduling_config(crm.agent_id, slot_minutes=45, per_slot_limit=2)
        config = store.get_scheduling_config(crm.agent_id)
        assert config["slot_minutes"] == 45
        assert config["per_slot_limit"] == 2

    def test_bookings_overlap(self, crm):
        store = crm.store
        store.add_booking(crm.account_id, "Avaliação", 1000, 4600, agent_id=crm.agent_id)
        assert len(store.bookings_between(crm.account_id, 3600, 7200)) == 1
        assert store.bookings_between(crm.account_id, 4600, 8200) == []


class TestDebounceBookkeeping:
    """Processed-message ledger and pending responses"""

    def test_mark_processed_once(self, store: CRMStore):
        assert store.mark_processed("wamid.1", "acc") is True
        assert store.mark_processed("wamid.1", "acc") is False
        assert store.is_processed("wamid.1", "acc")

    def test_ledger_is_scoped_by_account(self, store: CRMStore):
        assert store.mark_processed("wamid.1", "acc-a") is True
        assert store.mark_processed("wamid.1", "acc-b") is True

    def test_upsert_moves_respond_at(self, store: CRMStore):
        store.upsert_pending("conv", "acc", 100.0)
        store.upsert_pending("conv", "acc", 105.0)
        assert store.get_pending("conv")["respond_at"] == 105.0
        assert store.due_pending(104.0) == []
        assert [r["conversation_id"] for r in store.due_pending(105.0)] == ["conv"]

    def test_claim_is_exclusive(self, store: CRMStore):
        store.upsert_pending("conv", "acc", 100.0)
        assert store.claim_pending("conv") is True
        assert store.claim_pending("conv") is False
        assert store.due_pending(200.0) == []
        store.release_pending("conv")
        assert store.claim_pending("conv") is True

    def test_finish_removes_answered_row(self, store: CRMStore):
        store.upsert_pending("conv", "acc", 100.0)
        store.claim_pending("conv")
        assert store.finish_pending("conv", 100.0) is False
        assert store.get_pending("conv") is None

    def test_finish_keeps_target_moved_during_turn(self, store: CRMStore):
        store.upsert_pending("conv", "acc", 100.0)
        store.claim_pending("conv")
        store.upsert_pending("conv", "acc", 108.0)
        assert store.finish_pending("conv", 100.0) is True
        pending = store.get_pending("conv")
        assert pending["respond_at"] == 108.0
        assert pending["processing"] == 0
        assert [r["conversation_id"] for r in store.due_pending(108.0)] == ["conv"]
